import orjson
import logging
import datetime
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import Response

from ..core.errors import ProxyError, RateLimited
from ..models.api_models import (
    ChatResponse,
    ChatResponseData,
    EnvelopedChatResponse,
    EnvelopedErrorDetail,
    EnvelopedErrorResponse,
    ErrorBody,
    GenerationResult,
)

logger = logging.getLogger("GeminiProxy.Utils")

ENVELOPE_PLAIN = "plain"
ENVELOPE_WRAPPED = "enveloped"


def orjson_dumps_bytes_wrapper(data: Any) -> bytes:
    return orjson.dumps(
        data,
        option=orjson.OPT_NON_STR_KEYS | orjson.OPT_PASSTHROUGH_DATETIME | orjson.OPT_APPEND_NEWLINE
    )


def get_current_time_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat().replace("+00:00", "Z")


def json_response(status_code: int, content: Any, headers: Optional[Dict[str, str]] = None) -> Response:
    return Response(
        content=orjson_dumps_bytes_wrapper(content),
        status_code=status_code,
        media_type="application/json",
        headers=headers,
    )


def _request_headers(request_id: Optional[str], extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    headers = dict(extra or {})
    if request_id:
        headers["X-Request-ID"] = request_id
    return headers


def render_error(
    status_code: int,
    code: str,
    message: str,
    details: Optional[str] = None,
    *,
    envelope: str = ENVELOPE_PLAIN,
    request_id: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Response:
    if envelope == ENVELOPE_WRAPPED:
        body = EnvelopedErrorResponse(error=EnvelopedErrorDetail(
            message=message,
            code=status_code,
            kind=code,
            timestamp=get_current_time_iso(),
            details=details,
        ))
    else:
        body = ErrorBody(error=message, code=code, details=details)
    return json_response(
        status_code,
        body.model_dump(exclude_none=True),
        headers=_request_headers(request_id, headers),
    )


def error_response(
    error: ProxyError,
    *,
    envelope: str = ENVELOPE_PLAIN,
    request_id: Optional[str] = None,
) -> Response:
    log_msg = f"错误 {error.status_code} {error.code}: {error.message}"
    if request_id:
        log_msg = f"RID-{request_id}: {log_msg}"
    logger.warning(log_msg)

    extra_headers: Dict[str, str] = {}
    if isinstance(error, RateLimited):
        extra_headers["Retry-After"] = str(error.retry_after)

    return render_error(
        error.status_code,
        error.code,
        error.message,
        error.details,
        envelope=envelope,
        request_id=request_id,
        headers=extra_headers,
    )


def success_response(
    result: GenerationResult,
    *,
    envelope: str = ENVELOPE_PLAIN,
    request_id: Optional[str] = None,
) -> Response:
    if envelope == ENVELOPE_WRAPPED:
        body = EnvelopedChatResponse(data=ChatResponseData(
            message=result.text,
            finish_reason=result.finish_reason.value,
            usage=result.usage,
            safety_ratings=result.safety_ratings,
            timestamp=get_current_time_iso(),
        )).model_dump(by_alias=True)
    else:
        body = ChatResponse(text=result.text).model_dump()
    return json_response(200, body, headers=_request_headers(request_id))


def get_client_identifier(request: Request) -> str:
    """
    First X-Forwarded-For hop, then X-Real-IP, then peer address, then X-Client-ID.
    The caller-chosen X-Client-ID only counts when no address is known, so rotating it
    does not reset the inbound rate limit.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop

    real_ip = request.headers.get("X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host

    client_id = request.headers.get("X-Client-ID")
    if client_id and client_id.strip():
        return client_id.strip()
    return "anonymous"
