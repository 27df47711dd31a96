"""
Upstream gateway: one Gemini generateContent round trip per call.

Owns the credential and the endpoint, interprets HTTP status and payload shape, and
maps every outcome onto the error taxonomy in core.errors. No retries happen here.
"""
import asyncio
import datetime
import logging
import math
import re
from email.utils import parsedate_to_datetime
from typing import Any, List, Mapping, Optional

import httpx
import orjson

from ..core.config import (
    EMPTY_RESPONSE_PLACEHOLDER,
    GEMINI_MODEL,
    GOOGLE_API_BASE_URL,
    MAX_OUTPUT_TOKENS_LIMIT,
    SAFETY_THRESHOLD,
    UPSTREAM_TIMEOUT,
)
from ..core.errors import (
    BadRequest,
    ConfigurationError,
    ContentBlocked,
    MalformedUpstreamResponse,
    ProxyError,
    RateLimited,
    ServiceUnavailable,
    Unauthorized,
    UpstreamError,
)
from ..core.http_client import create_http_client
from ..core.logging_utils import mask_api_key
from ..models.api_models import FinishReason, GenerationOptions, GenerationResult, Message
from .requests.builders import prepare_gemini_rest_api_request

logger = logging.getLogger("GeminiProxy.Services.Gateway")

BLOCKING_FINISH_REASONS = {"SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII"}
BLOCK_KEYWORDS = ("safety", "blocked")
DEFAULT_RETRY_AFTER_SECONDS = 60
MAX_RETRY_AFTER_SECONDS = 86400

_RETRY_DELAY_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)s\s*$")

SAFETY_BLOCK_MESSAGE = "Response blocked due to safety concerns. Please rephrase your question."
RECITATION_BLOCK_MESSAGE = "Response contained recitation from training data. Please rephrase your question."
UNAVAILABLE_MESSAGE = "AI service temporarily unavailable"


def _extract_error_message(body: Any) -> str:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
    return ""


def _delay_to_seconds(value: float) -> Optional[int]:
    if not math.isfinite(value) or value < 0:
        return None
    return max(1, min(MAX_RETRY_AFTER_SECONDS, math.ceil(value)))


def _parse_retry_after_header(header_value: str) -> Optional[int]:
    """delta-seconds or an HTTP-date (RFC 9110); None when unusable."""
    try:
        return _delay_to_seconds(float(header_value))
    except ValueError:
        pass

    try:
        retry_at = parsedate_to_datetime(header_value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=datetime.timezone.utc)
    delay = (retry_at - datetime.datetime.now(datetime.timezone.utc)).total_seconds()
    return max(1, min(MAX_RETRY_AFTER_SECONDS, math.ceil(delay)))


def _retry_after_hint(headers: Mapping[str, str], body: Any) -> int:
    """Upstream Retry-After header, then google.rpc.RetryInfo in the body, then the default."""
    header_value = headers.get("retry-after")
    if header_value:
        seconds = _parse_retry_after_header(header_value.strip())
        if seconds is not None:
            return seconds

    error = body.get("error") if isinstance(body, dict) else None
    details = error.get("details") if isinstance(error, dict) else None
    if isinstance(details, list):
        for detail in details:
            if not isinstance(detail, dict):
                continue
            if not str(detail.get("@type", "")).endswith("RetryInfo"):
                continue
            match = _RETRY_DELAY_PATTERN.match(str(detail.get("retryDelay", "")))
            if match:
                seconds = _delay_to_seconds(float(match.group(1)))
                if seconds is not None:
                    return seconds

    return DEFAULT_RETRY_AFTER_SECONDS


def map_upstream_error(status_code: int, body: Any, headers: Mapping[str, str]) -> ProxyError:
    """Map a non-success upstream HTTP status onto exactly one taxonomy entry."""
    upstream_message = _extract_error_message(body) or "Unknown error"

    if status_code == 429:
        retry_after = _retry_after_hint(headers, body)
        return RateLimited(
            "Rate limit exceeded. Please try again in a moment.",
            f"Upstream quota exhausted, retry after {retry_after}s",
            retry_after=retry_after,
        )
    if status_code in (401, 403):
        return Unauthorized("API key invalid or insufficient permissions.")
    if status_code == 400:
        lowered = upstream_message.lower()
        if any(keyword in lowered for keyword in BLOCK_KEYWORDS):
            return ContentBlocked(SAFETY_BLOCK_MESSAGE)
        return BadRequest("Invalid request", upstream_message[:200])
    return UpstreamError(
        UNAVAILABLE_MESSAGE,
        f"Gemini API error: {status_code} - {upstream_message[:200]}",
        upstream_status=status_code,
    )


def parse_generation_response(data: Any, placeholder: str = EMPTY_RESPONSE_PLACEHOLDER) -> GenerationResult:
    """
    Turn a 2xx generateContent body into a GenerationResult.
    A missing candidate/content/parts structure is an error; the placeholder is only
    used when parts are present but carry no text.
    """
    if not isinstance(data, dict):
        raise MalformedUpstreamResponse("Unexpected response from AI service", "Response body is not a JSON object")

    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        prompt_feedback = data.get("promptFeedback")
        block_reason = prompt_feedback.get("blockReason") if isinstance(prompt_feedback, dict) else None
        if block_reason:
            raise ContentBlocked(SAFETY_BLOCK_MESSAGE, f"Prompt blocked: {block_reason}")
        raise MalformedUpstreamResponse("No response generated from AI service", "Response has no candidates")

    candidate = candidates[0]
    if not isinstance(candidate, dict):
        raise MalformedUpstreamResponse("Unexpected response from AI service", "Candidate is not an object")

    raw_finish_reason = candidate.get("finishReason")
    if raw_finish_reason in BLOCKING_FINISH_REASONS:
        if raw_finish_reason == "RECITATION":
            raise ContentBlocked(RECITATION_BLOCK_MESSAGE, f"finishReason={raw_finish_reason}")
        raise ContentBlocked(SAFETY_BLOCK_MESSAGE, f"finishReason={raw_finish_reason}")

    content = candidate.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        raise MalformedUpstreamResponse("Unexpected response from AI service", "Candidate has no content parts")

    texts: List[str] = []
    for part in parts:
        if not isinstance(part, dict) or part.get("thought"):
            continue
        text_value = part.get("text")
        if isinstance(text_value, str):
            texts.append(text_value)
    text = "".join(texts)
    if not text.strip():
        text = placeholder

    usage = data.get("usageMetadata")
    safety_ratings = candidate.get("safetyRatings")
    return GenerationResult(
        text=text,
        finish_reason=FinishReason.from_upstream(raw_finish_reason or "STOP"),
        usage=usage if isinstance(usage, dict) else {},
        safety_ratings=[r for r in safety_ratings if isinstance(r, dict)] if isinstance(safety_ratings, list) else [],
    )


def _decode_body(response: httpx.Response) -> Any:
    try:
        return orjson.loads(response.content)
    except orjson.JSONDecodeError:
        return None


class UpstreamGateway:
    """
    Explicitly constructed by the application's composition root and injected into
    the handler. Construction fails fast with ConfigurationError on a blank key.
    """

    def __init__(
        self,
        api_key: Optional[str],
        http_client: Optional[httpx.AsyncClient] = None,
        *,
        base_api_url: str = GOOGLE_API_BASE_URL,
        model_name: str = GEMINI_MODEL,
        timeout: float = UPSTREAM_TIMEOUT,
        safety_threshold: str = SAFETY_THRESHOLD,
        max_tokens_limit: int = MAX_OUTPUT_TOKENS_LIMIT,
        empty_placeholder: str = EMPTY_RESPONSE_PLACEHOLDER,
    ):
        if not isinstance(api_key, str) or not api_key.strip():
            raise ConfigurationError("Server configuration error", "API key not configured")

        self._api_key = api_key.strip()
        self._owns_client = http_client is None
        self._http_client = http_client if http_client is not None else create_http_client()
        self.base_api_url = base_api_url
        self.model_name = model_name
        self.timeout = timeout
        self.safety_threshold = safety_threshold
        self.max_tokens_limit = max_tokens_limit
        self.empty_placeholder = empty_placeholder

        logger.info(f"Upstream gateway ready. model={model_name}, base='{base_api_url}', "
                    f"key={mask_api_key(self._api_key)}, timeout={timeout}s")

    async def send(
        self,
        messages: List[Message],
        system_instruction: Optional[str],
        options: GenerationOptions,
        *,
        request_id: str = "-",
    ) -> GenerationResult:
        log_prefix = f"RID-{request_id}"
        target_url, headers, json_payload = prepare_gemini_rest_api_request(
            messages,
            system_instruction,
            options,
            api_key=self._api_key,
            base_api_url=self.base_api_url,
            model_name=self.model_name,
            safety_threshold=self.safety_threshold,
            max_tokens_limit=self.max_tokens_limit,
            request_id=request_id,
        )

        try:
            response = await asyncio.wait_for(
                self._http_client.post(target_url, headers=headers, content=orjson.dumps(json_payload)),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.error(f"{log_prefix}: Upstream request timed out after {self.timeout}s: {type(e).__name__}")
            raise ServiceUnavailable(UNAVAILABLE_MESSAGE, "Upstream request timed out") from e
        except httpx.RequestError as e:
            logger.error(f"{log_prefix}: Upstream network error: {type(e).__name__} - {e}", exc_info=True)
            raise ServiceUnavailable(UNAVAILABLE_MESSAGE, "Could not reach the AI service") from e

        body = _decode_body(response)

        if not response.is_success:
            error = map_upstream_error(response.status_code, body, response.headers)
            logger.warning(f"{log_prefix}: Upstream returned {response.status_code} -> {error.code}. "
                           f"Upstream message: {_extract_error_message(body)[:300]!r}")
            raise error

        if body is None:
            logger.error(f"{log_prefix}: Upstream 2xx body is not valid JSON: {response.content[:200]!r}")
            raise MalformedUpstreamResponse("Unexpected response from AI service", "Response body is not valid JSON")

        try:
            result = parse_generation_response(body, self.empty_placeholder)
        except ProxyError as e:
            logger.warning(f"{log_prefix}: Upstream 2xx rejected as {e.code}: {e.details}")
            raise

        logger.info(f"{log_prefix}: Upstream success. finishReason={result.finish_reason.value}, "
                    f"chars={len(result.text)}, usage={result.usage}")
        return result

    async def aclose(self) -> None:
        if self._owns_client and not self._http_client.is_closed:
            await self._http_client.aclose()
