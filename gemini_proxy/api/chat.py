import asyncio
import logging
import uuid
from typing import Any, Awaitable, Optional, Tuple

import orjson
from fastapi import APIRouter, Request
from fastapi.responses import Response

from ..core.config import (
    CHAT_ENDPOINT_PATH,
    DEFAULT_MAX_OUTPUT_TOKENS,
    DEFAULT_TEMPERATURE,
    MAX_OUTPUT_TOKENS_LIMIT,
    TOP_K,
    TOP_P,
)
from ..core.errors import (
    ConfigurationError,
    ErrorKind,
    ProxyError,
    RateLimited,
    ValidationError,
)
from ..models.api_models import ChatRequestModel, GenerationResult
from ..services.gateway import UpstreamGateway
from ..services.requests import (
    normalize,
    normalize_generation_options,
    split_legacy_messages,
)
from ..utils.helpers import (
    error_response,
    get_client_identifier,
    success_response,
)

logger = logging.getLogger("GeminiProxy.Routers.Chat")
router = APIRouter()

DISCONNECT_POLL_INTERVAL = 0.5


def enforce_rate_limit(request: Request, request_id: str) -> None:
    rate_limiter = getattr(request.app.state, "rate_limiter", None)
    if rate_limiter is None:
        return
    client_id = get_client_identifier(request)
    if not rate_limiter.allow(client_id):
        retry_after = rate_limiter.retry_after(client_id) or int(rate_limiter.window_seconds)
        logger.warning(f"RID-{request_id}: Inbound rate limit hit for client '{client_id[:16]}'")
        raise RateLimited("Rate limit exceeded", "Please try again in a minute", retry_after=retry_after)


async def parse_chat_request(request: Request) -> ChatRequestModel:
    content_type = request.headers.get("content-type", "")
    if "application/json" not in content_type.lower():
        raise ProxyError(
            "Unsupported Media Type",
            "Content-Type must be application/json",
            kind=ErrorKind.UNSUPPORTED_MEDIA_TYPE,
        )

    raw_body = await request.body()
    try:
        body = orjson.loads(raw_body)
    except orjson.JSONDecodeError as e:
        raise ValidationError("Invalid JSON in request body") from e

    if not isinstance(body, dict):
        raise ValidationError("Invalid request body", "Request body must be a JSON object")

    return ChatRequestModel.model_validate(body)


def resolve_conversation(chat_input: ChatRequestModel) -> Tuple[Any, Any]:
    """prompt/history, or the legacy single 'messages' array when no prompt is given."""
    if chat_input.prompt is None and chat_input.messages is not None:
        return split_legacy_messages(chat_input.messages)
    return chat_input.history, chat_input.prompt


def get_gateway(request: Request) -> UpstreamGateway:
    gateway: Optional[UpstreamGateway] = getattr(request.app.state, "gateway", None)
    if gateway is None:
        startup_error = getattr(request.app.state, "gateway_error", None)
        if isinstance(startup_error, ConfigurationError):
            raise ConfigurationError(startup_error.message, startup_error.details)
        raise ConfigurationError("Server configuration error", "API key not configured")
    return gateway


async def run_until_client_disconnects(
    request: Request,
    upstream_call: Awaitable[GenerationResult],
    request_id: str,
    poll_interval: float = DISCONNECT_POLL_INTERVAL,
) -> GenerationResult:
    """Await the upstream call, cancelling it if the caller goes away first."""
    task = asyncio.ensure_future(upstream_call)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=poll_interval)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.warning(f"RID-{request_id}: Client disconnected, cancelling upstream call.")
                task.cancel()
                raise ProxyError("Client closed request", kind=ErrorKind.CLIENT_CLOSED_REQUEST)
    finally:
        if not task.done():
            task.cancel()


async def handle_chat_request(request: Request, request_id: str) -> GenerationResult:
    log_prefix = f"RID-{request_id}"

    enforce_rate_limit(request, request_id)
    chat_input = await parse_chat_request(request)

    raw_history, raw_prompt = resolve_conversation(chat_input)
    messages, system_instruction = normalize(
        raw_history,
        raw_prompt,
        chat_input.system_instruction,
        request_id=request_id,
    )
    if system_instruction is None:
        system_instruction = getattr(request.app.state, "default_system_instruction", None)

    gateway = get_gateway(request)
    options = normalize_generation_options(
        chat_input.temperature,
        chat_input.max_tokens,
        default_temperature=DEFAULT_TEMPERATURE,
        default_max_tokens=DEFAULT_MAX_OUTPUT_TOKENS,
        max_tokens_limit=MAX_OUTPUT_TOKENS_LIMIT,
        top_k=TOP_K,
        top_p=TOP_P,
    )

    logger.info(f"{log_prefix}: Forwarding {len(messages)} turn(s) upstream, "
                f"system_instruction={'yes' if system_instruction else 'no'}, "
                f"temperature={options.temperature}, maxOutputTokens={options.max_output_tokens}")

    return await run_until_client_disconnects(
        request,
        gateway.send(messages, system_instruction, options, request_id=request_id),
        request_id,
    )


@router.post(CHAT_ENDPOINT_PATH)
async def chat_endpoint(request: Request) -> Response:
    request_id = uuid.uuid4().hex[:12]
    envelope = getattr(request.app.state, "response_envelope", "plain")

    try:
        result = await handle_chat_request(request, request_id)
    except ProxyError as e:
        if e.details:
            logger.info(f"RID-{request_id}: {e.code} details: {e.details}")
        return error_response(e, envelope=envelope, request_id=request_id)
    except Exception as e:
        logger.error(f"RID-{request_id}: Chat API error: {type(e).__name__} - {e}", exc_info=True)
        internal = ProxyError("Internal server error", kind=ErrorKind.INTERNAL_ERROR)
        return error_response(internal, envelope=envelope, request_id=request_id)

    return success_response(result, envelope=envelope, request_id=request_id)
