import asyncio
import datetime
from email.utils import format_datetime

import httpx
import pytest

from gemini_proxy.core.errors import (
    BadRequest,
    ConfigurationError,
    ContentBlocked,
    MalformedUpstreamResponse,
    RateLimited,
    ServiceUnavailable,
    Unauthorized,
    UpstreamError,
)
from gemini_proxy.models.api_models import FinishReason, GenerationOptions, Message, TextPart
from gemini_proxy.services.gateway import UpstreamGateway, map_upstream_error, parse_generation_response

from .conftest import TEST_API_KEY, gemini_body

MESSAGES = [Message(role="user", parts=[TextPart(text="Give me one growth tactic")])]


async def _send(gateway, system_instruction=None):
    return await gateway.send(MESSAGES, system_instruction, GenerationOptions(), request_id="test")


@pytest.mark.parametrize("api_key", [None, "", "   "])
def test_blank_key_fails_fast_at_construction(api_key):
    with pytest.raises(ConfigurationError):
        UpstreamGateway(api_key)


async def test_success_extracts_text_and_metadata(gateway, upstream):
    result = await _send(gateway, system_instruction="Be brief.")

    assert result.text == "Run a referral program."
    assert result.finish_reason is FinishReason.STOP
    assert result.usage["totalTokenCount"] == 12
    assert result.safety_ratings[0]["category"] == "HARM_CATEGORY_HARASSMENT"

    assert upstream.call_count == 1
    sent = upstream.requests[0]
    assert sent.headers["x-goog-api-key"] == TEST_API_KEY
    assert TEST_API_KEY not in str(sent.url)
    payload = upstream.last_payload()
    assert payload["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
    assert payload["contents"][-1] == {"role": "user", "parts": [{"text": "Give me one growth tactic"}]}


async def test_empty_text_uses_placeholder(gateway, upstream):
    upstream.respond_with(200, gemini_body(text=""))
    result = await _send(gateway)
    assert result.text == "No content generated."


@pytest.mark.parametrize("finish_reason", ["SAFETY", "RECITATION", "PROHIBITED_CONTENT"])
async def test_blocking_finish_reason_is_content_blocked(gateway, upstream, finish_reason):
    upstream.respond_with(200, gemini_body(finish_reason=finish_reason))
    with pytest.raises(ContentBlocked):
        await _send(gateway)


async def test_max_tokens_finish_reason_reported_as_other(gateway, upstream):
    upstream.respond_with(200, gemini_body(text="partial", finish_reason="MAX_TOKENS"))
    result = await _send(gateway)
    assert result.text == "partial"
    assert result.finish_reason is FinishReason.OTHER


@pytest.mark.parametrize("status_code, body, expected", [
    (403, {"error": {"message": "Permission denied"}}, Unauthorized),
    (401, {}, Unauthorized),
    (400, {"error": {"message": "Request blocked by safety filters"}}, ContentBlocked),
    (400, {"error": {"message": "Invalid JSON payload received."}}, BadRequest),
    (500, {"error": {"message": "Internal error"}}, UpstreamError),
    (503, None, UpstreamError),
])
async def test_status_codes_map_to_taxonomy(gateway, upstream, status_code, body, expected):
    upstream.respond_with(status_code, body)
    with pytest.raises(expected):
        await _send(gateway)


async def test_upstream_429_is_rate_limited_with_retry_hint(gateway, upstream):
    upstream.respond_with(429, {"error": {"message": "Resource has been exhausted"}}, headers={"Retry-After": "17"})
    with pytest.raises(RateLimited) as exc_info:
        await _send(gateway)
    assert exc_info.value.retry_after == 17
    assert exc_info.value.status_code == 429


def test_retry_hint_read_from_retry_info_detail():
    body = {"error": {"message": "quota", "details": [
        {"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": "12.4s"},
    ]}}
    error = map_upstream_error(429, body, httpx.Headers())
    assert isinstance(error, RateLimited)
    assert error.retry_after == 13


def test_retry_hint_defaults_to_sixty_seconds():
    error = map_upstream_error(429, None, httpx.Headers())
    assert error.retry_after == 60


@pytest.mark.parametrize("header_value", ["inf", "Infinity", "-inf", "1e400", "nan", "-5", "soon"])
def test_unusable_retry_after_header_falls_back_to_default(header_value):
    error = map_upstream_error(429, {}, httpx.Headers({"Retry-After": header_value}))
    assert isinstance(error, RateLimited)
    assert error.retry_after == 60


def test_unusable_retry_after_header_falls_back_to_retry_info():
    body = {"error": {"details": [
        {"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": "7s"},
    ]}}
    error = map_upstream_error(429, body, httpx.Headers({"Retry-After": "inf"}))
    assert error.retry_after == 7


def test_overflowing_retry_delay_falls_back_to_default():
    body = {"error": {"details": [
        {"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": "9" * 400 + "s"},
    ]}}
    error = map_upstream_error(429, body, httpx.Headers())
    assert error.retry_after == 60


def test_retry_after_http_date():
    retry_at = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(seconds=120)
    headers = httpx.Headers({"Retry-After": format_datetime(retry_at, usegmt=True)})
    error = map_upstream_error(429, {}, headers)
    assert 110 <= error.retry_after <= 121


def test_retry_after_http_date_in_the_past_is_one_second():
    headers = httpx.Headers({"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"})
    assert map_upstream_error(429, {}, headers).retry_after == 1


async def test_infinite_retry_after_still_rate_limited(gateway, upstream):
    upstream.respond_with(429, {"error": {"message": "quota"}}, headers={"Retry-After": "inf"})
    with pytest.raises(RateLimited) as exc_info:
        await _send(gateway)
    assert exc_info.value.retry_after == 60


def test_upstream_error_keeps_status():
    error = map_upstream_error(502, {"error": {"message": "bad gateway"}}, httpx.Headers())
    assert isinstance(error, UpstreamError)
    assert error.upstream_status == 502
    assert error.status_code == 502


@pytest.mark.parametrize("body", [
    {},
    {"candidates": []},
    {"candidates": ["nope"]},
    {"candidates": [{"finishReason": "STOP"}]},
    {"candidates": [{"content": {"role": "model"}, "finishReason": "STOP"}]},
    [1, 2, 3],
])
def test_malformed_success_bodies(body):
    with pytest.raises(MalformedUpstreamResponse):
        parse_generation_response(body)


def test_prompt_feedback_block_without_candidates():
    with pytest.raises(ContentBlocked):
        parse_generation_response({"promptFeedback": {"blockReason": "SAFETY"}})


def test_thought_parts_are_skipped():
    body = gemini_body()
    body["candidates"][0]["content"]["parts"] = [
        {"text": "thinking...", "thought": True},
        {"text": "Answer."},
    ]
    assert parse_generation_response(body).text == "Answer."


async def test_non_json_success_body_is_malformed(gateway, upstream):
    upstream.handler = lambda request: httpx.Response(200, content=b"<html>oops</html>")
    with pytest.raises(MalformedUpstreamResponse):
        await _send(gateway)


@pytest.mark.parametrize("exc_type", [httpx.ConnectError, httpx.ReadError, httpx.ReadTimeout])
async def test_network_failures_are_service_unavailable(gateway, upstream, exc_type):
    upstream.fail_with(exc_type, "Connection reset by peer")
    with pytest.raises(ServiceUnavailable) as exc_info:
        await _send(gateway)
    assert "Connection reset" not in exc_info.value.message
    assert "Connection reset" not in (exc_info.value.details or "")


async def test_hard_timeout_cancels_outbound_call():
    cancelled = asyncio.Event()

    async def slow_handler(request):
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise
        return httpx.Response(200, json=gemini_body())

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(slow_handler))
    gateway = UpstreamGateway(TEST_API_KEY, http_client, base_api_url="https://upstream.test", timeout=0.05)

    with pytest.raises(ServiceUnavailable):
        await _send(gateway)
    assert cancelled.is_set()


async def test_each_send_is_exactly_one_round_trip(gateway, upstream):
    upstream.respond_with(500, {"error": {"message": "boom"}})
    with pytest.raises(UpstreamError):
        await _send(gateway)
    assert upstream.call_count == 1
