from typing import Any, Callable, Dict, List, Optional

import httpx
import orjson
import pytest
from fastapi.testclient import TestClient

from gemini_proxy.main import create_app
from gemini_proxy.services.gateway import UpstreamGateway
from gemini_proxy.services.rate_limiter import RateLimiter

TEST_API_KEY = "AIza-test-key-0123456789"


def gemini_body(text: str = "Run a referral program.", finish_reason: str = "STOP", **extra: Any) -> Dict[str, Any]:
    body = {
        "candidates": [{
            "content": {"role": "model", "parts": [{"text": text}]},
            "finishReason": finish_reason,
            "safetyRatings": [{"category": "HARM_CATEGORY_HARASSMENT", "probability": "NEGLIGIBLE"}],
        }],
        "usageMetadata": {"promptTokenCount": 7, "candidatesTokenCount": 5, "totalTokenCount": 12},
    }
    body.update(extra)
    return body


class StubUpstream:
    """Records outbound requests and answers them with a configurable handler."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.handler: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(200, json=gemini_body())

    def respond_with(self, status_code: int = 200, json: Any = None, headers: Optional[Dict[str, str]] = None) -> None:
        self.handler = lambda request: httpx.Response(status_code, json=json, headers=headers)

    def fail_with(self, exc_type: type = httpx.ConnectError, message: str = "Connection reset by peer") -> None:
        def _raise(request: httpx.Request) -> httpx.Response:
            raise exc_type(message, request=request)
        self.handler = _raise

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def last_payload(self) -> Dict[str, Any]:
        return orjson.loads(self.requests[-1].content)


@pytest.fixture
def upstream() -> StubUpstream:
    return StubUpstream()


@pytest.fixture
def gateway(upstream: StubUpstream) -> UpstreamGateway:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    return UpstreamGateway(TEST_API_KEY, http_client, base_api_url="https://upstream.test", model_name="gemini-test")


@pytest.fixture
def rate_limiter() -> RateLimiter:
    return RateLimiter(max_requests=1000, window_seconds=60)


@pytest.fixture
def app(gateway: UpstreamGateway, rate_limiter: RateLimiter):
    return create_app(gateway=gateway, rate_limiter=rate_limiter, default_system_instruction=None)


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)
