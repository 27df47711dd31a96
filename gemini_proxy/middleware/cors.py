import logging
from typing import Dict, Iterable, Optional

from fastapi import Request
from fastapi.responses import Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger("GeminiProxy.CORS")


class CORSHeadersMiddleware(BaseHTTPMiddleware):
    """
    Stamps the same permissive CORS headers on every response, errors included,
    and answers OPTIONS on the preflight paths itself with 200 and an empty body.
    OPTIONS elsewhere falls through to the router (404/405).
    (Starlette's CORSMiddleware only reacts when an Origin header is present.)
    """

    def __init__(
        self,
        app: ASGIApp,
        cors_headers: Optional[Dict[str, str]] = None,
        preflight_paths: Iterable[str] = (),
    ):
        super().__init__(app)
        self.cors_headers = dict(cors_headers or {})
        self.preflight_paths = {path.rstrip("/") or "/" for path in preflight_paths}

    async def dispatch(self, request: Request, call_next):
        path = request.url.path.rstrip("/") or "/"
        if request.method == "OPTIONS" and path in self.preflight_paths:
            logger.debug(f"Preflight answered for {request.url.path}")
            return Response(
                status_code=200,
                headers={**self.cors_headers, "Content-Type": "application/json"},
            )

        response = await call_next(request)
        for name, value in self.cors_headers.items():
            response.headers[name] = value
        return response
