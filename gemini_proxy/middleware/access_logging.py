import time
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from fastapi import Request

from ..utils.helpers import get_client_identifier

logger = logging.getLogger("GeminiProxy.AccessLog")

# 排除健康检查和静态资源
EXCLUDED_PATHS = {"/health", "/favicon.ico"}


class AccessLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()

        response = await call_next(request)

        process_time = (time.perf_counter() - start_time) * 1000

        if request.url.path not in EXCLUDED_PATHS:
            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code} "
                f"client={get_client_identifier(request)} "
                f"rid={response.headers.get('X-Request-ID', '-')} "
                f"time={process_time:.1f}ms"
            )

        return response
