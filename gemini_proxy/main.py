import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.config import (
    APP_VERSION,
    CHAT_ENDPOINT_PATH,
    CORS_HEADERS,
    DEFAULT_SYSTEM_INSTRUCTION,
    GEMINI_API_KEY,
    LOG_LEVEL_FROM_ENV,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_MAX_REQUESTS,
    RATE_LIMIT_WINDOW_SECONDS,
    RESPONSE_ENVELOPE,
)
from .core.errors import ConfigurationError, ErrorKind
from .core.http_client import create_http_client, close_http_client
from .core.logging_utils import configure_logging
from .api import chat as chat_router
from .middleware import AccessLogMiddleware, CORSHeadersMiddleware
from .services.gateway import UpstreamGateway
from .services.rate_limiter import RateLimiter
from .utils.helpers import render_error

configure_logging(LOG_LEVEL_FROM_ENV)

logger = logging.getLogger("GeminiProxy.Main")

_STATUS_KINDS = {
    405: ErrorKind.METHOD_NOT_ALLOWED,
    415: ErrorKind.UNSUPPORTED_MEDIA_TYPE,
}


async def _rate_limiter_janitor(rate_limiter: RateLimiter, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        rate_limiter.cleanup_old_records()


@asynccontextmanager
async def lifespan(app_instance: FastAPI):
    logger.info("Lifespan: 应用启动，开始初始化...")

    owned_http_client = None
    if app_instance.state.gateway is None:
        owned_http_client = create_http_client()
        try:
            app_instance.state.gateway = UpstreamGateway(GEMINI_API_KEY, owned_http_client)
            app_instance.state.gateway_error = None
            logger.info("Lifespan: 上游网关初始化成功")
        except ConfigurationError as e:
            # 不让进程崩溃：每个聊天请求都会得到确定的 500 CONFIGURATION_ERROR
            logger.error(f"Lifespan: 上游网关初始化失败: {e.message} ({e.details}). "
                         f"Set GEMINI_API_KEY in the environment or .env file.")
            app_instance.state.gateway_error = e
            await close_http_client(owned_http_client)
            owned_http_client = None

    janitor_task = None
    rate_limiter = app_instance.state.rate_limiter
    if rate_limiter is not None:
        janitor_task = asyncio.create_task(
            _rate_limiter_janitor(rate_limiter, max(1.0, float(rate_limiter.window_seconds)))
        )

    yield

    logger.info("Lifespan: 应用关闭，开始清理资源...")
    if janitor_task is not None:
        janitor_task.cancel()
        with suppress(asyncio.CancelledError):
            await janitor_task

    if owned_http_client is not None:
        try:
            await close_http_client(owned_http_client)
            logger.info("Lifespan: HTTP客户端成功关闭。")
        except Exception as e:
            logger.error(f"Lifespan: 关闭HTTP客户端时发生错误: {e}", exc_info=True)
        app_instance.state.gateway = None

    logger.info("Lifespan: 应用关闭流程完成。")


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    kind = _STATUS_KINDS.get(exc.status_code)
    code = kind.code if kind else f"HTTP_{exc.status_code}"
    return render_error(
        exc.status_code,
        code,
        str(exc.detail),
        envelope=getattr(request.app.state, "response_envelope", RESPONSE_ENVELOPE),
        headers=dict(exc.headers or {}),
    )


def create_app(
    gateway: Optional[UpstreamGateway] = None,
    rate_limiter: Optional[RateLimiter] = None,
    *,
    rate_limit_enabled: bool = RATE_LIMIT_ENABLED,
    response_envelope: str = RESPONSE_ENVELOPE,
    default_system_instruction: Optional[str] = DEFAULT_SYSTEM_INSTRUCTION,
) -> FastAPI:
    """
    Composition root. Pass a gateway/rate limiter to inject them (tests do);
    otherwise the lifespan builds the gateway from the environment.
    """
    app = FastAPI(
        title="Gemini Chat Proxy",
        description=f"Gemini 聊天代理服务，版本: {APP_VERSION}",
        version=APP_VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    if rate_limiter is None and rate_limit_enabled:
        rate_limiter = RateLimiter(RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW_SECONDS)

    app.state.gateway = gateway
    app.state.gateway_error = None
    app.state.rate_limiter = rate_limiter
    app.state.response_envelope = response_envelope
    app.state.default_system_instruction = default_system_instruction

    # 中间件的执行顺序是后添加先执行：AccessLog -> CORS -> GZip -> 路由
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(CORSHeadersMiddleware, cors_headers=CORS_HEADERS, preflight_paths=[CHAT_ENDPOINT_PATH])
    app.add_middleware(AccessLogMiddleware)

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)

    app.include_router(chat_router.router)

    @app.get("/", status_code=200, include_in_schema=False, tags=["Utilities"])
    async def root():
        """根路由，确认服务正常运行"""
        return {
            "message": "Gemini Chat Proxy is running",
            "version": APP_VERSION,
            "status": "ok",
            "endpoints": {
                "chat": CHAT_ENDPOINT_PATH,
                "health": "/health",
                "docs": "/docs",
            }
        }

    @app.get("/health", status_code=200, include_in_schema=False, tags=["Utilities"])
    async def health_check(request: Request):
        configured = getattr(request.app.state, "gateway", None) is not None
        return {
            "status": "ok" if configured else "error",
            "detail": "Upstream gateway configured." if configured else "Upstream gateway not configured (missing API key).",
            "app_version": APP_VERSION,
        }

    logger.info(f"FastAPI Gemini Chat Proxy v{APP_VERSION} 初始化完成，聊天路由: {CHAT_ENDPOINT_PATH}")
    return app


app = create_app()
