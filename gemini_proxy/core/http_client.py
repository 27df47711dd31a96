"""
上游 HTTP 客户端工厂
由应用 lifespan 创建并持有，注入到 UpstreamGateway，避免隐藏的全局单例
"""
import logging
import httpx

from .config import API_TIMEOUT, UPSTREAM_TIMEOUT, MAX_CONNECTIONS

logger = logging.getLogger("GeminiProxy.Core.HTTPClient")


def create_http_client() -> httpx.AsyncClient:
    """
    配置说明：
    - limits: 连接池限制
    - timeout: 各阶段超时；总时限由 gateway 的 UPSTREAM_TIMEOUT 兜底
    - http2: 启用 HTTP/2 支持（如果服务端支持）
    """
    logger.info(
        f"Initializing upstream HTTP client. Connect timeout: {API_TIMEOUT}s, "
        f"Read timeout: {UPSTREAM_TIMEOUT}s, Max connections: {MAX_CONNECTIONS}"
    )
    return httpx.AsyncClient(
        limits=httpx.Limits(
            max_connections=MAX_CONNECTIONS,
            max_keepalive_connections=20,
            keepalive_expiry=60.0
        ),
        timeout=httpx.Timeout(
            connect=API_TIMEOUT,
            read=UPSTREAM_TIMEOUT,
            write=API_TIMEOUT,
            pool=10.0
        ),
        follow_redirects=True,
        http2=True,
        trust_env=True
    )


async def close_http_client(client: httpx.AsyncClient) -> None:
    if client is not None and not client.is_closed:
        logger.info("Closing upstream HTTP client")
        await client.aclose()
