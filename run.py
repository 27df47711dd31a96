#!/usr/bin/env python3
"""
Gemini Chat Proxy 本地启动脚本（生产环境可直接用 uvicorn gemini_proxy.main:app）
"""
import os
import sys
import logging

import uvicorn

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

# config 模块在导入时读取 .env
from gemini_proxy.core.config import APP_VERSION, CHAT_ENDPOINT_PATH, LOG_LEVEL_FROM_ENV
from gemini_proxy.core.logging_utils import configure_logging

logger = logging.getLogger("GeminiProxy.Runner")


def main():
    configure_logging(LOG_LEVEL_FROM_ENV)
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "7860"))
    reload_enabled = os.getenv("RELOAD", "false").lower() == "true"

    logger.info(f"Gemini Chat Proxy v{APP_VERSION} -> http://{host}:{port}{CHAT_ENDPOINT_PATH}")

    try:
        # 访问日志由 AccessLogMiddleware 负责，关闭 uvicorn 自带的
        uvicorn.run(
            "gemini_proxy.main:app",
            host=host,
            port=port,
            log_level=LOG_LEVEL_FROM_ENV.lower(),
            access_log=False,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        logger.info("Server shutdown requested by user (Ctrl+C)")
    except Exception as e:
        logger.error(f"Failed to start server: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
