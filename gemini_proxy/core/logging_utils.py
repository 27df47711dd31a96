import logging

CONSOLE_LOG_FORMAT = '%(asctime)s %(levelname)-8s [%(name)s:%(module)s:%(lineno)d] - %(message)s'
NOISY_LIBRARY_LOGGERS = ["httpx", "httpcore", "hpack", "uvicorn.access", "watchfiles"]

_configured = False


def configure_logging(level_name: str) -> None:
    """
    配置根日志记录器：控制台输出 + 第三方库降噪
    重复调用是安全的（uvicorn reload / 测试中会多次导入 main）
    """
    global _configured
    numeric_log_level = getattr(logging, level_name.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_log_level)

    if not _configured:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(CONSOLE_LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        root_logger.addHandler(console_handler)
        _configured = True

    for lib_logger_name in NOISY_LIBRARY_LOGGERS:
        logging.getLogger(lib_logger_name).setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)


def mask_api_key(api_key: str) -> str:
    """Return a masked/fingerprinted representation of an API key for safe logging."""
    if not api_key:
        return "(empty)"
    head = api_key[:4]
    tail = api_key[-4:] if len(api_key) > 8 else "****"
    return f"{head}...{tail} (len={len(api_key)})"
