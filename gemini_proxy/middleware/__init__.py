"""
中间件模块
"""
from .access_logging import AccessLogMiddleware
from .cors import CORSHeadersMiddleware

__all__ = [
    "AccessLogMiddleware",
    "CORSHeadersMiddleware"
]
