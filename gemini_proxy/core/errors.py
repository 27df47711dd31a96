"""
Error taxonomy for the proxy.

Every failure leaving the service is one of these kinds. The kind is fixed when the
error is raised, so the HTTP layer never has to guess a status from message text.
"""
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    VALIDATION_ERROR = (400, "VALIDATION_ERROR")
    CONFIGURATION_ERROR = (500, "CONFIGURATION_ERROR")
    RATE_LIMITED = (429, "RATE_LIMITED")
    UNAUTHORIZED = (403, "UNAUTHORIZED")
    CONTENT_BLOCKED = (400, "CONTENT_BLOCKED")
    BAD_REQUEST = (400, "BAD_REQUEST")
    MALFORMED_UPSTREAM_RESPONSE = (500, "MALFORMED_UPSTREAM_RESPONSE")
    SERVICE_UNAVAILABLE = (503, "SERVICE_UNAVAILABLE")
    UPSTREAM_ERROR = (502, "UPSTREAM_ERROR")
    # HTTP boundary only
    METHOD_NOT_ALLOWED = (405, "METHOD_NOT_ALLOWED")
    UNSUPPORTED_MEDIA_TYPE = (415, "UNSUPPORTED_MEDIA_TYPE")
    CLIENT_CLOSED_REQUEST = (499, "CLIENT_CLOSED_REQUEST")
    INTERNAL_ERROR = (500, "INTERNAL_ERROR")

    @property
    def status_code(self) -> int:
        return self.value[0]

    @property
    def code(self) -> str:
        return self.value[1]


class ProxyError(Exception):
    """Base error. Subclasses pin ``kind``; ``details`` is the short client-safe hint."""
    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(self, message: str, details: Optional[str] = None, *, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if kind is not None:
            self.kind = kind

    @property
    def status_code(self) -> int:
        return self.kind.status_code

    @property
    def code(self) -> str:
        return self.kind.code


class ValidationError(ProxyError):
    kind = ErrorKind.VALIDATION_ERROR


class ConfigurationError(ProxyError):
    kind = ErrorKind.CONFIGURATION_ERROR


class RateLimited(ProxyError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, details: Optional[str] = None, *, retry_after: int = 60):
        super().__init__(message, details)
        self.retry_after = max(1, int(retry_after))


class Unauthorized(ProxyError):
    kind = ErrorKind.UNAUTHORIZED


class ContentBlocked(ProxyError):
    kind = ErrorKind.CONTENT_BLOCKED


class BadRequest(ProxyError):
    kind = ErrorKind.BAD_REQUEST


class MalformedUpstreamResponse(ProxyError):
    kind = ErrorKind.MALFORMED_UPSTREAM_RESPONSE


class ServiceUnavailable(ProxyError):
    kind = ErrorKind.SERVICE_UNAVAILABLE


class UpstreamError(ProxyError):
    kind = ErrorKind.UPSTREAM_ERROR

    def __init__(self, message: str, details: Optional[str] = None, *, upstream_status: Optional[int] = None):
        super().__init__(message, details)
        self.upstream_status = upstream_status


__all__ = [
    "ErrorKind",
    "ProxyError",
    "ValidationError",
    "ConfigurationError",
    "RateLimited",
    "Unauthorized",
    "ContentBlocked",
    "BadRequest",
    "MalformedUpstreamResponse",
    "ServiceUnavailable",
    "UpstreamError",
]
