"""
Router exceptions.

Every error carries the service it concerns and a free-form context dict, and
can render itself for API responses and structured logs via ``to_dict()``.
"""

from typing import Any, Dict, List, Optional


class RouterError(Exception):
    """Base exception for all mesh router errors."""

    def __init__(self, message: str, service: Optional[str] = None,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.service = service
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses and logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "service": self.service,
            "context": self.context
        }


class ConfigError(RouterError):
    """
    Raised when routing configuration is invalid.

    Fatal to the load or reload that produced it; a running router keeps
    serving with its last-known-good configuration.
    """

    def __init__(self, message: str, service: Optional[str] = None,
                 errors: Optional[List[str]] = None,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message, service, context)
        self.errors = errors or []

    def to_dict(self) -> Dict[str, Any]:
        base_dict = super().to_dict()
        base_dict.update({
            "error": "config_error",
            "errors": self.errors
        })
        return base_dict


class ServiceUnavailable(RouterError):
    """
    Raised when a request cannot be served.

    Either the resolved version has no healthy endpoint, or every forwarding
    attempt failed.
    """

    def __init__(self, message: str, service: Optional[str] = None,
                 version: Optional[str] = None,
                 attempts: int = 0,
                 last_error: Optional[str] = None):
        super().__init__(message, service)
        self.version = version
        self.attempts = attempts
        self.last_error = last_error

    def to_dict(self) -> Dict[str, Any]:
        base_dict = super().to_dict()
        base_dict.update({
            "error": "service_unavailable",
            "version": self.version,
            "attempts": self.attempts,
            "last_error": self.last_error
        })
        return base_dict

    def get_http_status_code(self) -> int:
        return 503


class UnknownServiceError(RouterError):
    """Raised when no configured service claims the request's host."""

    def __init__(self, message: str, host: Optional[str] = None):
        super().__init__(message)
        self.host = host

    def to_dict(self) -> Dict[str, Any]:
        base_dict = super().to_dict()
        base_dict.update({"error": "unknown_service", "host": self.host})
        return base_dict

    def get_http_status_code(self) -> int:
        return 404


class ForwardingFailure(RouterError):
    """
    Raised when a single forwarding attempt fails.

    Transient: the dispatcher retries against another endpoint and only
    surfaces ServiceUnavailable once the attempt limit is reached.
    """

    def __init__(self, message: str, endpoint_id: Optional[str] = None,
                 status_code: Optional[int] = None,
                 original_exception: Optional[BaseException] = None):
        super().__init__(message)
        self.endpoint_id = endpoint_id
        self.status_code = status_code
        self.original_exception = original_exception

    def to_dict(self) -> Dict[str, Any]:
        base_dict = super().to_dict()
        base_dict.update({
            "error": "forwarding_failure",
            "endpoint_id": self.endpoint_id,
            "status_code": self.status_code,
            "original_error_type": type(self.original_exception).__name__ if self.original_exception else None
        })
        return base_dict


class ProbeFailure(RouterError):
    """A failed health probe. Recorded into breaker state, never surfaced."""

    def __init__(self, message: str, endpoint_id: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.endpoint_id = endpoint_id
        self.status_code = status_code
