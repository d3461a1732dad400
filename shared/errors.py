"""
Shared error handling for the content cache service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class ContentLayerException(Exception):
    """Base exception for the content service."""

    status_code: int = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class AuthenticationError(ContentLayerException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class ValidationError(ContentLayerException):
    """Validation-related errors."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class NotFoundError(ContentLayerException):
    """The remote path does not exist."""

    status_code = 404

    def __init__(self, path: str, details: Optional[Dict[str, Any]] = None):
        self.path = path
        super().__init__("NOT_FOUND", f"Remote path not found: {path}", details)


class QuotaExhaustedError(ContentLayerException):
    """Request budget for a remote interface is spent, locally predicted or remote-reported."""

    status_code = 503

    def __init__(
        self,
        interface: str,
        message: str = "Remote request quota exhausted",
        retry_after: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.interface = interface
        self.retry_after = retry_after
        merged = {"interface": interface, "retry_after": retry_after}
        merged.update(details or {})
        super().__init__("QUOTA_EXHAUSTED", message, merged)


class TransientNetworkError(ContentLayerException):
    """Connection failure or 5xx response; retried before surfacing."""

    status_code = 503

    def __init__(
        self,
        message: str = "Transient network failure",
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[float] = None,
    ):
        self.retry_after = retry_after
        super().__init__("TRANSIENT_NETWORK_ERROR", message, details)


class UpstreamUnavailableError(ContentLayerException):
    """The remote store could not be reached after retries, or refused the call."""

    status_code = 503

    def __init__(self, service: str, message: str = "Upstream unavailable", details: Optional[Dict[str, Any]] = None):
        self.service = service
        super().__init__("UPSTREAM_UNAVAILABLE", f"{service}: {message}", details)


class InvalidDataError(ContentLayerException):
    """Remote content did not parse as the expected JSON or structure."""

    status_code = 502

    def __init__(self, path: str, message: str = "Invalid remote data", details: Optional[Dict[str, Any]] = None):
        self.path = path
        super().__init__("INVALID_DATA", f"{message}: {path}", details)
