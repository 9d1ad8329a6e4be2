"""Custom exception classes for the deals assistant service."""

from enum import Enum
from typing import Any, Dict, Optional


class OrchestratorException(Exception):
    """Base exception for all deals assistant errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response."""
        return {
            "error": {
                "message": self.message,
                "code": self.code,
                "status_code": self.status_code,
                "details": self.details,
            }
        }


class GatewayErrorKind(str, Enum):
    """Closed set of model provider failure kinds."""

    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT = "TIMEOUT"
    AUTH_ERROR = "AUTH_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"
    MODEL_ERROR = "MODEL_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    CONFIG_ERROR = "CONFIG_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"

    @property
    def retryable(self) -> bool:
        return self not in _FATAL_KINDS

    @property
    def status_code(self) -> int:
        return _KIND_STATUS[self]


_FATAL_KINDS = frozenset(
    {
        GatewayErrorKind.AUTH_ERROR,
        GatewayErrorKind.INVALID_REQUEST,
        GatewayErrorKind.CONFIG_ERROR,
    }
)

_KIND_STATUS: Dict[GatewayErrorKind, int] = {
    GatewayErrorKind.RATE_LIMIT: 429,
    GatewayErrorKind.TIMEOUT: 504,
    GatewayErrorKind.AUTH_ERROR: 401,
    GatewayErrorKind.INVALID_REQUEST: 400,
    GatewayErrorKind.MODEL_ERROR: 503,
    GatewayErrorKind.NETWORK_ERROR: 503,
    GatewayErrorKind.CONFIG_ERROR: 500,
    GatewayErrorKind.UNKNOWN_ERROR: 500,
}


class GatewayError(OrchestratorException):
    """Exception raised by the LLM gateway, tagged with a closed error kind."""

    def __init__(
        self,
        kind: GatewayErrorKind,
        message: Optional[str] = None,
        retry_after: Optional[float] = None,
        model: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if model:
            error_details["model"] = model
        if retry_after is not None:
            error_details["retry_after"] = retry_after
        self.kind = kind
        self.retry_after = retry_after
        super().__init__(
            message=message or kind.value,
            status_code=kind.status_code,
            code=kind.value,
            details=error_details,
        )

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class ClassificationError(OrchestratorException):
    """Exception raised when the model tier of the classifier returns unusable output."""

    def __init__(
        self,
        message: str = "Could not parse classification output",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=502,
            code="CLASSIFICATION_ERROR",
            details=details,
        )


class ExternalServiceError(OrchestratorException):
    """Exception raised when external service calls fail."""

    def __init__(
        self,
        service: str,
        message: Optional[str] = None,
        status_code: int = 502,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_message = message or f"External service '{service}' unavailable"
        error_details = details or {}
        error_details["service"] = service
        super().__init__(
            message=error_message,
            status_code=status_code,
            code="EXTERNAL_SERVICE_ERROR",
            details=error_details,
        )
