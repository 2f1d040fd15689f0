"""
Service layer exceptions.

Every failure that leaves the request layer is a ServiceError: a classified
record carrying a technical message (``str(err)``) for logs and a separate
user-facing message for the UI.
"""

import time
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Error taxonomy."""

    NETWORK = "NETWORK"
    AUTH = "AUTH"
    PERMISSION = "PERMISSION"
    VALIDATION = "VALIDATION"
    BUSINESS = "BUSINESS"
    UNKNOWN = "UNKNOWN"


class ErrorLevel(str, Enum):
    """Error severity. FATAL opens a blocking modal instead of a toast."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    FATAL = "FATAL"


DEFAULT_USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.NETWORK: "Network connection failed, please check your network settings",
    ErrorKind.AUTH: "Your session has expired, please try again",
    ErrorKind.PERMISSION: "Permission is required to continue",
    ErrorKind.VALIDATION: "Some of the information entered is invalid",
    ErrorKind.BUSINESS: "The request could not be completed",
    ErrorKind.UNKNOWN: "Operation failed, please try again later",
}


class ServiceError(Exception):
    """Base exception for service layer errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        user_message: str | None = None,
        code: int | str | None = None,
        kind: ErrorKind | None = None,
        level: ErrorLevel = ErrorLevel.ERROR,
        context: str | None = None,
        backend_unavailable: bool = False,
        details: Any = None,
    ):
        if kind is not None:
            self.kind = kind
        # The UI never shows the technical diagnostic text
        if not user_message or user_message == message:
            user_message = DEFAULT_USER_MESSAGES[self.kind]
        self.user_message = user_message
        self.code = code
        self.level = level
        self.context = context
        self.backend_unavailable = backend_unavailable
        self.details = details
        self.timestamp = time.time()
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)

    @property
    def cause(self) -> BaseException | None:
        return self.__cause__

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "kind": self.kind.value,
            "level": self.level.value,
            "message": self.message,
            "user_message": self.user_message,
            "code": self.code,
            "context": self.context,
            "backend_unavailable": self.backend_unavailable,
            "timestamp": self.timestamp,
        }


class NetworkError(ServiceError):
    """Connectivity, gateway or backend availability failure."""

    kind = ErrorKind.NETWORK


class AuthError(ServiceError):
    """Expired or invalid credentials, or a failed token refresh."""

    kind = ErrorKind.AUTH


class PermissionDeniedError(ServiceError):
    """A required device or account grant is missing."""

    kind = ErrorKind.PERMISSION


class ValidationFailedError(ServiceError):
    """Malformed input."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, field: str | None = None, **kwargs: Any):
        self.field = field
        kwargs.setdefault("level", ErrorLevel.WARNING)
        super().__init__(message, **kwargs)


class BusinessError(ServiceError):
    """The backend rejected the request by a domain rule."""

    kind = ErrorKind.BUSINESS


class TransportError(NetworkError):
    """The transport call itself failed (connection, timeout, abort)."""

    pass


class RequestCancelledError(TransportError):
    """The in-flight request was cancelled through the lifecycle registry."""

    def __init__(self, request_id: str | None = None):
        self.request_id = request_id
        super().__init__(
            f"Request '{request_id}' was cancelled",
            user_message="The request was cancelled",
            code="cancelled",
            level=ErrorLevel.INFO,
        )


class TokenExpiredError(AuthError):
    """The backend reported the access token as expired (HTTP 401 or envelope code)."""

    pass
