"""
ErrorHandler - classifies arbitrary failures and applies their side effects.

Classification precedence:
1. Already classified (ServiceError); gateway text in its message re-kinds it to Network
2. Transport failure (httpx transport errors, ConnectionError, TimeoutError)
3. HTTP status or business code (httpx.HTTPStatusError, envelope payloads)
4. Validation failure (pydantic.ValidationError)
5. Permission failure (PermissionError)
6. Any other exception
7. Plain string
8. Anything else

Side effects per kind:
- AUTH: clear credentials, optionally relaunch at the auth route, no toast
- PERMISSION: modal offering to open the settings, no toast
- FATAL level (any kind): blocking modal
- backend unavailable (any kind but AUTH): a single warning log, nothing shown
- everything else: toast with the user message
"""

import asyncio
from collections import deque
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, Coroutine, TypeVar

import httpx
import pydantic
from loguru import logger

from netlayer.services.envelope import (
    Envelope,
    backend_message,
    error_for_status,
    is_backend_unavailable_text,
)
from netlayer.services.errors import (
    AuthError,
    BusinessError,
    ErrorKind,
    ErrorLevel,
    NetworkError,
    PermissionDeniedError,
    ServiceError,
    TransportError,
    ValidationFailedError,
)
from netlayer.services.notifier import Notifier
from netlayer.services.token import CredentialStore

T = TypeVar("T")

PERMISSION_MESSAGES: dict[str, str] = {
    "scope.userLocation": "Access to your location is required",
    "scope.userInfo": "Access to your profile is required",
    "scope.writePhotosAlbum": "Permission to save images to your album is required",
    "scope.camera": "Access to the camera is required",
}

_WARNING_KINDS = frozenset(
    {ErrorKind.VALIDATION, ErrorKind.BUSINESS, ErrorKind.PERMISSION}
)


def _reads_as_gateway_failure(record: ServiceError) -> bool:
    """Gateway text in a message, for records not already tied to another cause."""
    # Connection failures and auth failures are never re-read from their text
    if isinstance(record, TransportError) or record.kind == ErrorKind.AUTH:
        return False
    return is_backend_unavailable_text(record.message)


class ErrorHandler:
    """
    Error normalizer and side-effect dispatcher.

    Usage:
        handler = ErrorHandler(notifier, credentials)

        try:
            await do_something()
        except Exception as e:
            record = handler.handle(e, context="checkout")
    """

    def __init__(
        self,
        notifier: Notifier,
        credentials: CredentialStore | None = None,
        redirect_on_auth_failure: bool = False,
        auth_route: str = "/pages/user_center/index",
        history_size: int = 100,
    ):
        self._notifier = notifier
        self._credentials = credentials
        self._redirect_on_auth_failure = redirect_on_auth_failure
        self._auth_route = auth_route
        self._history: deque[ServiceError] = deque(maxlen=history_size)
        self._ui_tasks: set[asyncio.Task[Any]] = set()

    # Classification

    def classify(self, error: Any, context: str | None = None) -> ServiceError:
        """Turn any failure into a ServiceError. No side effects."""
        if isinstance(error, ServiceError):
            record = error
            if not record.backend_unavailable and _reads_as_gateway_failure(record):
                record = self._as_backend_unavailable(record)
        else:
            record = self._classify_raw(error)
            if isinstance(error, BaseException):
                record.__cause__ = error

        if context and record.context is None:
            record.context = context
        return record

    def _as_backend_unavailable(self, record: ServiceError) -> ServiceError:
        if isinstance(record, NetworkError):
            record.backend_unavailable = True
            return record
        rekinded = NetworkError(
            record.message,
            code=record.code,
            context=record.context,
            backend_unavailable=True,
            details=record.details,
        )
        rekinded.__cause__ = record
        return rekinded

    def _classify_raw(self, error: Any) -> ServiceError:
        if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError)):
            return NetworkError(
                f"Network request failed: {type(error).__name__}: {error}",
                code="connection_failed",
                backend_unavailable=isinstance(error, httpx.ProxyError),
            )

        if isinstance(error, httpx.HTTPStatusError):
            response = error.response
            try:
                body: Any = response.json()
            except ValueError:
                body = response.text
            return error_for_status(response.status_code, body)

        if isinstance(error, Mapping) and "code" in error:
            return self._classify_payload(error)

        if isinstance(error, pydantic.ValidationError):
            first = error.errors()[0] if error.error_count() else {}
            field = ".".join(str(part) for part in first.get("loc", ()))
            return ValidationFailedError(
                f"Validation failed: {error.error_count()} error(s) in {error.title}",
                field=field or None,
                user_message=first.get("msg"),
            )

        if isinstance(error, PermissionError):
            return PermissionDeniedError(f"Permission denied: {error}")

        if isinstance(error, Exception):
            text = f"{type(error).__name__}: {error}"
            return self._from_text(text)

        if isinstance(error, str):
            return self._from_text(error)

        return ServiceError(f"Unknown error: {error!r}")

    def _classify_payload(self, payload: Mapping[str, Any]) -> ServiceError:
        try:
            envelope = Envelope.model_validate(dict(payload))
        except pydantic.ValidationError:
            return ServiceError(f"Unrecognized error payload: {dict(payload)!r}")
        return BusinessError(
            f"API error [{envelope.code}]: {envelope.message}",
            user_message=envelope.message or backend_message(payload),
            code=envelope.code,
            details=envelope.data,
        )

    def _from_text(self, text: str) -> ServiceError:
        if is_backend_unavailable_text(text):
            return NetworkError(text, backend_unavailable=True)
        return ServiceError(text)

    def is_backend_unavailable(self, error: Any) -> bool:
        """True when the failure looks like a gateway/proxy outage."""
        if isinstance(error, ServiceError):
            return error.backend_unavailable or _reads_as_gateway_failure(error)
        if isinstance(error, BaseException):
            return is_backend_unavailable_text(str(error))
        if isinstance(error, str):
            return is_backend_unavailable_text(error)
        return False

    # Reporting

    def handle(self, error: Any, context: str | None = None) -> ServiceError:
        """Classify, log and show a failure. Returns the classified record."""
        return self.report(self.classify(error, context))

    def report(self, record: ServiceError) -> ServiceError:
        """Log an already classified record and apply its side effects."""
        self._history.append(record)
        where = f" ({record.context})" if record.context else ""

        # Auth failures keep their side effects even when a gateway caused them
        if record.kind != ErrorKind.AUTH and self.is_backend_unavailable(record):
            record.backend_unavailable = True
            logger.warning(f"[backend unavailable] {record.message}{where}")
            return record

        if record.kind in _WARNING_KINDS or record.level in (ErrorLevel.INFO, ErrorLevel.WARNING):
            logger.warning(f"[{record.kind.value}] {record.message}{where}")
        else:
            logger.error(f"[{record.kind.value}] {record.message}{where}")

        self._show_user_message(record)
        return record

    def _show_user_message(self, record: ServiceError) -> None:
        if record.kind == ErrorKind.AUTH:
            self._on_auth_failure()
            return

        if record.kind == ErrorKind.PERMISSION:
            self._spawn(self._permission_modal(record))
            return

        if record.level == ErrorLevel.FATAL:
            self._spawn(
                self._notifier.show_modal(
                    title="Error",
                    content=record.user_message,
                    confirm_text="Got it",
                    show_cancel=False,
                )
            )
            return

        self._notifier.show_toast(record.user_message)

    def _on_auth_failure(self) -> None:
        if self._credentials is not None:
            self._credentials.clear_token()
        if self._redirect_on_auth_failure:
            self._notifier.relaunch(self._auth_route)

    async def _permission_modal(self, record: ServiceError) -> None:
        confirmed = await self._notifier.show_modal(
            title="Authorization required",
            content=f"{record.user_message}, please enable it in settings",
            confirm_text="Open settings",
        )
        if confirmed:
            self._notifier.open_settings()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("No running event loop, dialog skipped")
            return
        task = loop.create_task(coro)
        self._ui_tasks.add(task)
        task.add_done_callback(self._ui_tasks.discard)

    # Typed entry points

    def handle_network_error(self, error: Any, context: str | None = None) -> ServiceError:
        detail = str(error) if error else "unknown error"
        record = NetworkError(f"Network request failed: {detail}", context=context)
        if isinstance(error, BaseException):
            record.__cause__ = error
        return self.report(record)

    def handle_auth_error(self, error: Any, context: str | None = None) -> ServiceError:
        detail = str(error) if error else "unknown error"
        record = AuthError(
            f"Authentication failed: {detail}",
            user_message="Your session has expired, please log in again",
            context=context,
        )
        if isinstance(error, BaseException):
            record.__cause__ = error
        return self.report(record)

    def handle_permission_error(self, permission: str, context: str | None = None) -> ServiceError:
        record = PermissionDeniedError(
            f"Permission denied: {permission}",
            user_message=PERMISSION_MESSAGES.get(permission, "Permission is required to continue"),
            context=context,
            details={"permission": permission},
        )
        return self.report(record)

    def handle_validation_error(
        self, field: str, message: str, context: str | None = None
    ) -> ServiceError:
        record = ValidationFailedError(
            f"Validation failed: {field} - {message}",
            field=field,
            user_message=message,
            context=context,
        )
        return self.report(record)

    def handle_business_error(self, message: str, context: str | None = None) -> ServiceError:
        record = BusinessError(
            f"Business error: {message}", user_message=message, context=context
        )
        return self.report(record)

    # Wrappers

    async def safe_execute(
        self,
        fn: Callable[[], Awaitable[T]],
        context: str | None = None,
        fallback: T | None = None,
    ) -> T | None:
        """Run ``fn``; on failure report it and return ``fallback``."""
        try:
            return await fn()
        except Exception as e:
            self.handle(e, context)
            return fallback

    async def execute_with_retry(
        self,
        fn: Callable[[], Awaitable[T]],
        max_retries: int = 3,
        retry_delay: float = 1.0,
        context: str | None = None,
    ) -> T:
        """Run ``fn`` up to ``max_retries`` times; report and raise the last failure."""
        last_error: Exception | None = None

        for attempt in range(max_retries):
            try:
                return await fn()
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Attempt {attempt + 1}/{max_retries} failed: {e}"
                    + (f" ({context})" if context else "")
                )
                if attempt < max_retries - 1:
                    await asyncio.sleep(retry_delay)

        raise self.handle(last_error, context)

    # History

    def get_history(self) -> list[ServiceError]:
        return list(self._history)

    def clear_history(self) -> None:
        self._history.clear()
