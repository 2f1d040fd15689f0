"""
Response envelope and HTTP status classification.

Every enveloped API response is ``{"code": int, "message": str, "data": ...}``.
The helpers here turn raw status codes and bodies into typed errors at the
transport boundary.
"""

from typing import Any

from pydantic import BaseModel

from netlayer.services.errors import BusinessError, NetworkError, ServiceError

ENVELOPE_HEADER = "X-Response-Envelope"

# Substrings that identify gateway/proxy failures rather than backend answers
BACKEND_UNAVAILABLE_MARKERS = (
    "502",
    "503",
    "504",
    "nginx",
    "gateway",
    "proxy",
    "backend unavailable",
)

SERVICE_UNAVAILABLE_MESSAGE = "Service temporarily unavailable, please try again later"


class Envelope(BaseModel):
    """Uniform API response wrapper."""

    code: int
    message: str = ""
    data: Any = None


def is_backend_unavailable_text(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in BACKEND_UNAVAILABLE_MARKERS)


def is_html(body: str) -> bool:
    stripped = body.strip()
    lowered = stripped.lower()
    return stripped.startswith("<") or "<!doctype" in lowered or "<html" in lowered


def backend_message(body: Any) -> str:
    """Best-effort server message from an error body."""
    if isinstance(body, dict):
        for field in ("message", "error"):
            value = body.get(field)
            if isinstance(value, str) and value:
                return value
    return ""


def error_for_status(status_code: int, body: Any = None) -> ServiceError:
    """Classify a non-2xx response (other than 401)."""
    message = backend_message(body)

    if status_code >= 500:
        return NetworkError(
            f"Gateway error ({status_code}): backend unavailable",
            user_message=SERVICE_UNAVAILABLE_MESSAGE,
            code=status_code,
            backend_unavailable=True,
        )

    if status_code == 404:
        return NetworkError(
            "Service not found (404): the backend may not be running",
            user_message=SERVICE_UNAVAILABLE_MESSAGE,
            code=status_code,
        )

    if status_code == 400:
        return BusinessError(
            f"Bad request (400): {message}",
            user_message=message or "Invalid request parameters",
            code=status_code,
        )

    if status_code == 409:
        return BusinessError(
            f"Conflict (409): {message}",
            user_message=message or "The operation conflicts with the current state, please retry",
            code=status_code,
        )

    if status_code >= 400:
        return BusinessError(
            f"Client error ({status_code}): {message}",
            user_message=message or "Request failed, please try again later",
            code=status_code,
        )

    return NetworkError(
        f"Unexpected HTTP status {status_code}",
        user_message="The server responded unexpectedly, please try again later",
        code=status_code,
    )


def error_for_text_body(body: str) -> ServiceError:
    """Classify a response that came back as text instead of a JSON envelope."""
    if is_html(body):
        lowered = body.lower()
        gateway_page = "nginx" in lowered or any(
            marker in lowered
            for marker in ("502 bad gateway", "503 service", "504 gateway")
        )
        reason = (
            "nginx error page: backend did not respond"
            if gateway_page
            else "HTML response where JSON was expected (gateway page)"
        )
        return NetworkError(
            reason,
            user_message=SERVICE_UNAVAILABLE_MESSAGE,
            backend_unavailable=True,
            details=body[:300],
        )

    return BusinessError(
        "Malformed API response: body is not an object",
        user_message="The server responded unexpectedly, please try again later",
        details=body[:300],
    )
