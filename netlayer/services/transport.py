"""
Transport - the send/abort primitive underneath the request layer.

A transport turns a TransportRequest into a running, abortable task and
hands back a TransportHandle. HttpxTransport is the production
implementation on top of httpx.AsyncClient.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from netlayer.services.errors import RequestCancelledError, TransportError


@dataclass
class TransportRequest:
    """A fully built outbound request."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] | None = None
    json: Any = None
    data: dict[str, Any] | None = None
    files: dict[str, Any] | None = None


@dataclass
class TransportResponse:
    """Raw response: status plus the decoded body (JSON value or text)."""

    status_code: int
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)


class TransportHandle:
    """An in-flight transport call that can be aborted."""

    def __init__(self, task: "asyncio.Task[TransportResponse]"):
        self._task = task
        self._aborted = False

    @property
    def aborted(self) -> bool:
        return self._aborted

    def done(self) -> bool:
        return self._task.done()

    def abort(self) -> None:
        """Cancel the call. The awaiting side sees RequestCancelledError."""
        self._aborted = True
        self._task.cancel()

    async def wait(self, request_id: str | None = None) -> TransportResponse:
        """Wait for the response."""
        try:
            return await self._task
        except asyncio.CancelledError:
            if self._aborted:
                raise RequestCancelledError(request_id) from None
            raise


class Transport(ABC):
    """Send/abort capability."""

    @abstractmethod
    def send(self, request: TransportRequest) -> TransportHandle:
        """Start the call and return its handle immediately."""
        ...

    async def close(self) -> None:
        """Release transport resources."""
        return None


class HttpxTransport(Transport):
    """
    Transport backed by httpx.AsyncClient.

    Usage:
        transport = HttpxTransport(base_url="https://api.example.com")
        handle = transport.send(TransportRequest("GET", "/v1/users/me"))
        response = await handle.wait()
    """

    def __init__(
        self,
        base_url: str = "",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._base_url = base_url
        self._timeout = timeout
        self._http_client = client

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
            )
        return self._http_client

    def send(self, request: TransportRequest) -> TransportHandle:
        return TransportHandle(asyncio.create_task(self._perform(request)))

    async def _perform(self, request: TransportRequest) -> TransportResponse:
        client = await self._get_http_client()

        try:
            response = await client.request(
                method=request.method,
                url=request.url,
                params=request.params,
                headers=request.headers,
                json=request.json,
                data=request.data,
                files=request.files,
            )
        except httpx.TimeoutException as e:
            raise TransportError(
                f"Request timed out ({request.method})",
                code="timeout",
            ) from e
        except httpx.RequestError as e:
            raise TransportError(
                f"Connection failed ({request.method}): {type(e).__name__}: {e}",
                code="connection_failed",
            ) from e

        return TransportResponse(
            status_code=response.status_code,
            body=_decode_body(response),
            headers=dict(response.headers),
        )

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text
