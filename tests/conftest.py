"""Shared pytest fixtures and fakes."""

import asyncio
import time
from collections import deque
from typing import Any, Awaitable, Callable

import pytest
from loguru import logger

from netlayer.services import (
    ApiClient,
    CacheManager,
    MemoryCredentialStore,
    Notifier,
    Transport,
    TransportHandle,
    TransportRequest,
    TransportResponse,
)
from netlayer.services.token import TokenState
from netlayer.settings import Settings


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeNotifier(Notifier):
    """Records every UI effect. Modals answer from a queue, then ``default_answer``."""

    def __init__(self, answers: list[bool] | None = None, default_answer: bool = False):
        self.toasts: list[str] = []
        self.modals: list[dict[str, Any]] = []
        self.loading: list[str] = []
        self.settings_opened = 0
        self.relaunched: list[str] = []
        self.answers = deque(answers or [])
        self.default_answer = default_answer

    def show_toast(self, message: str, duration: float = 2.5) -> None:
        self.toasts.append(message)

    async def show_modal(
        self,
        title: str,
        content: str,
        confirm_text: str = "OK",
        cancel_text: str = "Cancel",
        show_cancel: bool = True,
    ) -> bool:
        self.modals.append(
            {"title": title, "content": content, "show_cancel": show_cancel}
        )
        return self.answers.popleft() if self.answers else self.default_answer

    def show_loading(self, text: str) -> None:
        self.loading.append(f"show:{text}")

    def hide_loading(self) -> None:
        self.loading.append("hide")

    def open_settings(self) -> None:
        self.settings_opened += 1

    def relaunch(self, route: str) -> None:
        self.relaunched.append(route)


Outcome = TransportResponse | Exception | Callable[[TransportRequest], Awaitable[TransportResponse]]


class FakeTransport(Transport):
    """
    Scripted transport.

    Each URL has a queue of outcomes: a TransportResponse, an exception to
    raise, or an async callable receiving the request. The last outcome of a
    queue repeats. Unscripted URLs answer 404.
    """

    def __init__(self):
        self.routes: dict[str, list[Outcome]] = {}
        self.requests: list[TransportRequest] = []
        self.closed = False

    def script(self, url: str, *outcomes: Outcome) -> None:
        self.routes.setdefault(url, []).extend(outcomes)

    def calls(self, url: str) -> int:
        return sum(1 for request in self.requests if request.url == url)

    def send(self, request: TransportRequest) -> TransportHandle:
        self.requests.append(request)
        queue = self.routes.get(request.url)
        if not queue:
            outcome: Outcome = TransportResponse(404, None)
        elif len(queue) > 1:
            outcome = queue.pop(0)
        else:
            outcome = queue[0]
        return TransportHandle(asyncio.create_task(self._resolve(outcome, request)))

    async def _resolve(self, outcome: Outcome, request: TransportRequest) -> TransportResponse:
        await asyncio.sleep(0)
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, TransportResponse):
            return outcome
        return await outcome(request)

    async def close(self) -> None:
        self.closed = True


async def hang(request: TransportRequest) -> TransportResponse:
    """Outcome that never completes on its own."""
    await asyncio.Event().wait()
    raise AssertionError("hang() returned")


def ok(data: Any = None) -> TransportResponse:
    return TransportResponse(200, {"code": 0, "message": "ok", "data": data})


def envelope(code: int, message: str = "", data: Any = None) -> TransportResponse:
    return TransportResponse(200, {"code": code, "message": message, "data": data})


async def wait_until(predicate: Callable[[], Any], attempts: int = 200) -> None:
    """Yield to the event loop until ``predicate`` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


async def drain(client: ApiClient) -> None:
    """Wait for the client's background work (revalidation, dialogs)."""
    while client._background:
        await asyncio.gather(*list(client._background), return_exceptions=True)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        api_base_url="https://api.test.dev",
        retry_base_delay=0.01,
        retry_max_delay=0.05,
    )


@pytest.fixture
def credentials() -> MemoryCredentialStore:
    """A valid token that expires in an hour."""
    return MemoryCredentialStore(
        TokenState(
            access_token="token-1",
            expires_at=time.time() + 3600,
            refresh_token="refresh-1",
        )
    )


@pytest.fixture
def log_messages():
    """Collect (level, message) pairs emitted through loguru."""
    messages: list[tuple[str, str]] = []
    handler_id = logger.add(
        lambda m: messages.append((m.record["level"].name, m.record["message"])),
        level="DEBUG",
    )
    yield messages
    logger.remove(handler_id)


@pytest.fixture
async def client(
    settings: Settings,
    transport: FakeTransport,
    notifier: FakeNotifier,
    credentials: MemoryCredentialStore,
    clock: FakeClock,
):
    api = ApiClient(
        settings,
        transport=transport,
        notifier=notifier,
        credentials=credentials,
        cache=CacheManager(clock=clock),
    )
    yield api
    await api.close()
