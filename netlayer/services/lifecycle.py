"""
RequestLifecycleRegistry - bookkeeping for in-flight requests.

Tracks every transport handle by request id so callers can cancel a single
request, every request of a page (context tag), or everything at once.
Also hosts per-key debounce/throttle timers and a periodic sweep that
force-cancels handles which never signalled completion.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass
from typing import Any, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from netlayer.services.transport import TransportHandle


@dataclass
class InFlightTask:
    """A registered request."""

    request_id: str
    handle: TransportHandle
    registered_at: float
    context: str | None = None


class RequestLifecycleRegistry:
    """
    Registry of in-flight requests.

    Usage:
        registry = RequestLifecycleRegistry()
        registry.register("GET_/v1/orders", handle, context="orders_page")

        # page unmounted
        registry.cancel_by_context("orders_page")
    """

    def __init__(
        self,
        stale_after: float = 30.0,
        sweep_interval: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        debug: bool = False,
    ):
        self._tasks: dict[str, InFlightTask] = {}
        self._stale_after = stale_after
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._debug = debug
        self._stats = RegistryStats()

        self._debounce_timers: dict[str, asyncio.TimerHandle] = {}
        self._throttle_timers: dict[str, asyncio.TimerHandle] = {}
        self._throttle_last_run: dict[str, float] = {}
        self._spawned: set[asyncio.Task[Any]] = set()

        self._scheduler: AsyncIOScheduler | None = None

    def register(
        self,
        request_id: str,
        handle: TransportHandle,
        context: str | None = None,
    ) -> None:
        """Track a handle. An existing request under the same id is cancelled first."""
        if request_id in self._tasks:
            self._stats.replaced += 1
            self._log(f"REPLACE: {request_id}")
            self.cancel(request_id)

        self._tasks[request_id] = InFlightTask(
            request_id=request_id,
            handle=handle,
            registered_at=self._clock(),
            context=context,
        )
        self._stats.registered += 1
        self._log(f"REGISTER: {request_id} (context: {context})")

    def unregister(self, request_id: str, handle: TransportHandle | None = None) -> bool:
        """
        Stop tracking a request.

        When ``handle`` is given the entry is only removed if it still belongs
        to that handle, so a replaced request never drops its replacement.
        """
        task = self._tasks.get(request_id)
        if task is None:
            return False
        if handle is not None and task.handle is not handle:
            return False
        del self._tasks[request_id]
        self._log(f"UNREGISTER: {request_id}")
        return True

    def cancel(self, request_id: str) -> bool:
        """Abort and forget a request."""
        task = self._tasks.pop(request_id, None)
        if task is None:
            return False
        self._abort(task)
        self._stats.cancelled += 1
        self._log(f"CANCEL: {request_id}")
        return True

    def cancel_by_context(self, context: str) -> int:
        """Cancel every request registered under ``context``."""
        ids = [rid for rid, task in self._tasks.items() if task.context == context]
        for request_id in ids:
            self.cancel(request_id)
        if ids:
            logger.debug(f"Cancelled {len(ids)} requests for context '{context}'")
        return len(ids)

    def cancel_all(self) -> int:
        """Cancel every tracked request and pending timer."""
        count = len(self._tasks)
        for request_id in list(self._tasks):
            self.cancel(request_id)

        for timer in [*self._debounce_timers.values(), *self._throttle_timers.values()]:
            timer.cancel()
        self._debounce_timers.clear()
        self._throttle_timers.clear()

        if count:
            logger.debug(f"Cancelled all {count} in-flight requests")
        return count

    def _abort(self, task: InFlightTask) -> None:
        try:
            task.handle.abort()
        except Exception as e:
            self._log(f"ABORT FAILED: {task.request_id}: {e}")

    def sweep_stale(self, max_age: float | None = None) -> int:
        """Force-cancel requests registered longer than ``max_age`` seconds ago."""
        max_age = self._stale_after if max_age is None else max_age
        now = self._clock()
        stale = [
            rid for rid, task in self._tasks.items() if now - task.registered_at > max_age
        ]
        for request_id in stale:
            self.cancel(request_id)
        if stale:
            self._stats.swept += len(stale)
            logger.warning(f"Swept {len(stale)} stale requests: {stale}")
        return len(stale)

    def start_sweeper(self) -> None:
        """Run ``sweep_stale`` periodically on the running event loop."""
        if self._scheduler is not None:
            logger.warning("Request sweeper is already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._sweep_job,
            trigger="interval",
            seconds=self._sweep_interval,
            id="request_stale_sweep",
            name="Stale request sweeper",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(f"Request sweeper started: every {self._sweep_interval}s")

    def stop_sweeper(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Request sweeper stopped")

    async def _sweep_job(self) -> None:
        # A coroutine job runs on the event loop thread, a plain function would not
        self.sweep_stale()

    def debounce(self, key: str, fn: Callable[[], Any], delay: float) -> None:
        """Run ``fn`` once ``delay`` seconds pass without another call for ``key``."""
        existing = self._debounce_timers.pop(key, None)
        if existing is not None:
            existing.cancel()

        def fire() -> None:
            self._debounce_timers.pop(key, None)
            self._invoke(fn)

        loop = asyncio.get_running_loop()
        self._debounce_timers[key] = loop.call_later(delay, fire)

    def throttle(self, key: str, fn: Callable[[], Any], delay: float) -> None:
        """
        Run ``fn`` at most once per ``delay`` seconds for ``key``.

        A call inside the window schedules one trailing run at the end of it;
        further calls in the same window are dropped.
        """
        loop = asyncio.get_running_loop()
        now = loop.time()
        last = self._throttle_last_run.get(key)

        if last is None or now - last >= delay:
            self._throttle_last_run[key] = now
            self._invoke(fn)
            return

        if key in self._throttle_timers:
            return

        def fire() -> None:
            self._throttle_timers.pop(key, None)
            self._throttle_last_run[key] = loop.time()
            self._invoke(fn)

        self._throttle_timers[key] = loop.call_later(delay - (now - last), fire)

    def _invoke(self, fn: Callable[[], Any]) -> None:
        result = fn()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._spawned.add(task)
            task.add_done_callback(self._spawned.discard)

    def get_in_flight_count(self) -> int:
        return len(self._tasks)

    def get_in_flight_ids(self) -> list[str]:
        return list(self._tasks.keys())

    def get(self, request_id: str) -> InFlightTask | None:
        return self._tasks.get(request_id)

    def get_stats(self) -> "RegistryStats":
        self._stats.in_flight = len(self._tasks)
        return self._stats

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[Registry] {message}")


@dataclass
class RegistryStats:
    """Statistics for request lifecycle tracking."""

    registered: int = 0
    replaced: int = 0
    cancelled: int = 0
    swept: int = 0
    in_flight: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "registered": self.registered,
            "replaced": self.replaced,
            "cancelled": self.cancelled,
            "swept": self.swept,
            "in_flight": self.in_flight,
        }
