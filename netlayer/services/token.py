"""
TokenRefreshCoordinator - single-flight renewal of the access token.

When several requests find the token missing or about to expire at the same
time, only one refresh call goes out. Every caller awaits the same pending
task and sees the same outcome.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable

from loguru import logger
from pydantic import BaseModel

from netlayer.services.errors import AuthError


class TokenGrant(BaseModel):
    """Token payload returned by the auth endpoints."""

    access_token: str
    access_token_expires_at: datetime | None = None
    refresh_token: str | None = None

    def expires_at_epoch(self) -> float | None:
        if self.access_token_expires_at is None:
            return None
        return self.access_token_expires_at.timestamp()


@dataclass
class TokenState:
    """Stored credentials."""

    access_token: str | None = None
    expires_at: float | None = None
    refresh_token: str | None = None


class CredentialStore(ABC):
    """Where the access and refresh tokens live."""

    @abstractmethod
    def get_token(self) -> str | None: ...

    @abstractmethod
    def get_refresh_token(self) -> str | None: ...

    @abstractmethod
    def set_token(
        self,
        token: str,
        expires_at: float | None = None,
        refresh_token: str | None = None,
    ) -> None: ...

    @abstractmethod
    def clear_token(self) -> None: ...

    @abstractmethod
    def is_near_expiry(self, threshold: float) -> bool:
        """True when there is no token or it expires within ``threshold`` seconds."""
        ...


class MemoryCredentialStore(CredentialStore):
    """Process-local credential store."""

    def __init__(
        self,
        state: TokenState | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._state = state or TokenState()
        self._clock = clock

    def get_token(self) -> str | None:
        return self._state.access_token

    def get_refresh_token(self) -> str | None:
        return self._state.refresh_token

    def set_token(
        self,
        token: str,
        expires_at: float | None = None,
        refresh_token: str | None = None,
    ) -> None:
        self._state = TokenState(
            access_token=token,
            expires_at=expires_at,
            # Keep the previous refresh token unless a new one was issued
            refresh_token=refresh_token or self._state.refresh_token,
        )

    def clear_token(self) -> None:
        self._state = TokenState()

    def is_near_expiry(self, threshold: float) -> bool:
        if not self._state.access_token:
            return True
        if self._state.expires_at is None:
            return False
        return self._state.expires_at - self._clock() < threshold

    def get_state(self) -> TokenState:
        return self._state


RenewFn = Callable[[str], Awaitable[TokenGrant]]
ReloginFn = Callable[[], Awaitable[TokenGrant]]


class TokenRefreshCoordinator:
    """
    Coordinates token renewal so that at most one refresh is in flight.

    Usage:
        tokens = TokenRefreshCoordinator(store, renew=renew_access_token)

        # before every authenticated request
        await tokens.ensure_valid()

        # after the backend rejected the token
        await tokens.refresh(force=True)
    """

    def __init__(
        self,
        credentials: CredentialStore,
        renew: RenewFn | None = None,
        relogin: ReloginFn | None = None,
        refresh_threshold: float = 300.0,
        refresh_timeout: float = 10.0,
        settle_window: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        debug: bool = False,
    ):
        self._credentials = credentials
        self._renew = renew
        self._relogin = relogin
        self._refresh_threshold = refresh_threshold
        self._refresh_timeout = refresh_timeout
        self._settle_window = settle_window
        self._clock = clock
        self._debug = debug
        self._pending: asyncio.Task[None] | None = None
        self._last_success_at: float | None = None
        self._stats = TokenStats()

    @property
    def credentials(self) -> CredentialStore:
        return self._credentials

    @property
    def is_refreshing(self) -> bool:
        return self._pending is not None

    async def ensure_valid(self) -> None:
        """Refresh the token first if it is missing or close to expiry."""
        await self.refresh(force=False)

    async def refresh(self, force: bool = False) -> None:
        """
        Refresh the access token, joining a refresh already in flight.

        Args:
            force: Refresh even if the stored token still looks valid

        Raises:
            AuthError: The refresh failed; stored credentials were cleared
        """
        if self._pending is not None:
            self._stats.shared += 1
            self._log("JOIN: waiting for in-flight refresh")
            await asyncio.shield(self._pending)
            return

        if not force and not self._credentials.is_near_expiry(self._refresh_threshold):
            return

        # A burst of rejected requests right after a refresh reuses its result
        if (
            force
            and self._last_success_at is not None
            and self._clock() - self._last_success_at < self._settle_window
        ):
            self._log("SETTLED: token was refreshed moments ago")
            return

        self._stats.refreshes += 1
        logger.info(f"Refreshing access token (force={force})")
        task = asyncio.create_task(self._run_refresh())
        task.add_done_callback(_consume_exception)
        self._pending = task
        await asyncio.shield(task)

    async def _run_refresh(self) -> None:
        try:
            grant = await asyncio.wait_for(
                self._obtain_grant(), timeout=self._refresh_timeout
            )
        except Exception as e:
            self._stats.failures += 1
            logger.error(f"Token refresh failed: {type(e).__name__}: {e}")
            self._credentials.clear_token()
            if isinstance(e, AuthError):
                raise
            raise AuthError(
                f"Token refresh failed: {type(e).__name__}: {e}",
                user_message="Your session has expired, please try again",
            ) from e
        else:
            self._credentials.set_token(
                grant.access_token,
                expires_at=grant.expires_at_epoch(),
                refresh_token=grant.refresh_token,
            )
            self._last_success_at = self._clock()
            logger.info("Access token refreshed")
        finally:
            self._pending = None

    async def _obtain_grant(self) -> TokenGrant:
        """Renew with the refresh token, falling back to a fresh login."""
        last_error: Exception | None = None

        refresh_token = self._credentials.get_refresh_token()
        if refresh_token and self._renew is not None:
            try:
                return await self._renew(refresh_token)
            except Exception as e:
                last_error = e
                logger.warning(f"Refresh token renewal failed, trying re-login: {e}")

        if self._relogin is not None:
            return await self._relogin()

        raise AuthError(
            "No token refresh strategy succeeded",
            user_message="Your session has expired, please log in again",
        ) from last_error

    def get_stats(self) -> "TokenStats":
        self._stats.refreshing = self.is_refreshing
        return self._stats

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[TokenRefresh] {message}")


def _consume_exception(task: asyncio.Task[None]) -> None:
    # Followers may all be gone; mark the outcome as retrieved
    if not task.cancelled():
        task.exception()


@dataclass
class TokenStats:
    """Statistics for token refreshes."""

    refreshes: int = 0  # Outbound refresh operations started
    shared: int = 0  # Callers that joined an in-flight refresh
    failures: int = 0
    refreshing: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "refreshes": self.refreshes,
            "shared": self.shared,
            "failures": self.failures,
            "refreshing": self.refreshing,
        }
