"""
NetworkMonitor - tracks connectivity and gates requests while offline.

The host platform feeds connectivity changes through ``update()``; the
monitor fans them out to subscribers and shows the offline / restored
notices exactly once per transition.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from netlayer.services.errors import NetworkError
from netlayer.services.notifier import Notifier

T = TypeVar("T")


class NetworkType(str, Enum):
    """Network class reported by the platform."""

    WIFI = "wifi"
    G2 = "2g"
    G3 = "3g"
    G4 = "4g"
    G5 = "5g"
    UNKNOWN = "unknown"
    NONE = "none"


GOOD_NETWORKS = frozenset({NetworkType.WIFI, NetworkType.G4, NetworkType.G5})


@dataclass(frozen=True)
class NetworkState:
    """Snapshot of connectivity."""

    is_connected: bool = True
    network_type: NetworkType = NetworkType.UNKNOWN

    @property
    def is_offline(self) -> bool:
        return not self.is_connected

    def to_dict(self) -> dict[str, object]:
        return {
            "is_connected": self.is_connected,
            "network_type": self.network_type.value,
            "is_offline": self.is_offline,
        }


NetworkListener = Callable[[NetworkState], None]


class NetworkMonitor:
    """
    Connectivity tracker with subscriber notification.

    Usage:
        monitor = NetworkMonitor(notifier)
        unsubscribe = monitor.subscribe(lambda state: print(state))

        # platform callback
        monitor.update(is_connected=False, network_type="none")
    """

    def __init__(
        self,
        notifier: Notifier,
        initial_state: NetworkState | None = None,
    ):
        self._notifier = notifier
        self._state = initial_state or NetworkState()
        self._listeners: list[NetworkListener] = []
        self._offline_notice_shown = False

    def update(
        self,
        is_connected: bool,
        network_type: NetworkType | str | None = None,
    ) -> None:
        """Apply a connectivity change reported by the platform."""
        if network_type is None:
            network_type = NetworkType.UNKNOWN if is_connected else NetworkType.NONE
        was_connected = self._state.is_connected
        self._state = NetworkState(
            is_connected=is_connected,
            network_type=NetworkType(network_type),
        )
        logger.info(f"Network state changed: {self._state.to_dict()}")

        self._notify_listeners()

        if not was_connected and is_connected:
            self._on_restore()
        elif was_connected and not is_connected:
            self._on_lost()

    def _on_restore(self) -> None:
        self._offline_notice_shown = False
        self._notifier.show_toast("Network restored", duration=2.0)
        logger.info("Network restored")

    def _on_lost(self) -> None:
        if not self._offline_notice_shown:
            self._notifier.show_toast("Network disconnected", duration=3.0)
            self._offline_notice_shown = True
        logger.warning("Network lost")

    def subscribe(self, listener: NetworkListener) -> Callable[[], None]:
        """
        Subscribe to state changes.

        The listener receives the current state immediately. Returns a
        function that removes the subscription.
        """
        self._listeners.append(listener)
        self._call_listener(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify_listeners(self) -> None:
        for listener in list(self._listeners):
            self._call_listener(listener)

    def _call_listener(self, listener: NetworkListener) -> None:
        try:
            listener(self._state)
        except Exception as e:
            logger.error(f"Network listener failed: {e}")

    def get_state(self) -> NetworkState:
        return self._state

    def is_online(self) -> bool:
        return self._state.is_connected

    def is_good_network(self) -> bool:
        """True on wifi, 4g or 5g."""
        return self._state.is_connected and self._state.network_type in GOOD_NETWORKS

    async def check_and_execute(
        self,
        fn: Callable[[], Awaitable[T]],
        offline_message: str | None = None,
        require_good_network: bool = False,
    ) -> T:
        """
        Run ``fn`` only when the network allows it.

        Offline: shows a blocking notice and raises NetworkError.
        Degraded with ``require_good_network``: asks the user to confirm and
        raises NetworkError when declined.
        """
        if not self.is_online():
            message = offline_message or "The network is currently unavailable"
            await self._notifier.show_modal(
                title="Network error",
                content=message,
                confirm_text="Got it",
                show_cancel=False,
            )
            raise NetworkError("Network offline", user_message=message, code="offline")

        if require_good_network and not self.is_good_network():
            proceed = await self._notifier.show_modal(
                title="Poor network",
                content="The current network is poor. Continue anyway?",
                confirm_text="Continue",
                cancel_text="Cancel",
            )
            if not proceed:
                raise NetworkError(
                    f"User declined to continue on {self._state.network_type.value} network",
                    user_message="Operation cancelled due to poor network",
                    code="poor_network_declined",
                )

        return await fn()
