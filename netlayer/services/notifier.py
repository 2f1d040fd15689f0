"""
Notifier - the UI port of the request layer.

The request layer never renders anything itself; it asks a Notifier to show
toasts, modals and loading indicators. Applications plug in their own UI;
LoggingNotifier is the headless default.
"""

from abc import ABC, abstractmethod

from loguru import logger


class Notifier(ABC):
    """User-facing side effects emitted by the request layer."""

    @abstractmethod
    def show_toast(self, message: str, duration: float = 2.5) -> None:
        """Show a transient, non-blocking message."""
        ...

    @abstractmethod
    async def show_modal(
        self,
        title: str,
        content: str,
        confirm_text: str = "OK",
        cancel_text: str = "Cancel",
        show_cancel: bool = True,
    ) -> bool:
        """Show a blocking dialog. Returns True when the user confirmed."""
        ...

    @abstractmethod
    def show_loading(self, text: str) -> None: ...

    @abstractmethod
    def hide_loading(self) -> None: ...

    @abstractmethod
    def open_settings(self) -> None:
        """Navigate to the system permission settings."""
        ...

    @abstractmethod
    def relaunch(self, route: str) -> None:
        """Restart navigation at the given route (used for re-authentication)."""
        ...


class LoggingNotifier(Notifier):
    """Headless notifier: logs every UI effect, declines every modal."""

    def show_toast(self, message: str, duration: float = 2.5) -> None:
        logger.info(f"[toast] {message}")

    async def show_modal(
        self,
        title: str,
        content: str,
        confirm_text: str = "OK",
        cancel_text: str = "Cancel",
        show_cancel: bool = True,
    ) -> bool:
        logger.info(f"[modal] {title}: {content}")
        return False

    def show_loading(self, text: str) -> None:
        logger.debug(f"[loading] {text}")

    def hide_loading(self) -> None:
        logger.debug("[loading] hidden")

    def open_settings(self) -> None:
        logger.info("[settings] open requested")

    def relaunch(self, route: str) -> None:
        logger.info(f"[relaunch] {route}")
