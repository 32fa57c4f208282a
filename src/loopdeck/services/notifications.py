"""Single-slot transient notification holder."""

from __future__ import annotations

import logging

from loopdeck.events import EventBus, Notification
from loopdeck.runtime_config import EngineConfig
from loopdeck.utils.async_utils import GenerationTimer

logger = logging.getLogger(__name__)


class NotificationCenter:
    """Shows the latest notification and hides it after a fixed delay.

    A newer message replaces the visible one and restarts the dismiss timer.
    """

    def __init__(self, *, bus: EventBus, config: EngineConfig | None = None) -> None:
        config = (config or EngineConfig()).normalized()
        self._display_s = config.notification_display_ms / 1000
        self._message: str | None = None
        self._shown = 0
        self._timer = GenerationTimer("notification")
        bus.subscribe(Notification, self._on_notification)

    @property
    def message(self) -> str | None:
        return self._message

    @property
    def is_visible(self) -> bool:
        return self._message is not None

    @property
    def shown_count(self) -> int:
        return self._shown

    def show(self, message: str) -> None:
        self._message = message
        self._shown += 1
        self._timer.schedule(self._display_s, self._dismiss_later)

    def dismiss(self) -> None:
        self._timer.cancel()
        self._message = None

    async def aclose(self) -> None:
        await self._timer.aclose()

    async def _on_notification(self, event: Notification) -> None:
        logger.debug("Notification: %s", event.message)
        self.show(event.message)

    async def _dismiss_later(self) -> None:
        self._message = None
