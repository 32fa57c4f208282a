"""Cross-component event models and the in-process bus that carries them.

Session, poller and sequencer never call each other's callbacks directly; they
publish frozen dataclass events here and subscribe to the ones they consume.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal, TypeVar

if TYPE_CHECKING:
    from loopdeck.services.clip_store import ClipRecord
    from loopdeck.services.remote_transport import PlayerStateSnapshot

logger = logging.getLogger(__name__)

ConnectionStatus = Literal["disconnected", "connecting", "connected"]

E = TypeVar("E")


@dataclass(frozen=True)
class ConnectionStateChanged:
    """Session connection status transition."""

    state: ConnectionStatus


@dataclass(frozen=True)
class SessionBusyChanged:
    """Authorization or reconnect sequence started or finished."""

    busy: bool


@dataclass(frozen=True)
class SessionErrorChanged:
    """Latest human-readable session error, or None when cleared."""

    message: str | None


@dataclass(frozen=True)
class ReconnectGaveUp:
    """Bounded reconnect policy exhausted its attempts."""

    attempts: int


@dataclass(frozen=True)
class PlayerStatePushed:
    """Player state delivered by a transport push notification."""

    snapshot: PlayerStateSnapshot


@dataclass(frozen=True)
class CursorChanged:
    """Sequencer moved to another clip, or cleared its cursor."""

    index: int | None
    clip: ClipRecord | None


@dataclass(frozen=True)
class PlayingChanged:
    """Derived playing/paused flag for the current clip."""

    is_playing: bool


@dataclass(frozen=True)
class Notification:
    """One transient user-facing message."""

    message: str


class EventBus:
    """Minimal typed publish/subscribe channel running on the owner loop."""

    def __init__(self) -> None:
        self._handlers: list[tuple[type, Callable[[Any], Awaitable[None]]]] = []

    def subscribe(
        self, event_type: type[E], handler: Callable[[E], Awaitable[None]]
    ) -> Callable[[], None]:
        """Register handler for events of `event_type`; return an unsubscriber."""
        entry = (event_type, handler)
        self._handlers.append(entry)

        def unsubscribe() -> None:
            if entry in self._handlers:
                self._handlers.remove(entry)

        return unsubscribe

    async def publish(self, event: object) -> None:
        """Deliver event to matching handlers in subscription order."""
        for event_type, handler in list(self._handlers):
            if isinstance(event, event_type):
                await handler(event)
