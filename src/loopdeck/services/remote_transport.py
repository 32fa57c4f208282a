"""Remote device transport contracts and event payloads.

`SessionManager` depends on these protocols to stay SDK-agnostic. Concrete
implementations (fake/Spotify) translate service-specific behavior into these
shared commands and events. Transport events must be delivered on the owner
event loop; implementations that receive callbacks on their own threads
re-dispatch them before calling the handler.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class PlayerStateSnapshot:
    """Immutable point-in-time view of remote playback state."""

    track_uri: str | None
    track_name: str
    artist_name: str
    position_ms: int
    duration_ms: int
    is_paused: bool


@dataclass(frozen=True)
class TrackMetadata:
    """Catalog details used when adding a track to the deck."""

    uri: str
    name: str
    artist_name: str
    duration_ms: int


@dataclass(frozen=True)
class TransportEvent:
    """Marker base type for transport-originated events."""

    pass


@dataclass(frozen=True)
class Connected(TransportEvent):
    """Control session established."""


@dataclass(frozen=True)
class ConnectionFailed(TransportEvent):
    """Connection attempt failed."""

    message: str


@dataclass(frozen=True)
class Disconnected(TransportEvent):
    """Established session dropped; `message` is None for a clean teardown."""

    message: str | None = None


@dataclass(frozen=True)
class PlayerStateReported(TransportEvent):
    """Push notification of a player state change."""

    snapshot: PlayerStateSnapshot


TransportEventHandler = Callable[[TransportEvent], Awaitable[None]]


class RemoteTransport(Protocol):
    """Remote playback device protocol consumed by `SessionManager`.

    Commands raise `TransportError` on failure. Connection outcomes are
    reported through the event handler, never through return values.
    """

    @property
    def supports_push(self) -> bool: ...

    @property
    def is_connected(self) -> bool: ...

    def set_event_handler(self, handler: TransportEventHandler) -> None: ...

    async def connect(self, credential: str) -> None: ...

    async def disconnect(self) -> None: ...

    async def play(self, track_uri: str) -> None: ...

    async def pause(self) -> None: ...

    async def resume(self) -> None: ...

    async def seek(self, position_ms: int) -> None: ...

    async def get_state(self) -> PlayerStateSnapshot | None: ...

    async def subscribe_player_state(self) -> None: ...

    async def fetch_track(self, track_uri: str) -> TrackMetadata | None: ...

    async def fetch_artwork(self, track_uri: str) -> bytes | None: ...


class AuthHandshake(Protocol):
    """External authorization handshake yielding an opaque credential."""

    def is_available(self) -> bool: ...

    def set_result_handlers(
        self,
        on_success: Callable[[str], Awaitable[None]],
        on_failure: Callable[[str], Awaitable[None]],
    ) -> None: ...

    async def initiate(self) -> None: ...

    async def handle_callback(self, payload: str) -> bool: ...


class CatalogLookup(Protocol):
    """Public catalog artwork lookup used when the device path fails."""

    async def fetch_artwork(self, track_uri: str, credential: str) -> bytes | None: ...
