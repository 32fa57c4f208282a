"""Fake remote transport and auth handshake for deterministic testing."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from urllib.parse import parse_qs, urlparse

from loopdeck.errors import TransportError

from .remote_transport import (
    Connected,
    ConnectionFailed,
    Disconnected,
    PlayerStateReported,
    PlayerStateSnapshot,
    TrackMetadata,
    TransportEvent,
    TransportEventHandler,
)


@dataclass
class _DeviceState:
    track_uri: str | None = None
    position_ms: int = 0
    duration_ms: int = 0
    is_paused: bool = True


class FakeTransport:
    """In-memory remote device that records commands and simulates progress.

    Tests script behavior through the public attributes: `connect_failures`
    is consumed one message per connect attempt, `command_failures` maps a
    command name to the error it raises.
    """

    def __init__(
        self,
        *,
        tracks: dict[str, TrackMetadata] | None = None,
        supports_push: bool = False,
        tick_interval_ms: int = 250,
        default_duration_ms: int = 180_000,
    ) -> None:
        self.tracks = dict(tracks or {})
        self.artwork: dict[str, bytes] = {}
        self.connect_failures: list[str] = []
        self.command_failures: dict[str, str] = {}
        self.state_failure: str | None = None
        self.commands: list[tuple[str, object]] = []
        self.credentials: list[str] = []
        self.subscribed = False
        self._supports_push = supports_push
        self._tick_interval_ms = tick_interval_ms
        self._default_duration_ms = default_duration_ms
        self._connected = False
        self._state = _DeviceState()
        self._handler: TransportEventHandler | None = None
        self._lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

    @property
    def supports_push(self) -> bool:
        return self._supports_push

    @property
    def is_connected(self) -> bool:
        return self._connected

    def set_event_handler(self, handler: TransportEventHandler) -> None:
        self._handler = handler

    async def start(self) -> None:
        """Begin simulating playback progress."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._ticker_loop())

    async def shutdown(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def connect(self, credential: str) -> None:
        self.credentials.append(credential)
        if self.connect_failures:
            await self._emit(ConnectionFailed(self.connect_failures.pop(0)))
            return
        self._connected = True
        await self._emit(Connected())

    async def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        self.subscribed = False
        await self._emit(Disconnected())

    async def drop(self, message: str) -> None:
        """Simulate the device dropping an established session."""
        self._connected = False
        self.subscribed = False
        await self._emit(Disconnected(message))

    async def play(self, track_uri: str) -> None:
        self._record("play", track_uri)
        meta = self.tracks.get(track_uri)
        async with self._lock:
            self._state.track_uri = track_uri
            self._state.position_ms = 0
            self._state.duration_ms = (
                meta.duration_ms if meta else self._default_duration_ms
            )
            self._state.is_paused = False
        await self._push()

    async def pause(self) -> None:
        self._record("pause", None)
        async with self._lock:
            self._state.is_paused = True
        await self._push()

    async def resume(self) -> None:
        self._record("resume", None)
        async with self._lock:
            self._state.is_paused = False
        await self._push()

    async def seek(self, position_ms: int) -> None:
        self._record("seek", position_ms)
        async with self._lock:
            self._state.position_ms = _clamp(position_ms, 0, self._state.duration_ms)
        await self._push()

    async def get_state(self) -> PlayerStateSnapshot | None:
        if self.state_failure is not None:
            raise TransportError(self.state_failure)
        async with self._lock:
            return self._snapshot()

    async def subscribe_player_state(self) -> None:
        self.subscribed = True

    async def fetch_track(self, track_uri: str) -> TrackMetadata | None:
        return self.tracks.get(track_uri)

    async def fetch_artwork(self, track_uri: str) -> bytes | None:
        return self.artwork.get(track_uri)

    async def advance(self, ms: int) -> None:
        """Move the simulated position forward as if `ms` of audio played."""
        async with self._lock:
            if self._state.is_paused or self._state.track_uri is None:
                return
            position = self._state.position_ms + ms
            if position >= self._state.duration_ms:
                position = self._state.duration_ms
                self._state.is_paused = True
            self._state.position_ms = position
        await self._push()

    def command_names(self) -> list[str]:
        return [name for name, _ in self.commands]

    def _record(self, name: str, arg: object) -> None:
        if not self._connected:
            raise TransportError(f"{name}: not connected")
        failure = self.command_failures.get(name)
        if failure is not None:
            raise TransportError(failure)
        self.commands.append((name, arg))

    def _snapshot(self) -> PlayerStateSnapshot | None:
        if self._state.track_uri is None:
            return None
        meta = self.tracks.get(self._state.track_uri)
        return PlayerStateSnapshot(
            track_uri=self._state.track_uri,
            track_name=meta.name if meta else "Unknown",
            artist_name=meta.artist_name if meta else "Unknown",
            position_ms=self._state.position_ms,
            duration_ms=self._state.duration_ms,
            is_paused=self._state.is_paused,
        )

    async def _push(self) -> None:
        if not (self._supports_push and self.subscribed):
            return
        snapshot = self._snapshot()
        if snapshot is not None:
            await self._emit(PlayerStateReported(snapshot))

    async def _ticker_loop(self) -> None:
        while True:
            await asyncio.sleep(self._tick_interval_ms / 1000)
            await self.advance(self._tick_interval_ms)

    async def _emit(self, event: TransportEvent) -> None:
        if self._handler is None:
            return
        await self._handler(event)


class FakeAuthHandshake:
    """Handshake double: any redirect carrying `code=` succeeds."""

    def __init__(self, *, available: bool = True, token: str = "fake-token") -> None:
        self.available = available
        self.token = token
        self.initiated = 0
        self._on_success: Callable[[str], Awaitable[None]] | None = None
        self._on_failure: Callable[[str], Awaitable[None]] | None = None

    def is_available(self) -> bool:
        return self.available

    def set_result_handlers(
        self,
        on_success: Callable[[str], Awaitable[None]],
        on_failure: Callable[[str], Awaitable[None]],
    ) -> None:
        self._on_success = on_success
        self._on_failure = on_failure

    async def initiate(self) -> None:
        self.initiated += 1

    async def handle_callback(self, payload: str) -> bool:
        query = parse_qs(urlparse(payload).query)
        if "error" in query and self._on_failure is not None:
            await self._on_failure(query["error"][0])
            return True
        if "code" in query and self._on_success is not None:
            await self._on_success(self.token)
            return True
        return False


def _clamp(value: int, min_value: int, max_value: int) -> int:
    return max(min_value, min(value, max_value))
