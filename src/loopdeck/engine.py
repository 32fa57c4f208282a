"""Construct-once wiring of the playback session engine.

`LoopEngine` owns one instance of each component and connects them through
the event bus; callers pass it around instead of reaching for globals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from loopdeck.events import CursorChanged, EventBus
from loopdeck.runtime_config import EngineConfig, SpotifySettings
from loopdeck.services.artwork import ArtworkResolver
from loopdeck.services.clip_store import ClipRecord, JsonClipStore
from loopdeck.services.fake_transport import FakeAuthHandshake, FakeTransport
from loopdeck.services.interpolator import PositionInterpolator
from loopdeck.services.notifications import NotificationCenter
from loopdeck.services.remote_transport import (
    AuthHandshake,
    CatalogLookup,
    PlayerStateSnapshot,
    RemoteTransport,
    TrackMetadata,
)
from loopdeck.services.sequencer import PlaybackSequencer
from loopdeck.services.session_manager import SessionManager
from loopdeck.services.spotify_auth import SpotifyAuthHandshake, SpotifyCatalog
from loopdeck.services.spotify_transport import SpotifyTransport
from loopdeck.services.state_poller import PlayerStatePoller
from loopdeck.services.token_store import FileTokenStore

logger = logging.getLogger(__name__)

BACKENDS = ("spotify", "fake")


@dataclass
class Backend:
    """Transport-side collaborators for one remote service."""

    name: str
    transport: RemoteTransport
    handshake: AuthHandshake
    catalog: CatalogLookup | None = None


def build_backend(
    name: str,
    *,
    settings: SpotifySettings | None = None,
    clips: tuple[ClipRecord, ...] = (),
) -> Backend:
    """Create transport collaborators for `name` (`spotify` or `fake`)."""
    if name == "fake":
        tracks = {
            clip.track_uri: TrackMetadata(
                uri=clip.track_uri,
                name=clip.track_name,
                artist_name=clip.artist_name,
                duration_ms=clip.effective_duration_ms,
            )
            for clip in clips
        }
        return Backend(
            name="fake",
            transport=FakeTransport(tracks=tracks, supports_push=True),
            handshake=FakeAuthHandshake(),
        )
    if name == "spotify":
        return Backend(
            name="spotify",
            transport=SpotifyTransport(),
            handshake=SpotifyAuthHandshake(settings or SpotifySettings()),
            catalog=SpotifyCatalog(),
        )
    raise ValueError(f"Unknown backend {name!r}")


class LoopEngine:
    """Session, poller, sequencer and display helpers sharing one bus."""

    def __init__(
        self,
        *,
        transport: RemoteTransport,
        handshake: AuthHandshake,
        token_store: FileTokenStore,
        clip_store: JsonClipStore,
        catalog: CatalogLookup | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        config = (config or EngineConfig()).normalized()
        self.config = config
        self.bus = EventBus()
        self.clip_store = clip_store
        self.transport = transport
        self.session = SessionManager(
            transport=transport,
            handshake=handshake,
            token_store=token_store,
            bus=self.bus,
            config=config,
        )
        self.poller = PlayerStatePoller(session=self.session, bus=self.bus, config=config)
        self.sequencer = PlaybackSequencer(
            session=self.session, poller=self.poller, bus=self.bus, config=config
        )
        self.interpolator = PositionInterpolator(
            threshold_ms=config.interpolation_threshold_ms
        )
        self.artwork = ArtworkResolver(session=self.session, catalog=catalog)
        self.notifications = NotificationCenter(bus=self.bus, config=config)
        self.sequencer.load_clips(clip_store.clips())
        self._unsubscribers = [
            clip_store.add_listener(self.sequencer.load_clips),
            self.poller.subscribe(self._on_snapshot),
            self.bus.subscribe(CursorChanged, self._on_cursor_changed),
        ]

    @classmethod
    def from_backend(
        cls,
        backend: Backend,
        *,
        token_store: FileTokenStore,
        clip_store: JsonClipStore,
        config: EngineConfig | None = None,
    ) -> LoopEngine:
        return cls(
            transport=backend.transport,
            handshake=backend.handshake,
            token_store=token_store,
            clip_store=clip_store,
            catalog=backend.catalog,
            config=config,
        )

    async def start(self) -> None:
        logger.info("Starting engine with %d clip(s)", len(self.sequencer.clips))
        await self.session.start()

    async def shutdown(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        await self.sequencer.shutdown()
        await self.poller.stop()
        await self.notifications.aclose()
        await self.session.shutdown()
        logger.info("Engine stopped")

    def display_position_ms(self, now: float | None = None) -> int | None:
        """Interpolated position of the current clip, None when idle."""
        if self.sequencer.current_clip is None:
            return None
        return self.interpolator.position_at(now)

    def status(self) -> dict[str, Any]:
        clip = self.sequencer.current_clip
        return {
            "connection": self.session.connection_state,
            "busy": self.session.is_busy,
            "error": self.session.last_error,
            "index": self.sequencer.current_index,
            "clip": clip.track_name if clip else None,
            "playing": self.sequencer.is_playing,
        }

    async def _on_snapshot(self, snapshot: PlayerStateSnapshot) -> None:
        clip = self.sequencer.current_clip
        if clip is None:
            return
        # Ignore reports for the previous track while a new one is loading.
        if snapshot.track_uri is not None and snapshot.track_uri != clip.track_uri:
            return
        self.interpolator.observe(snapshot)

    async def _on_cursor_changed(self, event: CursorChanged) -> None:
        if event.clip is None:
            self.interpolator.reset()
            return
        self.interpolator.reset(
            clip_start_ms=event.clip.start_position_ms,
            fallback_duration_ms=event.clip.effective_duration_ms,
        )
