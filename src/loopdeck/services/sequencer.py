"""Clip queue authority: turns user intent into session commands.

The sequencer owns the cached clip order and the playback cursor. It issues
the play-then-seek choreography for each clip and auto-advances when a polled
snapshot reaches the clip's stop boundary.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, replace

from loopdeck.events import CursorChanged, EventBus, PlayingChanged
from loopdeck.runtime_config import EngineConfig
from loopdeck.services.clip_store import ClipRecord, sort_clips
from loopdeck.services.remote_transport import PlayerStateSnapshot
from loopdeck.services.session_manager import SessionManager
from loopdeck.services.state_poller import PlayerStatePoller
from loopdeck.utils.async_utils import GenerationTimer

logger = logging.getLogger(__name__)


@dataclass
class PlaybackCursor:
    """Which clip the engine believes is current, plus its one-shot latch."""

    current_index: int | None = None
    has_reached_stop_boundary: bool = False


class PlaybackSequencer:
    """Owns the clip sequence, the cursor and auto-advance."""

    def __init__(
        self,
        *,
        session: SessionManager,
        poller: PlayerStatePoller,
        bus: EventBus,
        config: EngineConfig | None = None,
    ) -> None:
        self._session = session
        self._poller = poller
        self._bus = bus
        config = (config or EngineConfig()).normalized()
        self._seek_delay_s = config.seek_delay_ms / 1000
        self._stop_buffer_ms = config.stop_buffer_ms
        self._clips: tuple[ClipRecord, ...] = ()
        self._cursor = PlaybackCursor()
        self._is_playing = False
        # Boundary checks stay off until the post-play seek was issued and a
        # snapshot shows it landed, so a stale report cannot trigger an advance.
        self._seek_issued = False
        self._boundary_armed = False
        self._play_generation = 0
        self._seek_timer = GenerationTimer("seek")
        poller.subscribe(self.handle_snapshot)

    @property
    def clips(self) -> tuple[ClipRecord, ...]:
        return self._clips

    @property
    def cursor(self) -> PlaybackCursor:
        return replace(self._cursor)

    @property
    def current_index(self) -> int | None:
        return self._cursor.current_index

    @property
    def current_clip(self) -> ClipRecord | None:
        index = self._cursor.current_index
        if index is None or index >= len(self._clips):
            return None
        return self._clips[index]

    @property
    def is_playing(self) -> bool:
        return self._is_playing

    @property
    def can_go_next(self) -> bool:
        index = self._cursor.current_index
        return index is not None and index + 1 < len(self._clips)

    @property
    def can_go_previous(self) -> bool:
        return self._cursor.current_index is not None and bool(self._clips)

    def load_clips(self, clips: Iterable[ClipRecord]) -> None:
        """Replace the cached sequence, keeping the cursor on the same record.

        If the current record moved, the cursor follows it; if it is gone, the
        cursor is cleared and any pending seek is dropped. Cursor adjustments
        made here are not published; read `current_index` afterwards.
        """
        current = self.current_clip
        self._clips = sort_clips(clips)
        if current is None:
            return
        for index, clip in enumerate(self._clips):
            if clip.id == current.id:
                if index != self._cursor.current_index:
                    logger.debug("Cursor follows clip %s to index %d", clip.id, index)
                    self._cursor.current_index = index
                return
        logger.info("Current clip %s was removed; clearing cursor", current.id)
        self._play_generation += 1
        self._seek_timer.cancel()
        self._cursor = PlaybackCursor()
        self._seek_issued = False
        self._boundary_armed = False
        self._is_playing = False

    async def play_from_index(self, index: int) -> None:
        if not 0 <= index < len(self._clips):
            logger.debug("Ignoring play request for index %d", index)
            return
        if not self._session.is_connected:
            logger.debug("Ignoring play request: session not connected")
            return
        clip = self._clips[index]
        self._play_generation += 1
        generation = self._play_generation
        self._seek_timer.cancel()
        self._cursor = PlaybackCursor(current_index=index)
        self._seek_issued = False
        self._boundary_armed = False
        await self._set_playing(True)
        await self._bus.publish(CursorChanged(index, clip))
        logger.info(
            "Playing clip %d/%d %s (%s)",
            index + 1,
            len(self._clips),
            clip.track_uri,
            clip.trim_range_display,
        )
        if not await self._session.play(clip.track_uri):
            return
        if generation != self._play_generation:
            return
        # The device has not loaded the new track yet; seeking now is lost.
        self._seek_timer.schedule(
            self._seek_delay_s, lambda: self._seek_to_start(clip, generation)
        )

    async def play_next(self) -> None:
        index = self._cursor.current_index
        if index is None:
            return
        if index + 1 < len(self._clips):
            await self.play_from_index(index + 1)
        else:
            await self.stop()

    async def play_previous(self) -> None:
        index = self._cursor.current_index
        if index is None:
            return
        await self.play_from_index(max(index - 1, 0))

    async def toggle_play_pause(self) -> None:
        snapshot = self._poller.current_snapshot()
        if snapshot is None:
            return
        if snapshot.is_paused:
            await self._session.resume()
            await self._set_playing(True)
        else:
            await self._session.pause()
            await self._set_playing(False)

    async def stop(self) -> None:
        self._play_generation += 1
        self._seek_timer.cancel()
        self._cursor = PlaybackCursor()
        self._seek_issued = False
        self._boundary_armed = False
        await self._set_playing(False)
        await self._bus.publish(CursorChanged(None, None))
        await self._session.pause()

    async def shutdown(self) -> None:
        await self._seek_timer.aclose()

    async def handle_snapshot(self, snapshot: PlayerStateSnapshot) -> None:
        """Mirror the remote paused flag and run boundary detection."""
        if self.current_clip is None:
            return
        await self._set_playing(not snapshot.is_paused)
        await self._check_boundary(snapshot)

    async def _check_boundary(self, snapshot: PlayerStateSnapshot) -> None:
        clip = self.current_clip
        if clip is None or not self._is_playing:
            return
        if self._cursor.has_reached_stop_boundary:
            return
        if snapshot.track_uri is not None and snapshot.track_uri != clip.track_uri:
            return
        boundary_ms = clip.stop_position_ms - self._stop_buffer_ms
        if not self._boundary_armed:
            if not self._seek_issued:
                return
            # Until the seek lands the device may still report the old offset,
            # which can sit past this clip's boundary on a shared track.
            near_start = (
                abs(snapshot.position_ms - clip.start_position_ms)
                <= self._stop_buffer_ms
            )
            if snapshot.position_ms >= boundary_ms and not near_start:
                return
            self._boundary_armed = True
        if snapshot.position_ms < boundary_ms:
            return
        self._cursor.has_reached_stop_boundary = True
        logger.info(
            "Clip boundary reached at %dms (stop=%dms); advancing",
            snapshot.position_ms,
            clip.stop_position_ms,
        )
        await self._session.pause()
        await self.play_next()

    async def _seek_to_start(self, clip: ClipRecord, generation: int) -> None:
        if generation != self._play_generation:
            return
        # Set before awaiting: the device may report the landed seek at once.
        self._seek_issued = True
        await self._session.seek(clip.start_position_ms)

    async def _set_playing(self, is_playing: bool) -> None:
        if is_playing == self._is_playing:
            return
        self._is_playing = is_playing
        await self._bus.publish(PlayingChanged(is_playing))
