"""Display-only position estimate between coarse state polls."""

from __future__ import annotations

import time
from collections.abc import Callable

from loopdeck.services.remote_transport import PlayerStateSnapshot

DEFAULT_THRESHOLD_MS = 150


class PositionInterpolator:
    """Projects the playback position forward from the last real sample.

    The projection is held while paused and until the real position has moved
    `threshold_ms` past the clip start, so the bar does not jump backwards
    while a post-play seek is still in flight. It never issues commands.
    """

    def __init__(
        self,
        *,
        threshold_ms: int = DEFAULT_THRESHOLD_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._threshold_ms = max(0, int(threshold_ms))
        self._clock = clock
        self._clip_start_ms = 0
        self._fallback_duration_ms = 0
        self._duration_ms = 0
        self._is_paused = True
        self._last_observed_ms: int | None = None
        self._last_known_position_ms = 0
        self._last_sync_s = clock()

    @property
    def last_known_position_ms(self) -> int:
        return self._last_known_position_ms

    @property
    def last_sync_timestamp(self) -> float:
        return self._last_sync_s

    @property
    def duration_ms(self) -> int:
        return self._duration_ms

    @property
    def is_paused(self) -> bool:
        return self._is_paused

    def reset(self, clip_start_ms: int = 0, fallback_duration_ms: int = 0) -> None:
        """Start tracking a new clip."""
        self._clip_start_ms = max(0, clip_start_ms)
        self._fallback_duration_ms = max(0, fallback_duration_ms)
        self._duration_ms = self._fallback_duration_ms
        self._is_paused = True
        self._last_observed_ms = None
        self._last_known_position_ms = self._clip_start_ms
        self._last_sync_s = self._clock()

    def observe(self, snapshot: PlayerStateSnapshot, now: float | None = None) -> None:
        """Snap to a snapshot's position when it moved or playback paused or resumed."""
        now = self._clock() if now is None else now
        if snapshot.duration_ms > 0:
            self._duration_ms = snapshot.duration_ms
        else:
            self._duration_ms = self._fallback_duration_ms
        # The device reports the old offset until the start seek lands.
        position = max(snapshot.position_ms, self._clip_start_ms)
        # A pause or resume restarts the projection even at an unchanged position.
        paused_changed = snapshot.is_paused != self._is_paused
        self._is_paused = snapshot.is_paused
        if position != self._last_observed_ms or paused_changed:
            self._last_observed_ms = position
            self._last_known_position_ms = position
            self._last_sync_s = now

    def position_at(self, now: float | None = None) -> int:
        """Estimated position in ms at `now` (clock seconds)."""
        now = self._clock() if now is None else now
        if self._is_paused or not self._has_started():
            return self._last_known_position_ms
        elapsed_ms = max(0.0, (now - self._last_sync_s) * 1000)
        projected = self._last_known_position_ms + round(elapsed_ms)
        return min(projected, max(self._duration_ms, 1))

    def _has_started(self) -> bool:
        return (
            self._last_known_position_ms >= self._clip_start_ms + self._threshold_ms
        )
