"""Clip records and the JSON-backed ordered record store.

The engine treats this store as an external collaborator: it reads an
ordered snapshot of records and listens for changes, but only the CLI calls
the mutating operations.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterable
from contextlib import suppress
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any
from urllib.parse import urlparse
from uuid import uuid4

from loopdeck.errors import ClipStoreError
from loopdeck.utils.time_format import format_trim_range

logger = logging.getLogger(__name__)

TRACK_URI_PREFIX = "spotify:track:"
WEB_PLAYER_HOST = "open.spotify.com"


@dataclass(frozen=True)
class ClipRecord:
    """A trimmed start/stop window over one remote track."""

    id: str
    track_uri: str
    track_name: str
    artist_name: str
    start_position_ms: int
    stop_position_ms: int
    order: int
    duration_ms: int | None = None

    @property
    def effective_duration_ms(self) -> int:
        if self.duration_ms is not None and self.duration_ms > 0:
            return self.duration_ms
        return self.stop_position_ms

    @property
    def trim_range_display(self) -> str:
        return format_trim_range(self.start_position_ms, self.stop_position_ms)

    def sort_key(self) -> tuple[int, str]:
        return (self.order, self.id)


def sort_clips(clips: Iterable[ClipRecord]) -> tuple[ClipRecord, ...]:
    """Return clips in playback order: ascending `order`, ties broken by id."""
    return tuple(sorted(clips, key=ClipRecord.sort_key))


def parse_track_uri(text: str) -> str:
    """Normalize a track URI or web-player link to `spotify:track:<id>`.

    Returns an empty string when the input is neither form.
    """
    trimmed = text.strip()
    if trimmed.startswith(TRACK_URI_PREFIX):
        return trimmed if len(trimmed) > len(TRACK_URI_PREFIX) else ""
    parsed = urlparse(trimmed)
    if WEB_PLAYER_HOST not in (parsed.netloc or ""):
        return ""
    parts = [part for part in parsed.path.split("/") if part]
    # Localized links look like /intl-de/track/<id>.
    if "track" not in parts:
        return ""
    index = parts.index("track")
    if index + 1 >= len(parts):
        return ""
    return f"{TRACK_URI_PREFIX}{parts[index + 1]}"


def _coerce_clip(data: Any) -> ClipRecord | None:
    """Coerce one untyped JSON object into a clip, or None when unusable."""
    if not isinstance(data, dict):
        return None

    def _int(value: Any) -> int | None:
        if isinstance(value, bool) or not isinstance(value, int):
            return None
        return value

    clip_id = data.get("id")
    uri = data.get("track_uri")
    start = _int(data.get("start_position_ms"))
    stop = _int(data.get("stop_position_ms"))
    order = _int(data.get("order"))
    if not isinstance(clip_id, str) or not isinstance(uri, str):
        return None
    if start is None or stop is None or order is None:
        return None
    name = data.get("track_name")
    artist = data.get("artist_name")
    return ClipRecord(
        id=clip_id,
        track_uri=uri,
        track_name=name if isinstance(name, str) else "Unknown",
        artist_name=artist if isinstance(artist, str) else "Unknown",
        start_position_ms=start,
        stop_position_ms=stop,
        order=order,
        duration_ms=_int(data.get("duration_ms")),
    )


class JsonClipStore:
    """Ordered clip collection persisted as a JSON list."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._clips: tuple[ClipRecord, ...] = ()
        self._listeners: list[Callable[[tuple[ClipRecord, ...]], None]] = []
        self._load_notice: str | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def load_notice(self) -> str | None:
        """User-facing notice from the last load, when data had to be dropped."""
        return self._load_notice

    def clips(self) -> tuple[ClipRecord, ...]:
        return self._clips

    def get(self, clip_id: str) -> ClipRecord | None:
        for clip in self._clips:
            if clip.id == clip_id:
                return clip
        return None

    def add_listener(
        self, listener: Callable[[tuple[ClipRecord, ...]], None]
    ) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def load(self) -> tuple[ClipRecord, ...]:
        """Load clips from disk, falling back to an empty deck."""
        self._load_notice = None
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            self._set_clips(())
            return self._clips
        except OSError as exc:
            logger.warning("Failed to read clip file %s: %s", self._path, exc)
            self._load_notice = (
                "Clip deck could not be read.\n"
                "Likely cause: file permissions or IO issues.\n"
                f"Next step: verify access to '{self._path}' and restart."
            )
            self._set_clips(())
            return self._clips
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Clip file at %s is invalid JSON; starting empty.", self._path)
            self._load_notice = (
                "Clip deck was reset.\n"
                "Likely cause: clip file is corrupt or partially written.\n"
                f"Next step: remove or repair '{self._path}'."
            )
            self._set_clips(())
            return self._clips
        if not isinstance(data, list):
            logger.warning("Clip file at %s is not a list; starting empty.", self._path)
            self._load_notice = (
                "Clip deck was reset.\n"
                "Likely cause: clip file has an unexpected format.\n"
                f"Next step: remove or repair '{self._path}'."
            )
            self._set_clips(())
            return self._clips
        items = data
        clips = [clip for clip in (_coerce_clip(item) for item in items) if clip]
        dropped = len(items) - len(clips)
        if dropped:
            logger.warning("Dropped %d unreadable clip record(s) from %s", dropped, self._path)
        self._set_clips(sort_clips(clips))
        return self._clips

    def add_clip(
        self,
        *,
        track_uri: str,
        track_name: str,
        artist_name: str,
        duration_ms: int,
    ) -> ClipRecord:
        """Append a full-length clip for a track at the end of the deck."""
        if not track_uri:
            raise ClipStoreError("Invalid Spotify URI or link")
        next_order = max((clip.order for clip in self._clips), default=-1) + 1
        clip = ClipRecord(
            id=uuid4().hex,
            track_uri=track_uri,
            track_name=track_name,
            artist_name=artist_name,
            start_position_ms=0,
            stop_position_ms=duration_ms,
            order=next_order,
            duration_ms=duration_ms,
        )
        self._commit(self._clips + (clip,))
        return clip

    def remove_clips(self, clip_ids: Iterable[str]) -> int:
        doomed = set(clip_ids)
        kept = tuple(clip for clip in self._clips if clip.id not in doomed)
        removed = len(self._clips) - len(kept)
        if removed:
            self._commit(kept)
        return removed

    def update_trim(self, clip_id: str, start_ms: int, stop_ms: int) -> ClipRecord:
        """Set a clip's trim window, requiring 0 <= start < stop <= duration."""
        clip = self.get(clip_id)
        if clip is None:
            raise ClipStoreError(f"No clip with id {clip_id!r}")
        if start_ms < 0 or stop_ms <= start_ms:
            raise ClipStoreError("Trim start must be before trim stop")
        if stop_ms > clip.effective_duration_ms:
            raise ClipStoreError("Trim stop is past the end of the track")
        updated = replace(clip, start_position_ms=start_ms, stop_position_ms=stop_ms)
        self._commit(
            tuple(updated if item.id == clip_id else item for item in self._clips)
        )
        return updated

    def migrate_durations(self) -> int:
        """Backfill missing durations from the stop position of older records."""
        missing = [clip for clip in self._clips if clip.duration_ms is None]
        if not missing:
            return 0
        self._commit(
            tuple(
                replace(clip, duration_ms=clip.stop_position_ms)
                if clip.duration_ms is None
                else clip
                for clip in self._clips
            )
        )
        return len(missing)

    def _commit(self, clips: tuple[ClipRecord, ...]) -> None:
        ordered = sort_clips(clips)
        self._save(ordered)
        self._set_clips(ordered)

    def _set_clips(self, clips: tuple[ClipRecord, ...]) -> None:
        self._clips = clips
        for listener in list(self._listeners):
            listener(clips)

    def _save(self, clips: tuple[ClipRecord, ...]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(f"{self._path.name}.{uuid4().hex}.tmp")
        payload = json.dumps([asdict(clip) for clip in clips], indent=2)
        delay_s = 0.02
        try:
            for attempt in range(4):
                tmp_path.write_text(payload, encoding="utf-8")
                try:
                    tmp_path.replace(self._path)
                    return
                except PermissionError:
                    # Windows refuses replace while another process holds the file.
                    if attempt >= 3:
                        raise
                    time.sleep(delay_s)
                    delay_s = min(0.25, delay_s * 2.0)
        finally:
            with suppress(OSError):
                tmp_path.unlink()
