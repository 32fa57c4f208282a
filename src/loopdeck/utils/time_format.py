"""Clip time formatting helpers."""

from __future__ import annotations

import math


def format_clip_time(ms: int) -> str:
    """Format milliseconds as M:SS (minutes are not zero-padded or capped)."""
    total_seconds = _coerce_ms(ms) // 1000
    return f"{total_seconds // 60}:{total_seconds % 60:02d}"


def format_trim_range(start_ms: int, stop_ms: int) -> str:
    return f"{format_clip_time(start_ms)} - {format_clip_time(stop_ms)}"


def parse_clip_seconds(text: str) -> int:
    """Parse `SS`, `M:SS` or a float seconds string into milliseconds.

    Raises `ValueError` for anything negative or unparseable.
    """
    value = text.strip()
    if ":" in value:
        minutes_text, _, seconds_text = value.rpartition(":")
        minutes = int(minutes_text)
        seconds = float(seconds_text)
        if minutes < 0 or not 0 <= seconds < 60:
            raise ValueError(f"invalid clip time {text!r}")
        return int(minutes * 60_000 + seconds * 1000)
    seconds = float(value)
    if not math.isfinite(seconds) or seconds < 0:
        raise ValueError(f"invalid clip time {text!r}")
    return int(seconds * 1000)


def _coerce_ms(value: int) -> int:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(numeric):
        return 0
    return max(0, int(numeric))
