"""Runtime configuration normalization helpers.

These helpers keep CLI flag interpretation and engine timing deterministic
across entrypoints and tests.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

from dotenv import load_dotenv

SPOTIFY_SCOPES = (
    "user-read-playback-state user-modify-playback-state user-read-currently-playing"
)
DEFAULT_REDIRECT_URI = "http://127.0.0.1:8888/callback"
POLL_INTERVAL_MIN_MS = 100
POLL_INTERVAL_MAX_MS = 5_000


@dataclass(frozen=True)
class EngineConfig:
    """Timing and retry constants for the playback session engine."""

    poll_interval_ms: int = 500
    query_timeout_ms: int = 2_000
    reconnect_delay_ms: int = 2_000
    max_reconnect_attempts: int = 3
    seek_delay_ms: int = 500
    stop_buffer_ms: int = 500
    interpolation_threshold_ms: int = 150
    notification_display_ms: int = 4_000

    def normalized(self) -> EngineConfig:
        """Return a copy with negative values zeroed and poll interval bounded."""
        return replace(
            self,
            poll_interval_ms=max(
                POLL_INTERVAL_MIN_MS, min(POLL_INTERVAL_MAX_MS, self.poll_interval_ms)
            ),
            query_timeout_ms=max(1, self.query_timeout_ms),
            reconnect_delay_ms=max(0, self.reconnect_delay_ms),
            max_reconnect_attempts=max(0, self.max_reconnect_attempts),
            seek_delay_ms=max(0, self.seek_delay_ms),
            stop_buffer_ms=max(0, self.stop_buffer_ms),
            interpolation_threshold_ms=max(0, self.interpolation_threshold_ms),
            notification_display_ms=max(0, self.notification_display_ms),
        )


@dataclass(frozen=True)
class SpotifySettings:
    """OAuth client settings for the Spotify transport."""

    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = DEFAULT_REDIRECT_URI
    scopes: str = SPOTIFY_SCOPES

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


def load_spotify_settings(env_file: Path | None = None) -> SpotifySettings:
    """Read Spotify client settings from the environment, loading `.env` first.

    Values already present in the process environment win over the file.
    """
    if env_file is not None:
        load_dotenv(env_file)
    else:
        load_dotenv()
    return SpotifySettings(
        client_id=os.getenv("SPOTIFY_CLIENT_ID", "").strip(),
        client_secret=os.getenv("SPOTIFY_CLIENT_SECRET", "").strip(),
        redirect_uri=os.getenv("SPOTIFY_REDIRECT_URI", "").strip()
        or DEFAULT_REDIRECT_URI,
    )


def resolve_log_level(*, verbose: bool, quiet: bool) -> str:
    """Resolve effective log level from CLI flags.

    Precedence is deterministic: --quiet overrides --verbose.
    """
    if quiet:
        return "WARNING"
    if verbose:
        return "DEBUG"
    return "INFO"
