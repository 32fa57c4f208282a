"""Spotify Connect transport over the Web API (spotipy).

All spotipy and requests calls are blocking and run through `run_blocking`;
results and transport events are delivered back on the owner loop.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import requests
import spotipy
from spotipy.exceptions import SpotifyException

from loopdeck.errors import TransportError
from loopdeck.utils.async_utils import run_blocking

from .remote_transport import (
    Connected,
    ConnectionFailed,
    Disconnected,
    PlayerStateSnapshot,
    TrackMetadata,
    TransportEvent,
    TransportEventHandler,
)

logger = logging.getLogger(__name__)

NO_DEVICE_MESSAGE = "No active Spotify device. Start playback in a Spotify app first."
IMAGE_TIMEOUT_S = 10.0

ClientFactory = Callable[[str], Any]


def spotify_error_message(exc: SpotifyException) -> str:
    """Human-readable reason from a spotipy error (drops the request URL)."""
    lines = [line.strip() for line in str(exc.msg).splitlines() if line.strip()]
    if not lines:
        return f"Spotify request failed ({exc.http_status})"
    message = lines[-1]
    if ", reason:" in message:
        message = message.split(", reason:", 1)[0]
    return message


def snapshot_from_playback(payload: dict[str, Any] | None) -> PlayerStateSnapshot | None:
    """Map a `current_playback` payload to a snapshot; None when idle."""
    if not payload:
        return None
    item = payload.get("item") or {}
    artists = item.get("artists") or []
    artist = artists[0].get("name") if artists else None
    return PlayerStateSnapshot(
        track_uri=item.get("uri"),
        track_name=item.get("name") or "Unknown",
        artist_name=artist or "Unknown",
        position_ms=int(payload.get("progress_ms") or 0),
        duration_ms=int(item.get("duration_ms") or 0),
        is_paused=not payload.get("is_playing", False),
    )


def track_from_payload(payload: dict[str, Any] | None) -> TrackMetadata | None:
    if not payload or not payload.get("uri"):
        return None
    artists = payload.get("artists") or []
    return TrackMetadata(
        uri=payload["uri"],
        name=payload.get("name") or "Unknown",
        artist_name=(artists[0].get("name") if artists else None) or "Unknown",
        duration_ms=int(payload.get("duration_ms") or 0),
    )


def first_image_url(track_payload: dict[str, Any] | None) -> str | None:
    images = ((track_payload or {}).get("album") or {}).get("images") or []
    if not images:
        return None
    url = images[0].get("url")
    return url if isinstance(url, str) and url else None


def download_image(url: str, *, timeout_s: float = IMAGE_TIMEOUT_S) -> bytes | None:
    response = requests.get(url, timeout=timeout_s)
    if response.status_code != 200:
        logger.info("Image download returned HTTP %s for %s", response.status_code, url)
        return None
    return response.content or None


def _pick_device(payload: dict[str, Any] | None) -> dict[str, Any] | None:
    devices = [
        device
        for device in (payload or {}).get("devices") or []
        if device.get("id") and not device.get("is_restricted", False)
    ]
    for device in devices:
        if device.get("is_active"):
            return device
    return devices[0] if devices else None


class SpotifyTransport:
    """Remote transport that drives the user's active Spotify Connect device.

    The Web API offers no state push, so `supports_push` is False and the
    poller carries all state. A 401 on any call is reported as a dropped
    session before the call raises.
    """

    def __init__(
        self,
        *,
        requests_timeout_s: float = 5.0,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._requests_timeout_s = requests_timeout_s
        self._client_factory = client_factory or self._default_client
        self._client: Any | None = None
        self._device_id: str | None = None
        self._device_name: str | None = None
        self._handler: TransportEventHandler | None = None

    @property
    def supports_push(self) -> bool:
        return False

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    @property
    def device_name(self) -> str | None:
        return self._device_name

    def set_event_handler(self, handler: TransportEventHandler) -> None:
        self._handler = handler

    async def connect(self, credential: str) -> None:
        client = self._client_factory(credential)
        try:
            devices = await run_blocking(client.devices)
        except SpotifyException as exc:
            await self._emit(ConnectionFailed(spotify_error_message(exc)))
            return
        except requests.RequestException as exc:
            await self._emit(ConnectionFailed(f"Network error: {exc}"))
            return
        device = _pick_device(devices)
        if device is None:
            await self._emit(ConnectionFailed(NO_DEVICE_MESSAGE))
            return
        self._client = client
        self._device_id = device["id"]
        self._device_name = device.get("name")
        logger.info("Using Spotify device %s", self._device_name or self._device_id)
        await self._emit(Connected())

    async def disconnect(self) -> None:
        if self._client is None:
            return
        self._drop_client()
        await self._emit(Disconnected())

    async def play(self, track_uri: str) -> None:
        await self._call(
            "play", "start_playback", device_id=self._device_id, uris=[track_uri]
        )

    async def pause(self) -> None:
        await self._call("pause", "pause_playback", device_id=self._device_id)

    async def resume(self) -> None:
        await self._call("resume", "start_playback", device_id=self._device_id)

    async def seek(self, position_ms: int) -> None:
        await self._call(
            "seek", "seek_track", int(position_ms), device_id=self._device_id
        )

    async def get_state(self) -> PlayerStateSnapshot | None:
        payload = await self._call("state", "current_playback")
        return snapshot_from_playback(payload)

    async def subscribe_player_state(self) -> None:
        return None

    async def fetch_track(self, track_uri: str) -> TrackMetadata | None:
        return track_from_payload(await self._call("track", "track", track_uri))

    async def fetch_artwork(self, track_uri: str) -> bytes | None:
        url = first_image_url(await self._call("artwork", "track", track_uri))
        if url is None:
            return None
        try:
            return await run_blocking(download_image, url)
        except requests.RequestException as exc:
            raise TransportError(f"artwork download failed: {exc}") from exc

    async def _call(self, name: str, method: str, *args: Any, **kwargs: Any) -> Any:
        client = self._client
        if client is None:
            raise TransportError(f"{name}: not connected")
        try:
            return await run_blocking(getattr(client, method), *args, **kwargs)
        except SpotifyException as exc:
            message = spotify_error_message(exc)
            if exc.http_status == 401 and self._client is client:
                self._drop_client()
                await self._emit(Disconnected(message))
            raise TransportError(message, status=exc.http_status) from exc
        except requests.RequestException as exc:
            raise TransportError(f"{name}: network error: {exc}") from exc

    def _drop_client(self) -> None:
        self._client = None
        self._device_id = None
        self._device_name = None

    def _default_client(self, credential: str) -> spotipy.Spotify:
        return spotipy.Spotify(
            auth=credential, requests_timeout=self._requests_timeout_s, retries=0
        )

    async def _emit(self, event: TransportEvent) -> None:
        if self._handler is None:
            return
        await self._handler(event)
