"""Spotify authorization-code handshake and public catalog lookups."""

from __future__ import annotations

import logging
import webbrowser
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import parse_qs, urlparse

import requests
from spotipy.cache_handler import MemoryCacheHandler
from spotipy.exceptions import SpotifyOauthError
from spotipy.oauth2 import SpotifyOAuth

from loopdeck.errors import TransportError
from loopdeck.runtime_config import SpotifySettings
from loopdeck.utils.async_utils import run_blocking

from .spotify_transport import download_image, first_image_url

logger = logging.getLogger(__name__)

TRACKS_ENDPOINT = "https://api.spotify.com/v1/tracks/{track_id}"
CATALOG_TIMEOUT_S = 10.0


class SpotifyAuthHandshake:
    """OAuth authorization-code flow yielding a bare access token.

    The token is cached in memory only; persisting it is the token store's
    job. The redirect is delivered back verbatim through `handle_callback`.
    """

    def __init__(
        self,
        settings: SpotifySettings,
        *,
        open_browser: bool = True,
        oauth: SpotifyOAuth | None = None,
    ) -> None:
        self._settings = settings
        self._open_browser = open_browser
        self._oauth = oauth
        self._authorize_url: str | None = None
        self._on_success: Callable[[str], Awaitable[None]] | None = None
        self._on_failure: Callable[[str], Awaitable[None]] | None = None

    @property
    def authorize_url(self) -> str | None:
        """URL of the last initiated handshake, for manual completion."""
        return self._authorize_url

    def is_available(self) -> bool:
        return self._settings.is_configured

    def set_result_handlers(
        self,
        on_success: Callable[[str], Awaitable[None]],
        on_failure: Callable[[str], Awaitable[None]],
    ) -> None:
        self._on_success = on_success
        self._on_failure = on_failure

    async def initiate(self) -> None:
        self._authorize_url = self._auth().get_authorize_url()
        logger.info("Authorization started")
        if self._open_browser:
            opened = await run_blocking(webbrowser.open, self._authorize_url)
            if not opened:
                logger.info("No browser available; complete authorization manually")

    async def handle_callback(self, payload: str) -> bool:
        """Exchange the redirect's code for a token; False if not ours."""
        if not payload.strip().startswith(self._settings.redirect_uri):
            logger.debug("Ignoring callback for a different redirect target")
            return False
        query = parse_qs(urlparse(payload.strip()).query)
        if "error" in query:
            await self._fail(f"Authorization denied: {query['error'][0]}")
            return True
        codes = query.get("code")
        if not codes:
            return False
        try:
            token = await run_blocking(
                self._auth().get_access_token,
                codes[0],
                as_dict=False,
                check_cache=False,
            )
        except SpotifyOauthError as exc:
            await self._fail(str(exc))
            return True
        except requests.RequestException as exc:
            await self._fail(f"Network error during authorization: {exc}")
            return True
        if not token:
            await self._fail("Authorization returned no access token")
            return True
        if self._on_success is not None:
            await self._on_success(token)
        return True

    async def _fail(self, message: str) -> None:
        if self._on_failure is not None:
            await self._on_failure(message)

    def _auth(self) -> SpotifyOAuth:
        if self._oauth is None:
            self._oauth = SpotifyOAuth(
                client_id=self._settings.client_id,
                client_secret=self._settings.client_secret,
                redirect_uri=self._settings.redirect_uri,
                scope=self._settings.scopes,
                cache_handler=MemoryCacheHandler(),
                open_browser=False,
            )
        return self._oauth


class SpotifyCatalog:
    """Artwork fallback through the public track endpoint."""

    def __init__(self, *, session: requests.Session | None = None) -> None:
        self._http = session or requests.Session()

    async def fetch_artwork(self, track_uri: str, credential: str) -> bytes | None:
        try:
            return await run_blocking(self._fetch_artwork_sync, track_uri, credential)
        except requests.RequestException as exc:
            raise TransportError(f"catalog lookup failed: {exc}") from exc

    def close(self) -> None:
        self._http.close()

    def _fetch_artwork_sync(self, track_uri: str, credential: str) -> bytes | None:
        track_id = track_uri.rsplit(":", 1)[-1]
        if not track_id:
            return None
        response = self._http.get(
            TRACKS_ENDPOINT.format(track_id=track_id),
            headers={"Authorization": f"Bearer {credential}"},
            timeout=CATALOG_TIMEOUT_S,
        )
        if response.status_code != 200:
            logger.info(
                "Catalog lookup returned HTTP %s for %s", response.status_code, track_uri
            )
            return None
        payload: Any = response.json()
        url = first_image_url(payload if isinstance(payload, dict) else None)
        if url is None:
            logger.info("No image in catalog response for %s", track_uri)
            return None
        return download_image(url)
