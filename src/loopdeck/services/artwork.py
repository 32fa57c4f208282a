"""Album artwork lookup with a process-lifetime cache."""

from __future__ import annotations

import asyncio
import logging

from loopdeck.errors import TransportError
from loopdeck.services.remote_transport import CatalogLookup
from loopdeck.services.session_manager import SessionManager

logger = logging.getLogger(__name__)


class ArtworkResolver:
    """Resolves track artwork from the device first, the public catalog second.

    Only successful lookups are cached. A miss on both paths returns None,
    which callers render as a placeholder.
    """

    def __init__(
        self, *, session: SessionManager, catalog: CatalogLookup | None = None
    ) -> None:
        self._session = session
        self._catalog = catalog
        self._cache: dict[str, bytes] = {}
        self._in_flight: dict[str, asyncio.Task[bytes | None]] = {}

    def cached(self, track_uri: str) -> bytes | None:
        return self._cache.get(track_uri)

    async def fetch_artwork(self, track_uri: str) -> bytes | None:
        cached = self._cache.get(track_uri)
        if cached is not None:
            return cached
        task = self._in_flight.get(track_uri)
        if task is None:
            task = asyncio.create_task(
                self._resolve(track_uri), name=f"loopdeck-artwork-{track_uri}"
            )
            self._in_flight[track_uri] = task
            task.add_done_callback(lambda _: self._in_flight.pop(track_uri, None))
        # Shielded so one abandoned caller does not cancel the shared lookup.
        return await asyncio.shield(task)

    async def _resolve(self, track_uri: str) -> bytes | None:
        image = await self._session.fetch_device_artwork(track_uri)
        if image:
            self._cache[track_uri] = image
            return image
        image = await self._from_catalog(track_uri)
        if image:
            self._cache[track_uri] = image
            return image
        logger.info("No artwork available for %s", track_uri)
        return None

    async def _from_catalog(self, track_uri: str) -> bytes | None:
        credential = self._session.catalog_credential()
        if self._catalog is None or credential is None:
            return None
        try:
            return await self._catalog.fetch_artwork(track_uri, credential)
        except TransportError as exc:
            logger.info("Catalog artwork failed for %s: %s", track_uri, exc)
            return None
