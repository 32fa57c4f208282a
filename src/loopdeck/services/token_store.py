"""Durable storage for the single session credential.

Loading is tolerant: a missing, unreadable or corrupt file means "no
credential" so startup falls through to the authorization flow instead of
aborting.
"""

from __future__ import annotations

import json
import logging
from contextlib import suppress
from pathlib import Path
from uuid import uuid4

logger = logging.getLogger(__name__)


class FileTokenStore:
    """JSON file holding one opaque access token."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> str | None:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Failed to read credential file %s: %s", self._path, exc)
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Credential file at %s is invalid JSON; ignoring.", self._path)
            return None
        token = data.get("access_token") if isinstance(data, dict) else None
        if not isinstance(token, str) or not token.strip():
            logger.warning("Credential file at %s has no token; ignoring.", self._path)
            return None
        return token

    def save(self, token: str) -> None:
        """Persist token atomically via write-then-replace."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(f"{self._path.name}.{uuid4().hex}.tmp")
        try:
            tmp_path.write_text(
                json.dumps({"access_token": token}), encoding="utf-8"
            )
            tmp_path.replace(self._path)
        finally:
            with suppress(OSError):
                tmp_path.unlink()

    def delete(self) -> None:
        with suppress(FileNotFoundError):
            self._path.unlink()
