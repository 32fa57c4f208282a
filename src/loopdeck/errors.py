"""Exception types shared across the engine.

Session-level failures (expired credentials, transient disconnects) are
classified by `SessionManager` and surfaced as plain strings; only the cases
below cross a call boundary as exceptions.
"""

from __future__ import annotations


class LoopDeckError(Exception):
    """Base class for loopdeck errors."""


class DeviceUnavailableError(LoopDeckError):
    """The controlling application or its configuration is not reachable."""


class TransportError(LoopDeckError):
    """A single command or query against the remote device failed."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ClipStoreError(LoopDeckError):
    """A clip record edit was rejected."""
