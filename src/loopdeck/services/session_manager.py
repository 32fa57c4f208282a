"""Remote control session lifecycle, authorization and error classification.

`SessionManager` is the only owner of the credential, the connection status
and the reconnect attempt counter. It turns transport callbacks into published
events, classifies every failure exactly once (expired credential vs.
transient), runs the bounded reconnect policy and exposes the command channel
the sequencer and poller talk through.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Literal

from loopdeck.errors import DeviceUnavailableError, TransportError
from loopdeck.events import (
    ConnectionStateChanged,
    ConnectionStatus,
    EventBus,
    Notification,
    PlayerStatePushed,
    ReconnectGaveUp,
    SessionBusyChanged,
    SessionErrorChanged,
)
from loopdeck.runtime_config import EngineConfig
from loopdeck.services.remote_transport import (
    AuthHandshake,
    Connected,
    ConnectionFailed,
    Disconnected,
    PlayerStateReported,
    PlayerStateSnapshot,
    RemoteTransport,
    TrackMetadata,
    TransportEvent,
)
from loopdeck.services.token_store import FileTokenStore
from loopdeck.utils.async_utils import GenerationTimer

logger = logging.getLogger(__name__)

EXPIRED_SESSION_MESSAGE = "Session expired. Please connect again."
DEVICE_UNAVAILABLE_MESSAGE = (
    "Spotify is not available. Install or configure it, then connect again."
)

ScheduleOutcome = Literal["scheduled", "no_credential", "exhausted"]


def is_expired_credential_error(message: str) -> bool:
    """Return whether a failure message means the grant or token is dead."""
    lower = message.lower()
    return ("invalid" in lower and "grant" in lower) or (
        "token" in lower and "expired" in lower
    )


class SessionManager:
    """Owns authorization, connect/reconnect and the command channel."""

    def __init__(
        self,
        *,
        transport: RemoteTransport,
        handshake: AuthHandshake,
        token_store: FileTokenStore,
        bus: EventBus,
        config: EngineConfig | None = None,
    ) -> None:
        self._transport = transport
        self._handshake = handshake
        self._token_store = token_store
        self._bus = bus
        self._config = (config or EngineConfig()).normalized()
        self._credential = token_store.load()
        self._state: ConnectionStatus = "disconnected"
        self._busy = False
        self._last_error: str | None = None
        self._attempts = 0
        self._gave_up = False
        self._session_ready = False
        self._handshake_in_flight = False
        self._expected_disconnect = False
        self._reconnect_timer = GenerationTimer("reconnect")
        transport.set_event_handler(self._handle_transport_event)
        handshake.set_result_handlers(
            self._on_handshake_success, self._on_handshake_failure
        )

    @property
    def connection_state(self) -> ConnectionStatus:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == "connected"

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def has_credential(self) -> bool:
        return self._credential is not None

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    @property
    def has_pending_reconnect(self) -> bool:
        return self._reconnect_timer.pending

    @property
    def gave_up(self) -> bool:
        return self._gave_up

    @property
    def supports_push(self) -> bool:
        return self._transport.supports_push

    def catalog_credential(self) -> str | None:
        """Credential for public catalog lookups; never cached by callers."""
        return self._credential

    async def start(self) -> None:
        """Restore a persisted session, if a credential was stored."""
        if self._credential is not None:
            logger.info("Restoring session from stored credential")
            await self._build_session_and_connect()

    async def shutdown(self) -> None:
        await self._reconnect_timer.aclose()
        if self._transport.is_connected:
            self._expected_disconnect = True
            await self._transport.disconnect()

    async def authorize(self) -> None:
        """Start a fresh authorization handshake.

        Raises `DeviceUnavailableError` without launching anything when the
        controlling application is not reachable.
        """
        await self._clear_error()
        self._attempts = 0
        self._gave_up = False
        if not self._handshake.is_available():
            logger.warning("Authorization unavailable: controlling app unreachable")
            await self._surface_error(DEVICE_UNAVAILABLE_MESSAGE)
            raise DeviceUnavailableError(DEVICE_UNAVAILABLE_MESSAGE)
        self._handshake_in_flight = True
        await self._set_busy(True)
        try:
            await self._handshake.initiate()
        except Exception:
            self._handshake_in_flight = False
            await self._set_busy(False)
            raise

    async def handle_auth_callback(self, payload: str) -> bool:
        """Route an externally delivered redirect payload into the handshake."""
        if not self._handshake_in_flight:
            logger.debug("Ignoring auth callback: no handshake in flight")
            return False
        return await self._handshake.handle_callback(payload)

    async def connect(self) -> None:
        if self._credential is None:
            return
        if not self._session_ready:
            await self._build_session_and_connect()
        else:
            await self._attempt_connect()

    async def disconnect(self) -> None:
        """Tear down the live connection but keep the credential."""
        self._reconnect_timer.cancel()
        if self._transport.is_connected:
            self._expected_disconnect = True
            await self._transport.disconnect()
        else:
            await self._set_state("disconnected")
        await self._set_busy(False)

    async def reconnect_if_needed(self) -> None:
        """Reconnect unless already connected; safe to call repeatedly."""
        if self._gave_up:
            # An explicit request after exhaustion gets a fresh budget.
            self._attempts = 0
            self._gave_up = False
        await self._reconnect()

    async def play(self, track_uri: str) -> bool:
        return await self._send("play", self._transport.play, track_uri)

    async def pause(self) -> bool:
        return await self._send("pause", self._transport.pause)

    async def resume(self) -> bool:
        return await self._send("resume", self._transport.resume)

    async def seek(self, position_ms: int) -> bool:
        return await self._send("seek", self._transport.seek, max(0, position_ms))

    async def query_player_state(self) -> PlayerStateSnapshot | None:
        """Fetch current remote state; raises `TransportError` on failure."""
        if not self.is_connected:
            return None
        return await self._transport.get_state()

    async def subscribe_player_state(self) -> None:
        if not self._transport.supports_push or not self.is_connected:
            return
        try:
            await self._transport.subscribe_player_state()
        except TransportError as exc:
            logger.warning("Player state subscription failed: %s", exc)

    async def fetch_track(self, track_uri: str) -> TrackMetadata | None:
        if not self.is_connected:
            return None
        try:
            return await self._transport.fetch_track(track_uri)
        except TransportError as exc:
            logger.warning("Fetch track failed for %s: %s", track_uri, exc)
            return None

    async def fetch_device_artwork(self, track_uri: str) -> bytes | None:
        if not self.is_connected:
            return None
        try:
            return await self._transport.fetch_artwork(track_uri)
        except TransportError as exc:
            logger.info("Device artwork failed for %s: %s", track_uri, exc)
            return None

    async def _send(
        self, name: str, command: Callable[..., Awaitable[None]], *args: Any
    ) -> bool:
        if not self.is_connected:
            logger.debug("Dropping %s command: not connected", name)
            return False
        try:
            await command(*args)
        except TransportError as exc:
            if not self.is_connected:
                # The transport already reported the drop at connection level.
                logger.warning("Command %s failed with session dropped: %s", name, exc)
                return False
            await self._on_command_failed(name, str(exc))
            return False
        return True

    async def _on_command_failed(self, name: str, message: str) -> None:
        logger.warning("Command %s failed: %s", name, message)
        if is_expired_credential_error(message):
            await self._expire_credential(message)
            return
        if name == "pause":
            # Pausing an already paused device reports an error; nothing to show.
            return
        await self._surface_error(message)

    async def _handle_transport_event(self, event: TransportEvent) -> None:
        if isinstance(event, Connected):
            await self._on_connected()
        elif isinstance(event, ConnectionFailed):
            await self._on_connection_failed(event.message)
        elif isinstance(event, Disconnected):
            await self._on_disconnected(event.message)
        elif isinstance(event, PlayerStateReported):
            await self._bus.publish(PlayerStatePushed(event.snapshot))

    async def _on_handshake_success(self, credential: str) -> None:
        self._handshake_in_flight = False
        self._credential = credential
        try:
            self._token_store.save(credential)
        except OSError as exc:
            logger.warning("Could not persist credential: %s", exc)
        self._session_ready = False
        logger.info("Authorization completed")
        await self._build_session_and_connect()

    async def _on_handshake_failure(self, message: str) -> None:
        self._handshake_in_flight = False
        await self._set_busy(False)
        logger.warning("Authorization failed: %s", message)
        if is_expired_credential_error(message):
            await self._expire_credential(message)
        else:
            await self._surface_error(message)

    async def _build_session_and_connect(self) -> None:
        if self._credential is None:
            return
        self._session_ready = True
        await self._set_busy(True)
        await self._attempt_connect()

    async def _attempt_connect(self) -> None:
        credential = self._credential
        if credential is None:
            return
        await self._clear_error()
        await self._set_state("connecting")
        try:
            await self._transport.connect(credential)
        except TransportError as exc:
            await self._on_connection_failed(str(exc))

    async def _reconnect(self) -> None:
        if self._credential is None or self._state != "disconnected":
            return
        if self._session_ready:
            await self._set_busy(True)
            await self._attempt_connect()
        else:
            await self._build_session_and_connect()

    async def _on_connected(self) -> None:
        self._attempts = 0
        self._gave_up = False
        self._reconnect_timer.cancel()
        await self._clear_error()
        await self._set_busy(False)
        logger.info("Remote session connected")
        await self._set_state("connected")

    async def _on_connection_failed(self, message: str) -> None:
        logger.warning("Connection attempt failed: %s", message)
        await self._set_state("disconnected")
        await self._handle_failure(message)

    async def _on_disconnected(self, message: str | None) -> None:
        expected = self._expected_disconnect
        self._expected_disconnect = False
        await self._set_state("disconnected")
        if expected:
            logger.info("Remote session disconnected")
            return
        logger.warning("Remote session dropped: %s", message or "no reason given")
        await self._handle_failure(message)

    async def _handle_failure(self, message: str | None) -> None:
        if message and is_expired_credential_error(message):
            await self._expire_credential(message)
            return
        outcome = await self._schedule_reconnect()
        if outcome == "exhausted":
            reason = message or "Connection lost"
            await self._surface_error(
                f"{reason}. Gave up after "
                f"{self._config.max_reconnect_attempts} reconnect attempts."
            )
            await self._bus.publish(ReconnectGaveUp(self._attempts))
        elif message:
            await self._surface_error(message)

    async def _schedule_reconnect(self) -> ScheduleOutcome:
        self._reconnect_timer.cancel()
        if self._credential is None:
            await self._set_busy(False)
            return "no_credential"
        self._attempts += 1
        if self._attempts > self._config.max_reconnect_attempts:
            self._gave_up = True
            await self._set_busy(False)
            logger.warning(
                "Reconnect budget exhausted after %d attempts",
                self._config.max_reconnect_attempts,
            )
            return "exhausted"
        await self._set_busy(True)
        delay_s = self._config.reconnect_delay_ms / 1000
        logger.info(
            "Reconnect attempt %d/%d in %.1fs",
            self._attempts,
            self._config.max_reconnect_attempts,
            delay_s,
        )
        self._reconnect_timer.schedule(delay_s, self._reconnect)
        return "scheduled"

    async def _expire_credential(self, message: str) -> None:
        logger.warning("Credential rejected, clearing session: %s", message)
        self._credential = None
        self._session_ready = False
        self._attempts = 0
        self._reconnect_timer.cancel()
        try:
            self._token_store.delete()
        except OSError as exc:
            logger.warning("Could not delete stored credential: %s", exc)
        await self._set_busy(False)
        if self._transport.is_connected:
            self._expected_disconnect = True
            await self._transport.disconnect()
        await self._surface_error(EXPIRED_SESSION_MESSAGE)

    async def _set_state(self, state: ConnectionStatus) -> None:
        if state == self._state:
            return
        self._state = state
        await self._bus.publish(ConnectionStateChanged(state))

    async def _set_busy(self, busy: bool) -> None:
        if busy == self._busy:
            return
        self._busy = busy
        await self._bus.publish(SessionBusyChanged(busy))

    async def _surface_error(self, message: str) -> None:
        self._last_error = message
        await self._bus.publish(SessionErrorChanged(message))
        await self._bus.publish(Notification(message))

    async def _clear_error(self) -> None:
        if self._last_error is None:
            return
        self._last_error = None
        await self._bus.publish(SessionErrorChanged(None))
