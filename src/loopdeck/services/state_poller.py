"""Keeps a fresh player state snapshot available while the session is live."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress

from loopdeck.errors import TransportError
from loopdeck.events import ConnectionStateChanged, EventBus, PlayerStatePushed
from loopdeck.runtime_config import EngineConfig
from loopdeck.services.remote_transport import PlayerStateSnapshot
from loopdeck.services.session_manager import SessionManager

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[PlayerStateSnapshot], Awaitable[None]]


class PlayerStatePoller:
    """Polls remote state on a fixed interval and fans snapshots out.

    Query failures are logged and skipped; reconnect decisions belong to the
    session manager's connection-level callbacks, not to individual queries.
    After a disconnect the last snapshot is kept but may be stale.
    """

    def __init__(
        self,
        *,
        session: SessionManager,
        bus: EventBus,
        config: EngineConfig | None = None,
    ) -> None:
        self._session = session
        config = (config or EngineConfig()).normalized()
        self._interval_s = config.poll_interval_ms / 1000
        self._timeout_s = config.query_timeout_ms / 1000
        self._snapshot: PlayerStateSnapshot | None = None
        self._subscribers: list[SnapshotCallback] = []
        self._task: asyncio.Task[None] | None = None
        bus.subscribe(ConnectionStateChanged, self._on_connection_state)
        bus.subscribe(PlayerStatePushed, self._on_pushed)

    @property
    def is_polling(self) -> bool:
        return self._task is not None and not self._task.done()

    def current_snapshot(self) -> PlayerStateSnapshot | None:
        return self._snapshot

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Register a push-style consumer; return an unsubscriber."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def start(self) -> None:
        if self.is_polling:
            return
        self._task = asyncio.create_task(self._poll_loop(), name="loopdeck-poller")
        await self._session.subscribe_player_state()
        logger.debug("State polling started (interval=%.3fs)", self._interval_s)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        # A snapshot consumer can trigger a disconnect from inside the loop;
        # that task exits on its own once it sees it was detached.
        if task is not asyncio.current_task():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        logger.debug("State polling stopped")

    async def poll_once(self) -> PlayerStateSnapshot | None:
        """Issue one state query and apply its result, if any."""
        try:
            snapshot = await asyncio.wait_for(
                self._session.query_player_state(), timeout=self._timeout_s
            )
        except asyncio.TimeoutError:
            logger.debug("State query timed out after %.1fs", self._timeout_s)
            return None
        except TransportError as exc:
            logger.debug("State query failed: %s", exc)
            return None
        if snapshot is not None:
            await self._apply(snapshot)
        return snapshot

    async def _poll_loop(self) -> None:
        me = asyncio.current_task()
        loop = asyncio.get_running_loop()
        # Fixed-rate ticks: query latency does not stretch the interval.
        next_tick = loop.time()
        while self._task is me:
            next_tick += self._interval_s
            await self.poll_once()
            if self._task is not me:
                break
            now = loop.time()
            if next_tick < now:
                # The query outlasted a whole interval; skip the missed ticks.
                next_tick = now
            await asyncio.sleep(next_tick - now)

    async def _apply(self, snapshot: PlayerStateSnapshot) -> None:
        self._snapshot = snapshot
        for callback in list(self._subscribers):
            await callback(snapshot)

    async def _on_connection_state(self, event: ConnectionStateChanged) -> None:
        if event.state == "connected":
            await self.start()
        elif event.state == "disconnected":
            await self.stop()

    async def _on_pushed(self, event: PlayerStatePushed) -> None:
        await self._apply(event.snapshot)
