"""Tests for connection-driven state polling."""

from __future__ import annotations

import asyncio

from loopdeck.events import EventBus
from loopdeck.runtime_config import EngineConfig
from loopdeck.services.fake_transport import FakeAuthHandshake, FakeTransport
from loopdeck.services.remote_transport import PlayerStateSnapshot
from loopdeck.services.session_manager import SessionManager
from loopdeck.services.state_poller import PlayerStatePoller
from loopdeck.services.token_store import FileTokenStore

URI = "spotify:track:aaa"


def _run(coro):
    return asyncio.run(coro)


def _build(tmp_path, *, transport: FakeTransport | None = None, **config_kwargs):
    bus = EventBus()
    store = FileTokenStore(tmp_path / "credential.json")
    store.save("stored-token")
    transport = transport or FakeTransport()
    config = EngineConfig(poll_interval_ms=100, reconnect_delay_ms=10, **config_kwargs)
    session = SessionManager(
        transport=transport,
        handshake=FakeAuthHandshake(),
        token_store=store,
        bus=bus,
        config=config,
    )
    poller = PlayerStatePoller(session=session, bus=bus, config=config)
    return session, poller, transport


def test_polling_follows_connection_and_keeps_stale_snapshot(tmp_path) -> None:
    async def run() -> None:
        session, poller, _ = _build(tmp_path)
        assert not poller.is_polling
        await session.start()
        assert poller.is_polling
        await session.play(URI)
        snapshot = await poller.poll_once()
        assert snapshot is not None
        assert snapshot.track_uri == URI
        assert poller.current_snapshot() == snapshot
        await session.disconnect()
        assert not poller.is_polling
        assert poller.current_snapshot() == snapshot

    _run(run())


def test_interval_polling_replaces_snapshot(tmp_path) -> None:
    async def run() -> None:
        session, poller, transport = _build(tmp_path)
        await session.start()
        await session.play(URI)
        await transport.advance(1_000)
        await asyncio.sleep(0.3)
        current = poller.current_snapshot()
        assert current is not None
        assert current.position_ms == 1_000
        await session.shutdown()
        assert not poller.is_polling

    _run(run())


def test_subscribers_receive_snapshots_until_unsubscribed(tmp_path) -> None:
    async def run() -> None:
        session, poller, _ = _build(tmp_path)
        seen: list[PlayerStateSnapshot] = []

        async def consumer(snapshot: PlayerStateSnapshot) -> None:
            seen.append(snapshot)

        unsubscribe = poller.subscribe(consumer)
        await session.start()
        await session.play(URI)
        await poller.poll_once()
        unsubscribe()
        count = len(seen)
        await poller.poll_once()
        assert count >= 1
        assert len(seen) == count
        await session.shutdown()

    _run(run())


def test_query_failure_is_skipped_without_reconnect(tmp_path) -> None:
    async def run() -> None:
        session, poller, transport = _build(tmp_path)
        await session.start()
        await session.play(URI)
        first = await poller.poll_once()
        transport.state_failure = "Service unavailable"
        assert await poller.poll_once() is None
        assert poller.current_snapshot() == first
        assert session.is_connected
        assert not session.has_pending_reconnect
        assert session.last_error is None
        await session.shutdown()

    _run(run())


def test_query_timeout_is_skipped(tmp_path) -> None:
    class SlowTransport(FakeTransport):
        async def get_state(self):
            await asyncio.sleep(1)
            return await super().get_state()

    async def run() -> None:
        session, poller, _ = _build(
            tmp_path, transport=SlowTransport(), query_timeout_ms=20
        )
        await session.start()
        await session.play(URI)
        assert await poller.poll_once() is None
        assert poller.current_snapshot() is None
        assert session.is_connected
        await session.shutdown()

    _run(run())


def test_push_updates_replace_snapshot(tmp_path) -> None:
    async def run() -> None:
        transport = FakeTransport(supports_push=True)
        session, poller, _ = _build(tmp_path, transport=transport)
        await session.start()
        assert transport.subscribed
        await session.play(URI)
        await transport.advance(2_500)
        current = poller.current_snapshot()
        assert current is not None
        assert current.position_ms == 2_500
        await session.shutdown()

    _run(run())


def test_consumer_disconnecting_from_poll_stops_cleanly(tmp_path) -> None:
    async def run() -> None:
        session, poller, _ = _build(tmp_path)

        async def consumer(snapshot: PlayerStateSnapshot) -> None:
            await session.disconnect()

        poller.subscribe(consumer)
        await session.start()
        await session.play(URI)
        await asyncio.sleep(0.3)
        assert not poller.is_polling
        assert session.connection_state == "disconnected"

    _run(run())


def test_slow_queries_do_not_stretch_poll_interval(tmp_path) -> None:
    class SlowTransport(FakeTransport):
        async def get_state(self):
            await asyncio.sleep(0.3)
            return await super().get_state()

    async def run() -> None:
        bus = EventBus()
        store = FileTokenStore(tmp_path / "credential.json")
        store.save("stored-token")
        config = EngineConfig()
        session = SessionManager(
            transport=SlowTransport(),
            handshake=FakeAuthHandshake(),
            token_store=store,
            bus=bus,
            config=config,
        )
        poller = PlayerStatePoller(session=session, bus=bus, config=config)
        loop = asyncio.get_running_loop()
        stamps: list[float] = []

        async def consumer(snapshot: PlayerStateSnapshot) -> None:
            stamps.append(loop.time())

        poller.subscribe(consumer)
        await session.start()
        await session.play(URI)
        await asyncio.sleep(2.0)
        await session.shutdown()
        assert len(stamps) >= 3
        gaps = [later - earlier for earlier, later in zip(stamps, stamps[1:])]
        assert all(0.4 <= gap <= 0.6 for gap in gaps)

    _run(run())
