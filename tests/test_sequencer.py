"""Tests for clip sequencing, the post-play seek and boundary auto-advance."""

from __future__ import annotations

import asyncio
import dataclasses
import random

import pytest

from loopdeck.events import CursorChanged, EventBus, PlayingChanged
from loopdeck.runtime_config import EngineConfig
from loopdeck.services.clip_store import ClipRecord
from loopdeck.services.fake_transport import FakeAuthHandshake, FakeTransport
from loopdeck.services.remote_transport import PlayerStateSnapshot
from loopdeck.services.sequencer import PlaybackSequencer
from loopdeck.services.session_manager import SessionManager
from loopdeck.services.state_poller import PlayerStatePoller
from loopdeck.services.token_store import FileTokenStore


def _clip(clip_id: str, start: int, stop: int, order: int) -> ClipRecord:
    return ClipRecord(
        id=clip_id,
        track_uri=f"spotify:track:{clip_id}",
        track_name=f"Track {clip_id}",
        artist_name="Artist",
        start_position_ms=start,
        stop_position_ms=stop,
        order=order,
    )


CLIP_A = _clip("a", 0, 30_000, 0)
CLIP_B = _clip("b", 0, 20_000, 1)


def _run(coro):
    return asyncio.run(coro)


def _snap(uri: str, position_ms: int, *, paused: bool = False) -> PlayerStateSnapshot:
    return PlayerStateSnapshot(
        track_uri=uri,
        track_name="Track",
        artist_name="Artist",
        position_ms=position_ms,
        duration_ms=180_000,
        is_paused=paused,
    )


def _build(tmp_path, clips=(CLIP_A, CLIP_B), *, seek_delay_ms: int = 10):
    bus = EventBus()
    events: list[object] = []

    async def record(event: object) -> None:
        events.append(event)

    bus.subscribe(object, record)
    store = FileTokenStore(tmp_path / "credential.json")
    store.save("stored-token")
    transport = FakeTransport()
    config = EngineConfig(seek_delay_ms=seek_delay_ms, reconnect_delay_ms=10)
    session = SessionManager(
        transport=transport,
        handshake=FakeAuthHandshake(),
        token_store=store,
        bus=bus,
        config=config,
    )
    # Polling is driven by hand through poll_once on a private bus.
    poller = PlayerStatePoller(session=session, bus=EventBus(), config=config)
    sequencer = PlaybackSequencer(
        session=session, poller=poller, bus=bus, config=config
    )
    sequencer.load_clips(clips)
    return sequencer, session, poller, transport, events


def test_load_clips_sorts_by_order_then_id(tmp_path) -> None:
    first = _clip("z", 0, 1_000, 0)
    tie_low = _clip("b", 0, 1_000, 3)
    tie_high = _clip("c", 0, 1_000, 3)
    sequencer, *_ = _build(tmp_path, clips=(tie_high, tie_low, first))
    assert [clip.id for clip in sequencer.clips] == ["z", "b", "c"]
    assert sequencer.current_index is None


def test_play_from_index_plays_then_seeks_to_clip_start(tmp_path) -> None:
    clip = _clip("a", 5_000, 30_000, 0)

    async def run() -> None:
        sequencer, session, _, transport, _ = _build(tmp_path, clips=(clip,))
        await session.start()
        await sequencer.play_from_index(0)
        assert transport.commands == [("play", clip.track_uri)]
        assert sequencer.current_index == 0
        assert sequencer.is_playing
        await asyncio.sleep(0.05)
        assert transport.commands == [("play", clip.track_uri), ("seek", 5_000)]
        await sequencer.shutdown()

    _run(run())


@pytest.mark.parametrize("position_ms", [29_600, 29_501, 29_500, 30_000])
def test_boundary_advances_to_next_clip(tmp_path, position_ms: int) -> None:
    async def run() -> None:
        sequencer, session, _, transport, _ = _build(tmp_path)
        await session.start()
        await sequencer.play_from_index(0)
        await asyncio.sleep(0.05)
        assert transport.commands == [("play", CLIP_A.track_uri), ("seek", 0)]
        await sequencer.handle_snapshot(_snap(CLIP_A.track_uri, 0))
        await sequencer.handle_snapshot(_snap(CLIP_A.track_uri, position_ms))
        assert transport.command_names() == ["play", "seek", "pause", "play"]
        assert transport.commands[-1] == ("play", CLIP_B.track_uri)
        assert sequencer.current_index == 1
        assert sequencer.cursor.has_reached_stop_boundary is False
        await asyncio.sleep(0.05)
        assert transport.commands[-1] == ("seek", 0)
        await sequencer.shutdown()

    _run(run())


def test_position_before_guard_buffer_does_not_advance(tmp_path) -> None:
    async def run() -> None:
        sequencer, session, _, transport, _ = _build(tmp_path)
        await session.start()
        await sequencer.play_from_index(0)
        await asyncio.sleep(0.05)
        await sequencer.handle_snapshot(_snap(CLIP_A.track_uri, 29_499))
        assert transport.command_names() == ["play", "seek"]
        assert sequencer.current_index == 0
        await sequencer.shutdown()

    _run(run())


def test_boundary_latch_fires_once_per_traversal(tmp_path) -> None:
    async def run() -> None:
        sequencer, session, _, transport, _ = _build(tmp_path)
        await session.start()
        await sequencer.play_from_index(0)
        await asyncio.sleep(0.05)
        for position in (29_000, 29_600, 29_800, 30_000, 30_000):
            await sequencer.handle_snapshot(_snap(CLIP_A.track_uri, position))
        assert transport.commands.count(("play", CLIP_B.track_uri)) == 1
        assert transport.command_names().count("pause") == 1
        assert sequencer.current_index == 1
        await sequencer.shutdown()

    _run(run())


def test_snapshot_before_seek_lands_does_not_advance(tmp_path) -> None:
    async def run() -> None:
        sequencer, session, _, transport, _ = _build(tmp_path, seek_delay_ms=200)
        await session.start()
        await sequencer.play_from_index(0)
        await sequencer.handle_snapshot(_snap(CLIP_A.track_uri, 29_900))
        assert transport.command_names() == ["play"]
        assert sequencer.current_index == 0
        await sequencer.shutdown()

    _run(run())


def test_stale_report_past_boundary_on_shared_track_does_not_advance(
    tmp_path,
) -> None:
    late = _clip("late", 40_000, 60_000, 0)
    early = dataclasses.replace(
        _clip("early", 0, 10_000, 1), track_uri=late.track_uri
    )

    async def run() -> None:
        sequencer, session, _, transport, _ = _build(tmp_path, clips=(late, early))
        await session.start()
        await sequencer.play_from_index(1)
        await asyncio.sleep(0.05)
        assert transport.commands[-1] == ("seek", 0)
        # The device still reports where the previous clip left off.
        await sequencer.handle_snapshot(_snap(late.track_uri, 59_000))
        assert transport.command_names() == ["play", "seek"]
        assert sequencer.current_index == 1
        await sequencer.handle_snapshot(_snap(late.track_uri, 0))
        await sequencer.handle_snapshot(_snap(late.track_uri, 9_600))
        assert transport.command_names()[-1] == "pause"
        assert sequencer.current_index is None
        await sequencer.shutdown()

    _run(run())


def test_new_play_cancels_pending_seek(tmp_path) -> None:
    second = _clip("b", 5_000, 20_000, 1)

    async def run() -> None:
        sequencer, session, _, transport, _ = _build(
            tmp_path, clips=(CLIP_A, second), seek_delay_ms=30
        )
        await session.start()
        await sequencer.play_from_index(0)
        await sequencer.play_from_index(1)
        await asyncio.sleep(0.1)
        assert transport.commands == [
            ("play", CLIP_A.track_uri),
            ("play", second.track_uri),
            ("seek", 5_000),
        ]
        await sequencer.shutdown()

    _run(run())


def test_failed_play_schedules_no_seek(tmp_path) -> None:
    async def run() -> None:
        sequencer, session, _, transport, _ = _build(tmp_path)
        await session.start()
        transport.command_failures["play"] = "No active device"
        await sequencer.play_from_index(0)
        await asyncio.sleep(0.05)
        assert transport.commands == []
        assert session.last_error == "No active device"
        await sequencer.shutdown()

    _run(run())


def test_play_next_at_last_clip_stops(tmp_path) -> None:
    async def run() -> None:
        sequencer, session, _, transport, events = _build(tmp_path)
        await session.start()
        await sequencer.play_from_index(1)
        await sequencer.play_next()
        assert sequencer.current_index is None
        assert not sequencer.is_playing
        assert transport.command_names()[-1] == "pause"
        cursor_events = [e for e in events if isinstance(e, CursorChanged)]
        assert cursor_events[-1] == CursorChanged(None, None)
        await sequencer.shutdown()

    _run(run())


def test_play_previous_at_first_clip_replays_it(tmp_path) -> None:
    clip = _clip("a", 4_000, 30_000, 0)

    async def run() -> None:
        sequencer, session, _, transport, _ = _build(tmp_path, clips=(clip, CLIP_B))
        await session.start()
        await sequencer.play_from_index(0)
        await asyncio.sleep(0.05)
        await sequencer.play_previous()
        await asyncio.sleep(0.05)
        assert sequencer.current_index == 0
        assert transport.commands == [
            ("play", clip.track_uri),
            ("seek", 4_000),
            ("play", clip.track_uri),
            ("seek", 4_000),
        ]
        await sequencer.shutdown()

    _run(run())


def test_next_and_previous_without_cursor_are_noops(tmp_path) -> None:
    async def run() -> None:
        sequencer, session, _, transport, _ = _build(tmp_path)
        await session.start()
        await sequencer.play_next()
        await sequencer.play_previous()
        assert transport.commands == []
        assert not sequencer.can_go_next
        assert not sequencer.can_go_previous

    _run(run())


def test_cursor_never_leaves_bounds(tmp_path) -> None:
    clips = tuple(_clip(f"c{i}", 0, 10_000, i) for i in range(3))

    async def run() -> None:
        sequencer, session, _, _, _ = _build(tmp_path, clips=clips)
        await session.start()
        rng = random.Random(7)
        for _ in range(200):
            op = rng.choice(("play", "next", "previous"))
            if op == "play":
                await sequencer.play_from_index(rng.randint(-2, len(clips) + 1))
            elif op == "next":
                was_last = sequencer.current_index == len(clips) - 1
                await sequencer.play_next()
                if was_last:
                    assert sequencer.current_index is None
            else:
                await sequencer.play_previous()
            index = sequencer.current_index
            assert index is None or 0 <= index < len(clips)
        await sequencer.shutdown()

    _run(run())


def test_empty_sequence_makes_play_a_noop(tmp_path) -> None:
    async def run() -> None:
        sequencer, session, _, transport, _ = _build(tmp_path)
        await session.start()
        sequencer.load_clips([])
        await sequencer.play_from_index(0)
        assert transport.commands == []
        assert sequencer.current_index is None

    _run(run())


def test_play_requires_connection(tmp_path) -> None:
    async def run() -> None:
        sequencer, _, _, transport, _ = _build(tmp_path)
        await sequencer.play_from_index(0)
        assert transport.commands == []
        assert sequencer.current_index is None

    _run(run())


def test_toggle_play_pause_uses_latest_snapshot(tmp_path) -> None:
    async def run() -> None:
        sequencer, session, poller, transport, _ = _build(tmp_path)
        await session.start()
        await sequencer.toggle_play_pause()
        assert transport.commands == []
        await sequencer.play_from_index(0)
        await poller.poll_once()
        await sequencer.toggle_play_pause()
        assert transport.command_names()[-1] == "pause"
        assert not sequencer.is_playing
        await poller.poll_once()
        await sequencer.toggle_play_pause()
        assert transport.command_names()[-1] == "resume"
        assert sequencer.is_playing
        await sequencer.shutdown()

    _run(run())


def test_playing_flag_mirrors_external_pause(tmp_path) -> None:
    async def run() -> None:
        sequencer, session, _, _, events = _build(tmp_path)
        await session.start()
        await sequencer.play_from_index(0)
        await sequencer.handle_snapshot(_snap(CLIP_A.track_uri, 1_000, paused=True))
        assert not sequencer.is_playing
        await sequencer.handle_snapshot(_snap(CLIP_A.track_uri, 1_000))
        assert sequencer.is_playing
        flags = [e.is_playing for e in events if isinstance(e, PlayingChanged)]
        assert flags == [True, False, True]
        await sequencer.shutdown()

    _run(run())


def test_stop_clears_cursor_and_cancels_pending_seek(tmp_path) -> None:
    async def run() -> None:
        sequencer, session, _, transport, _ = _build(tmp_path, seek_delay_ms=30)
        await session.start()
        await sequencer.play_from_index(0)
        await sequencer.stop()
        await asyncio.sleep(0.08)
        assert sequencer.current_index is None
        assert transport.command_names() == ["play", "pause"]

    _run(run())


def test_reload_follows_moved_clip_and_clears_removed_one(tmp_path) -> None:
    async def run() -> None:
        sequencer, session, _, _, _ = _build(tmp_path)
        await session.start()
        await sequencer.play_from_index(1)
        moved_b = _clip("b", 0, 20_000, 0)
        moved_a = _clip("a", 0, 30_000, 1)
        sequencer.load_clips([moved_a, moved_b])
        assert sequencer.current_index == 0
        assert sequencer.current_clip == moved_b
        sequencer.load_clips([moved_a])
        assert sequencer.current_index is None
        assert not sequencer.is_playing
        await sequencer.shutdown()

    _run(run())
