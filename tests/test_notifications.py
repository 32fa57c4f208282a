"""Tests for transient notification display."""

from __future__ import annotations

import asyncio

from loopdeck.events import EventBus, Notification
from loopdeck.runtime_config import EngineConfig
from loopdeck.services.notifications import NotificationCenter


def _run(coro):
    return asyncio.run(coro)


def test_notification_auto_dismisses() -> None:
    async def run() -> None:
        bus = EventBus()
        center = NotificationCenter(
            bus=bus, config=EngineConfig(notification_display_ms=20)
        )
        await bus.publish(Notification("Session expired. Please connect again."))
        assert center.message == "Session expired. Please connect again."
        assert center.is_visible
        await asyncio.sleep(0.08)
        assert center.message is None
        assert center.shown_count == 1

    _run(run())


def test_newer_notification_replaces_and_restarts_timer() -> None:
    async def run() -> None:
        bus = EventBus()
        center = NotificationCenter(
            bus=bus, config=EngineConfig(notification_display_ms=100)
        )
        await bus.publish(Notification("first"))
        await asyncio.sleep(0.06)
        await bus.publish(Notification("second"))
        await asyncio.sleep(0.06)
        assert center.message == "second"
        await asyncio.sleep(0.15)
        assert center.message is None
        assert center.shown_count == 2

    _run(run())


def test_dismiss_hides_immediately() -> None:
    async def run() -> None:
        center = NotificationCenter(bus=EventBus())
        center.show("Device went away")
        center.dismiss()
        assert not center.is_visible
        await center.aclose()

    _run(run())
