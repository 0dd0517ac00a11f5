"""Unit tests for the event channel."""

from __future__ import annotations

import asyncio

import pytest

from slipway_core.events import EventChannel, EventKind


class TestEventChannel:
    def test_emit_returns_event(self, events: EventChannel) -> None:
        event = events.emit(
            EventKind.RELEASE_PROMOTED,
            target="prod",
            release_id="20261019120000000001",
            message="promoted",
            version="2.1.0",
        )
        assert event.kind == EventKind.RELEASE_PROMOTED
        assert event.details == {"version": "2.1.0"}
        assert event.timestamp.tzinfo is not None

    def test_fan_out_to_every_subscriber(self, events: EventChannel) -> None:
        first = events.subscribe()
        second = events.subscribe()
        events.emit(EventKind.DEPLOY_STARTED, target="prod")

        assert [e.kind for e in first.drain()] == [EventKind.DEPLOY_STARTED]
        assert [e.kind for e in second.drain()] == [EventKind.DEPLOY_STARTED]

    def test_kind_filter(self, events: EventChannel) -> None:
        failures = events.subscribe(kinds=[EventKind.DEPLOY_FAILED])
        events.emit(EventKind.DEPLOY_STARTED, target="prod")
        events.emit(EventKind.DEPLOY_FAILED, target="prod")

        assert [e.kind for e in failures.drain()] == [EventKind.DEPLOY_FAILED]

    def test_full_queue_drops_without_blocking(self, events: EventChannel) -> None:
        slow = events.subscribe(maxsize=2)
        for _ in range(5):
            events.emit(EventKind.ROLLOUT_WEIGHT_APPLIED, target="prod")

        assert len(slow.drain()) == 2
        assert slow.dropped == 3

    def test_closed_subscription_stops_receiving(self, events: EventChannel) -> None:
        subscription = events.subscribe()
        subscription.close()
        events.emit(EventKind.DEPLOY_STARTED)
        assert subscription.drain() == []

    def test_subscribe_after_close_is_closed(self, events: EventChannel) -> None:
        events.close()
        subscription = events.subscribe()
        events.emit(EventKind.DEPLOY_STARTED)
        assert subscription.drain() == []


class TestSubscriptionIteration:
    @pytest.mark.asyncio
    async def test_iteration_ends_when_channel_closes(self, events: EventChannel) -> None:
        subscription = events.subscribe()

        async def consume() -> list[EventKind]:
            return [event.kind async for event in subscription]

        consumer = asyncio.create_task(consume())
        events.emit(EventKind.JOB_STARTED, target="a")
        events.emit(EventKind.JOB_SUCCEEDED, target="a")
        events.close()

        assert await consumer == [EventKind.JOB_STARTED, EventKind.JOB_SUCCEEDED]

    @pytest.mark.asyncio
    async def test_async_context_manager_closes(self, events: EventChannel) -> None:
        async with events.subscribe() as subscription:
            events.emit(EventKind.STAGE_STARTED, message="production")

        kinds = [event.kind async for event in subscription]
        assert kinds == [EventKind.STAGE_STARTED]
