"""Typed event channel for deployment progress.

Components publish DeploymentEvent records to an EventChannel; consumers
(audit trail, CLI progress display, notification bridges) subscribe and
iterate asynchronously. Publishing never blocks: each subscriber owns a
bounded asyncio.Queue and events are dropped (with a warning) for a
subscriber that falls behind.

Example:
    >>> channel = EventChannel()
    >>> subscription = channel.subscribe(kinds={EventKind.RELEASE_PROMOTED})
    >>> channel.emit(EventKind.RELEASE_PROMOTED, target="prod", release_id="2026...")
    >>> async for event in subscription:
    ...     print(event.kind, event.target)
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator, Iterable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger(__name__)

_DEFAULT_QUEUE_SIZE = 1000


class EventKind(str, Enum):
    """Kinds of deployment events."""

    LOCK_ACQUIRED = "lock_acquired"
    LOCK_RELEASED = "lock_released"
    LOCK_FORCE_RELEASED = "lock_force_released"
    STALE_LOCK_RECLAIMED = "stale_lock_reclaimed"

    RELEASE_PREPARED = "release_prepared"
    RELEASE_PROMOTED = "release_promoted"
    RELEASE_DISCARDED = "release_discarded"
    RELEASE_FAILED = "release_failed"
    RELEASES_PRUNED = "releases_pruned"
    ROLLBACK_COMPLETED = "rollback_completed"
    AUTO_ROLLBACK_TRIGGERED = "auto_rollback_triggered"

    ROLLOUT_STARTED = "rollout_started"
    ROLLOUT_WEIGHT_APPLIED = "rollout_weight_applied"
    ROLLOUT_GATE_PASSED = "rollout_gate_passed"
    ROLLOUT_GATE_FAILED = "rollout_gate_failed"
    ROLLOUT_PAUSED = "rollout_paused"
    ROLLOUT_RESUMED = "rollout_resumed"
    ROLLOUT_SUCCEEDED = "rollout_succeeded"
    ROLLOUT_ROLLED_BACK = "rollout_rolled_back"
    ROLLOUT_FAILED = "rollout_failed"

    DEPLOY_STARTED = "deploy_started"
    DEPLOY_SUCCEEDED = "deploy_succeeded"
    DEPLOY_FAILED = "deploy_failed"

    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"
    JOB_STARTED = "job_started"
    JOB_SUCCEEDED = "job_succeeded"
    JOB_FAILED = "job_failed"
    JOB_SKIPPED = "job_skipped"


class DeploymentEvent(BaseModel):
    """One progress event.

    Attributes:
        event_id: Unique event identifier.
        kind: What happened.
        timestamp: When it happened (UTC).
        target: Target the event concerns, if any.
        release_id: Release the event concerns, if any.
        message: Human-readable summary.
        details: Kind-specific structured data.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    kind: EventKind
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    target: str | None = None
    release_id: str | None = None
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)


class Subscription:
    """Async iterator over events delivered to one subscriber.

    Iteration ends after the channel is closed or ``close()`` is called.
    """

    def __init__(
        self,
        channel: EventChannel,
        maxsize: int,
        kinds: frozenset[EventKind] | None,
    ) -> None:
        self._channel = channel
        self._queue: asyncio.Queue[DeploymentEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._kinds = kinds
        self._closed = False
        self.dropped = 0

    def accepts(self, event: DeploymentEvent) -> bool:
        return not self._closed and (self._kinds is None or event.kind in self._kinds)

    def _deliver(self, event: DeploymentEvent | None) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "event_dropped",
                kind=event.kind.value if event is not None else None,
                queue_size=self._queue.maxsize,
            )

    def drain(self) -> list[DeploymentEvent]:
        """Return every event already queued, without waiting."""
        events: list[DeploymentEvent] = []
        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return events
            if event is not None:
                events.append(event)

    def close(self) -> None:
        """Stop receiving events and end iteration."""
        if self._closed:
            return
        self._closed = True
        self._channel._unsubscribe(self)
        self._deliver(None)

    def __aiter__(self) -> AsyncIterator[DeploymentEvent]:
        return self

    async def __anext__(self) -> DeploymentEvent:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class EventChannel:
    """Fan-out channel from publishers to subscribers.

    Publishing is synchronous and non-blocking so it can be called from any
    point in the deploy flow without introducing a suspension point.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscription] = []
        self._closed = False

    def subscribe(
        self,
        *,
        maxsize: int = _DEFAULT_QUEUE_SIZE,
        kinds: Iterable[EventKind] | None = None,
    ) -> Subscription:
        """Register a new subscriber.

        Args:
            maxsize: Events buffered before new ones are dropped.
            kinds: Only deliver these kinds. None delivers everything.
        """
        subscription = Subscription(self, maxsize, frozenset(kinds) if kinds else None)
        if self._closed:
            subscription.close()
        else:
            self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def publish(self, event: DeploymentEvent) -> None:
        """Deliver ``event`` to every matching subscriber."""
        if self._closed:
            return
        for subscription in list(self._subscribers):
            if subscription.accepts(event):
                subscription._deliver(event)

    def emit(
        self,
        kind: EventKind,
        *,
        target: str | None = None,
        release_id: str | None = None,
        message: str = "",
        **details: Any,
    ) -> DeploymentEvent:
        """Build and publish an event; return it."""
        event = DeploymentEvent(
            kind=kind,
            target=target,
            release_id=release_id,
            message=message,
            details=details,
        )
        self.publish(event)
        return event

    def close(self) -> None:
        """End every subscription."""
        self._closed = True
        for subscription in list(self._subscribers):
            subscription.close()


__all__ = ["DeploymentEvent", "EventChannel", "EventKind", "Subscription"]
