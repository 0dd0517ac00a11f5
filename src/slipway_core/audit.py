"""JSON Lines audit trail fed from the event channel.

Each DeploymentEvent becomes one line::

    {"id": "...", "timestamp": "2026-10-19T12:00:00+00:00", "operator": "alice@build-01",
     "action": "release_promoted", "target": "prod", "release_id": "2026...",
     "details": {...}, "result": "success"}

Example:
    >>> async with JsonlAuditSink(Path(".slipway/audit.jsonl"), channel):
    ...     await pipeline.deploy("prod", request)
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import structlog

from slipway_core.events import DeploymentEvent, EventChannel, EventKind, Subscription
from slipway_core.lock import default_holder

logger = structlog.get_logger(__name__)

_FAILURE_KINDS = frozenset(
    {
        EventKind.RELEASE_FAILED,
        EventKind.ROLLOUT_GATE_FAILED,
        EventKind.ROLLOUT_FAILED,
        EventKind.ROLLOUT_ROLLED_BACK,
        EventKind.AUTO_ROLLBACK_TRIGGERED,
        EventKind.DEPLOY_FAILED,
        EventKind.JOB_FAILED,
    }
)
_SUCCESS_KINDS = frozenset(
    {
        EventKind.RELEASE_PROMOTED,
        EventKind.ROLLBACK_COMPLETED,
        EventKind.ROLLOUT_GATE_PASSED,
        EventKind.ROLLOUT_SUCCEEDED,
        EventKind.DEPLOY_SUCCEEDED,
        EventKind.JOB_SUCCEEDED,
    }
)


def audit_record(event: DeploymentEvent, operator: str) -> dict[str, Any]:
    """Convert an event into an audit line."""
    if event.kind in _FAILURE_KINDS:
        result = "failure"
    elif event.kind in _SUCCESS_KINDS:
        result = "success"
    else:
        result = "info"
    details = dict(event.details)
    if event.message:
        details.setdefault("message", event.message)
    return {
        "id": event.event_id,
        "timestamp": event.timestamp.isoformat(),
        "operator": operator,
        "action": event.kind.value,
        "target": event.target,
        "release_id": event.release_id,
        "details": details,
        "result": result,
    }


class JsonlAuditSink:
    """Append every event published on ``channel`` to a JSON Lines file."""

    def __init__(
        self,
        path: Path,
        channel: EventChannel,
        *,
        operator: str | None = None,
    ) -> None:
        self._path = path
        self._channel = channel
        self._operator = operator or default_holder()
        self._subscription: Subscription | None = None
        self._task: asyncio.Task[None] | None = None
        self.written = 0

    @property
    def path(self) -> Path:
        return self._path

    def _append(self, line: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def run(self, subscription: Subscription) -> None:
        """Write events from ``subscription`` until it ends."""
        async for event in subscription:
            line = json.dumps(audit_record(event, self._operator), default=str)
            await asyncio.to_thread(self._append, line)
            self.written += 1

    def start(self) -> None:
        """Subscribe and start writing in a background task."""
        if self._task is not None:
            return
        self._subscription = self._channel.subscribe()
        self._task = asyncio.get_running_loop().create_task(self.run(self._subscription))
        logger.debug("audit_sink_started", path=str(self._path))

    async def stop(self) -> None:
        """Flush queued events and stop."""
        if self._subscription is not None:
            self._subscription.close()
        if self._task is not None:
            await self._task
        logger.debug("audit_sink_stopped", path=str(self._path), written=self.written)
        self._subscription = None
        self._task = None

    async def __aenter__(self) -> JsonlAuditSink:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()


__all__ = ["JsonlAuditSink", "audit_record"]
