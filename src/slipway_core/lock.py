"""Durable, TTL-based deploy lock.

At most one deploy or rollback holds a target at a time. Lock records live
in the injected StateStore under ``locks/<target>`` and carry their own TTL;
an expired record is treated as absent and reclaimed by the next acquirer.
Reclaiming trades strict exclusivity for availability after a crash, so the
TTL should stay generous relative to the expected deploy duration (default
one hour).

Acquire and release use the store's compare-and-swap: two processes racing
for the same (absent or stale) record cannot both win, and a holder whose
lock was reclaimed cannot delete the new holder's record on release.

Example:
    >>> lock = DeployLock(FileStateStore(Path(".slipway")))
    >>> async with lock.hold("prod", LockOperation.DEPLOY) as handle:
    ...     await release_manager.promote(release_id)

    >>> handle = await lock.acquire("prod", LockOperation.ROLLBACK)
    >>> try:
    ...     ...
    ... finally:
    ...     await lock.release(handle)
"""

from __future__ import annotations

import getpass
import os
import socket
import time
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass

import structlog
from pydantic import ValidationError

from slipway_core.errors import LockContentionError
from slipway_core.events import EventChannel, EventKind
from slipway_core.schemas.config import LockConfig
from slipway_core.schemas.release import LockOperation, LockRecord
from slipway_core.store import StateStore, StateValue
from slipway_core.telemetry.metrics import DeployMetrics
from slipway_core.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

OPERATOR_ENV = "SLIPWAY_OPERATOR"


def _now_ms() -> int:
    return int(time.time() * 1000)


def default_holder() -> str:
    """Return ``user@host`` identifying this process's operator."""
    user = os.environ.get(OPERATOR_ENV)
    if not user:
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = "unknown"
    return f"{user}@{socket.gethostname()}"


@dataclass(frozen=True)
class LockHandle:
    """Proof of a successful acquire, required to release."""

    record: LockRecord

    @property
    def target(self) -> str:
        return self.record.target

    @property
    def lock_id(self) -> str:
        return self.record.lock_id


class DeployLock:
    """Per-target mutual exclusion for deploy and rollback operations."""

    def __init__(
        self,
        store: StateStore,
        config: LockConfig | None = None,
        *,
        events: EventChannel | None = None,
        metrics: DeployMetrics | None = None,
        holder: str | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        """Initialize DeployLock.

        Args:
            store: Persisted store for lock records.
            config: Lock settings (TTL). Uses defaults if None.
            events: Channel for lock lifecycle events.
            metrics: Metrics recorder.
            holder: Identity written into lock records. Defaults to user@host.
            clock: Returns the current time in epoch milliseconds.
        """
        self._store = store
        self._config = config or LockConfig()
        self._events = events or EventChannel()
        self._metrics = metrics or DeployMetrics()
        self._holder = holder or default_holder()
        self._clock = clock

    @staticmethod
    def _key(target: str) -> str:
        return f"locks/{target}"

    def _parse(self, target: str, raw: StateValue) -> LockRecord | None:
        try:
            return LockRecord.model_validate(raw)
        except ValidationError as e:
            logger.warning("lock_record_invalid", target=target, error=str(e))
            return None

    async def acquire(
        self,
        target: str,
        operation: LockOperation = LockOperation.DEPLOY,
    ) -> LockHandle:
        """Acquire the lock for ``target``.

        Args:
            target: Target to lock.
            operation: Operation the lock guards.

        Returns:
            LockHandle to pass to release().

        Raises:
            LockContentionError: If a valid lock is held by someone else.
        """
        key = self._key(target)
        with create_span(
            DeployMetrics.SPAN_LOCK_ACQUIRE,
            attributes={"slipway.target": target, "slipway.operation": operation.value},
        ):
            existing_raw = await self._store.read(key)
            if existing_raw is not None:
                existing = self._parse(target, existing_raw)
                now = self._clock()
                if existing is not None and not existing.is_expired(now):
                    self._metrics.record_lock_contention(target)
                    logger.info(
                        "lock_contention",
                        target=target,
                        holder=existing.holder,
                        holder_pid=existing.holder_process_id,
                        operation=existing.operation.value,
                    )
                    raise LockContentionError(target, existing)
                self._reclaim_notice(target, existing, now)

            record = LockRecord(
                lock_id=uuid.uuid4().hex,
                target=target,
                holder_process_id=os.getpid(),
                holder=self._holder,
                operation=operation,
                acquired_at_epoch_ms=self._clock(),
                ttl_ms=self._config.ttl_ms,
            )
            swapped = await self._store.compare_and_swap(key, existing_raw, record.to_store())
            if not swapped:
                # Someone else wrote between our read and our swap
                current_raw = await self._store.read(key)
                holder = self._parse(target, current_raw) if current_raw else None
                self._metrics.record_lock_contention(target)
                raise LockContentionError(target, holder)

        logger.info(
            "lock_acquired",
            target=target,
            lock_id=record.lock_id,
            operation=operation.value,
            ttl_ms=record.ttl_ms,
        )
        self._events.emit(
            EventKind.LOCK_ACQUIRED,
            target=target,
            message=f"Lock acquired for {operation.value}",
            lock_id=record.lock_id,
            operation=operation.value,
        )
        return LockHandle(record)

    def _reclaim_notice(self, target: str, stale: LockRecord | None, now: int) -> None:
        details: dict[str, object] = {}
        if stale is not None:
            details = {
                "stale_lock_id": stale.lock_id,
                "stale_holder": stale.holder,
                "stale_holder_pid": stale.holder_process_id,
                "expired_ms_ago": now - stale.expires_at_epoch_ms,
            }
        logger.warning("stale_lock_reclaimed", target=target, **details)
        self._metrics.record_stale_lock(target)
        self._events.emit(
            EventKind.STALE_LOCK_RECLAIMED,
            target=target,
            message="Expired or unreadable lock reclaimed",
            **details,
        )

    async def release(self, handle: LockHandle) -> bool:
        """Release a held lock.

        Only deletes the record if it is still the one this handle created.

        Returns:
            True if the record was deleted.
        """
        key = self._key(handle.target)
        released = await self._store.compare_and_swap(key, handle.record.to_store(), None)
        if not released:
            logger.warning(
                "lock_release_mismatch",
                target=handle.target,
                lock_id=handle.lock_id,
            )
            return False

        logger.info("lock_released", target=handle.target, lock_id=handle.lock_id)
        self._events.emit(
            EventKind.LOCK_RELEASED,
            target=handle.target,
            lock_id=handle.lock_id,
        )
        return True

    async def get_lock_info(self, target: str) -> LockRecord | None:
        """Return the valid lock record for ``target``, or None."""
        raw = await self._store.read(self._key(target))
        if raw is None:
            return None
        record = self._parse(target, raw)
        if record is None or record.is_expired(self._clock()):
            return None
        return record

    async def is_locked(self, target: str) -> bool:
        """Return True if a valid (unexpired) lock holds ``target``."""
        return await self.get_lock_info(target) is not None

    async def force_release(self, target: str) -> bool:
        """Delete the lock for ``target`` regardless of holder.

        Operator escape hatch for a holder known to be dead.

        Returns:
            True if a record existed.
        """
        existed = await self._store.delete(self._key(target))
        logger.warning("lock_force_released", target=target, existed=existed)
        if existed:
            self._events.emit(EventKind.LOCK_FORCE_RELEASED, target=target)
        return existed

    @asynccontextmanager
    async def hold(
        self,
        target: str,
        operation: LockOperation = LockOperation.DEPLOY,
    ) -> AsyncIterator[LockHandle]:
        """Acquire on entry, always release on exit."""
        handle = await self.acquire(target, operation)
        try:
            yield handle
        finally:
            await self.release(handle)


__all__ = ["DeployLock", "LockHandle", "default_holder"]
