"""Version ledger: capped, newest-first release history per application.

The ledger is the source of truth for which release is active on each
target and which one a rollback should return to. All mutations go through
``StateStore.update`` so each one is a single atomic read-modify-write.

Persisted layout (``ledger/<application>``)::

    {"entries": [ {releaseId, version, target, platform, status,
                   createdAtIso, activatedAtIso?, previousReleaseId?}, ... ]}

Invariants:
    - Entries are ordered newest first by creation.
    - At most one entry per target has status ``active``.
    - The entry count never exceeds ``LedgerConfig.max_entries``; the oldest
      non-active entries are dropped first.
"""

from __future__ import annotations

import builtins
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import ValidationError

from slipway_core.errors import ReleaseNotFoundError, StateStoreError
from slipway_core.schemas.config import LedgerConfig
from slipway_core.schemas.release import ReleaseRecord, ReleaseStatus
from slipway_core.store import StateStore, StateValue

logger = structlog.get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class VersionLedger:
    """Release history for one application across its targets.

    Example:
        >>> ledger = VersionLedger(store, "storefront")
        >>> await ledger.record(release)
        >>> await ledger.activate("prod", release.release_id)
        >>> (await ledger.current("prod")).version
        '2.1.0'
    """

    def __init__(
        self,
        store: StateStore,
        application: str,
        config: LedgerConfig | None = None,
    ) -> None:
        self._store = store
        self._application = application
        self._config = config or LedgerConfig()
        self._key = f"ledger/{application}"

    @property
    def application(self) -> str:
        return self._application

    def _decode(self, value: StateValue | None) -> list[ReleaseRecord]:
        if value is None:
            return []
        try:
            return [ReleaseRecord.model_validate(e) for e in value.get("entries", [])]
        except ValidationError as e:
            raise StateStoreError(self._key, f"invalid ledger entry: {e}") from e

    def _encode(self, entries: list[ReleaseRecord]) -> StateValue:
        return {"entries": [entry.to_store() for entry in entries]}

    def _cap(self, entries: list[ReleaseRecord]) -> list[ReleaseRecord]:
        excess = len(entries) - self._config.max_entries
        if excess <= 0:
            return entries
        kept = list(entries)
        for entry in reversed(entries):
            if excess == 0:
                break
            if entry.status != ReleaseStatus.ACTIVE:
                kept.remove(entry)
                excess -= 1
        return kept

    async def _entries(self) -> list[ReleaseRecord]:
        return self._decode(await self._store.read(self._key))

    async def record(self, release: ReleaseRecord) -> ReleaseRecord:
        """Add ``release`` at the head of the history (or replace it in place)."""

        def apply(value: StateValue | None) -> StateValue:
            entries = self._decode(value)
            for index, entry in enumerate(entries):
                if entry.release_id == release.release_id:
                    entries[index] = release
                    break
            else:
                entries.insert(0, release)
            return self._encode(self._cap(entries))

        await self._store.update(self._key, apply)
        logger.debug(
            "ledger_recorded",
            application=self._application,
            target=release.target,
            release_id=release.release_id,
            status=release.status.value,
        )
        return release

    async def set_status(self, release_id: str, status: ReleaseStatus) -> ReleaseRecord:
        """Change the status of one entry.

        Use ``activate`` to make a release active; this method refuses it so
        the one-active-per-target invariant cannot be bypassed.

        Raises:
            ReleaseNotFoundError: If no entry has ``release_id``.
        """
        if status == ReleaseStatus.ACTIVE:
            raise ValueError("use activate() to mark a release active")
        updated: dict[str, ReleaseRecord] = {}

        def apply(value: StateValue | None) -> StateValue | None:
            entries = self._decode(value)
            for index, entry in enumerate(entries):
                if entry.release_id == release_id:
                    entries[index] = entry.model_copy(update={"status": status})
                    updated["record"] = entries[index]
                    return self._encode(entries)
            return value

        await self._store.update(self._key, apply)
        if "record" not in updated:
            raise ReleaseNotFoundError(self._application, release_id, reason="not in ledger")
        return updated["record"]

    async def activate(
        self,
        target: str,
        release_id: str,
        *,
        replaced_status: ReleaseStatus = ReleaseStatus.INACTIVE,
    ) -> ReleaseRecord:
        """Mark ``release_id`` active on ``target`` and demote the old active one.

        Args:
            target: Target the release belongs to.
            release_id: Release that ``current`` now points at.
            replaced_status: Status given to the previously active release
                (``inactive`` for a normal promotion, ``rolled_back`` for a
                rollback).

        Returns:
            The updated record.

        Raises:
            ReleaseNotFoundError: If the release is not in the ledger for ``target``.
        """
        now = _utc_now()
        result: dict[str, Any] = {}

        def apply(value: StateValue | None) -> StateValue | None:
            entries = self._decode(value)
            new_index = next(
                (
                    i
                    for i, e in enumerate(entries)
                    if e.release_id == release_id and e.target == target
                ),
                None,
            )
            if new_index is None:
                return value

            if entries[new_index].status == ReleaseStatus.ACTIVE:
                result["record"] = entries[new_index]
                return value

            replaced_id: str | None = None
            for i, entry in enumerate(entries):
                if entry.target == target and entry.status == ReleaseStatus.ACTIVE:
                    entries[i] = entry.model_copy(update={"status": replaced_status})
                    replaced_id = entry.release_id

            entries[new_index] = entries[new_index].model_copy(
                update={
                    "status": ReleaseStatus.ACTIVE,
                    "activated_at": now,
                    "previous_release_id": replaced_id,
                }
            )
            result["record"] = entries[new_index]
            result["replaced"] = replaced_id
            return self._encode(entries)

        await self._store.update(self._key, apply)
        if "record" not in result:
            raise ReleaseNotFoundError(target, release_id, reason="not in ledger")

        logger.info(
            "ledger_activated",
            application=self._application,
            target=target,
            release_id=release_id,
            replaced_release_id=result.get("replaced"),
            replaced_status=replaced_status.value,
        )
        record: ReleaseRecord = result["record"]
        return record

    async def list(
        self,
        target: str | None = None,
        limit: int | None = None,
    ) -> builtins.list[ReleaseRecord]:
        """Return entries newest first, optionally for one target."""
        entries = await self._entries()
        if target is not None:
            entries = [e for e in entries if e.target == target]
        return entries[:limit] if limit is not None else entries

    async def get(self, version: str, target: str | None = None) -> ReleaseRecord | None:
        """Return the newest entry for ``version``."""
        for entry in await self.list(target):
            if entry.version == version:
                return entry
        return None

    async def get_release(self, release_id: str) -> ReleaseRecord | None:
        """Return the entry with ``release_id``."""
        for entry in await self._entries():
            if entry.release_id == release_id:
                return entry
        return None

    async def current(self, target: str) -> ReleaseRecord | None:
        """Return the active entry for ``target``."""
        for entry in await self.list(target):
            if entry.status == ReleaseStatus.ACTIVE:
                return entry
        return None

    async def previous(self, target: str) -> ReleaseRecord | None:
        """Return the rollback candidate for ``target``.

        This is the release the current one replaced, and only while it is
        still ``inactive``. After a rollback the release rolled back from is
        ``rolled_back``, so a second consecutive call finds nothing rather
        than walking further into history.
        """
        entries = await self.list(target)
        current = next((e for e in entries if e.status == ReleaseStatus.ACTIVE), None)
        if current is None or current.previous_release_id is None:
            return None
        for entry in entries:
            if entry.release_id == current.previous_release_id:
                return entry if entry.status == ReleaseStatus.INACTIVE else None
        return None


__all__ = ["VersionLedger"]
