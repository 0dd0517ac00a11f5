"""Persisted state stores for lock and ledger records.

Components never reach for a global store; a StateStore handle is passed to
each constructor (DeployLock, VersionLedger) so tests can substitute
InMemoryStateStore.

Values are JSON-compatible dicts addressed by slash-separated keys such as
``locks/prod`` or ``ledger/storefront``.

Key Components:
    StateStore: Protocol every backend implements
    FileStateStore: JSON files on local disk, fcntl-locked, atomic rename
    InMemoryStateStore: Process-local store for tests and dry runs

Concurrency:
    ``compare_and_swap`` and ``update`` are atomic with respect to other
    callers of the same store. FileStateStore gets this from an exclusive
    ``fcntl.flock`` on a per-key lock file, which covers every process on
    one host. Writers on different hosts sharing a network filesystem are
    only as safe as that filesystem's locking; back the protocol with a
    store offering conditional writes when cross-host exclusion matters.

Example:
    >>> store = FileStateStore(Path("/var/lib/slipway"))
    >>> await store.write("locks/prod", {"lockId": "abc"})
    >>> await store.compare_and_swap("locks/prod", {"lockId": "abc"}, None)
    True
"""

from __future__ import annotations

import asyncio
import copy
import fcntl
import json
import os
import re
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import structlog

from slipway_core.errors import StateStoreError

if TYPE_CHECKING:
    from collections.abc import Generator

logger = structlog.get_logger(__name__)

StateValue = dict[str, Any]
UpdateFn = Callable[["StateValue | None"], "StateValue | None"]

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*(/[A-Za-z0-9][A-Za-z0-9._-]*)*$")


def validate_key(key: str) -> str:
    """Reject keys that could escape the store root."""
    if not _KEY_PATTERN.match(key):
        raise StateStoreError(key, "invalid key")
    return key


@runtime_checkable
class StateStore(Protocol):
    """Key/value store for persisted lock and ledger state."""

    async def read(self, key: str) -> StateValue | None:
        """Return the value at ``key`` or None if absent."""
        ...

    async def write(self, key: str, value: StateValue) -> None:
        """Unconditionally store ``value`` at ``key``."""
        ...

    async def delete(self, key: str) -> bool:
        """Delete ``key``; return True if it existed."""
        ...

    async def compare_and_swap(
        self,
        key: str,
        expected: StateValue | None,
        new: StateValue | None,
    ) -> bool:
        """Replace the value only if it currently equals ``expected``.

        ``expected=None`` means "key must be absent"; ``new=None`` deletes.
        """
        ...

    async def update(self, key: str, fn: UpdateFn) -> StateValue | None:
        """Atomically read, transform and write ``key``; return the new value."""
        ...


class FileStateStore:
    """JSON-file state store rooted at a local directory.

    Each key maps to ``<root>/<key>.json`` with a sibling ``.lock`` file.
    Writes go to a temp file and are renamed into place, so readers never
    see a partially written record. Blocking file I/O runs in a worker
    thread to keep the event loop responsive.
    """

    def __init__(self, root: Path) -> None:
        """Initialize FileStateStore.

        Args:
            root: Directory holding the state files. Created if missing.

        Raises:
            StateStoreError: If the directory cannot be created.
        """
        self._root = root
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateStoreError(str(root), f"cannot create state directory: {e}") from e

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        return self._root / f"{validate_key(key)}.json"

    @contextmanager
    def _lock(self, key: str) -> Generator[None, None, None]:
        """Exclusive fcntl lock for one key."""
        path = self._path(key)
        lock_path = path.with_name(path.name + ".lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_path.touch(exist_ok=True)

        lock_fd = os.open(str(lock_path), os.O_RDWR)
        try:
            fcntl.flock(lock_fd, fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(lock_fd, fcntl.LOCK_UN)
            os.close(lock_fd)

    def _read_unlocked(self, key: str) -> StateValue | None:
        path = self._path(key)
        try:
            text = path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StateStoreError(key, f"read failed: {e}") from e
        try:
            value = json.loads(text)
        except json.JSONDecodeError as e:
            raise StateStoreError(key, f"corrupt record at {path}: {e}") from e
        if not isinstance(value, dict):
            raise StateStoreError(key, f"record at {path} is not an object")
        return value

    def _write_unlocked(self, key: str, value: StateValue | None) -> None:
        path = self._path(key)
        try:
            if value is None:
                path.unlink(missing_ok=True)
                return
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = path.with_name(path.name + ".tmp")
            temp_path.write_text(json.dumps(value, indent=2, sort_keys=True))
            temp_path.replace(path)
        except OSError as e:
            raise StateStoreError(key, f"write failed: {e}") from e

    def _read_sync(self, key: str) -> StateValue | None:
        with self._lock(key):
            return self._read_unlocked(key)

    def _write_sync(self, key: str, value: StateValue) -> None:
        with self._lock(key):
            self._write_unlocked(key, value)

    def _delete_sync(self, key: str) -> bool:
        with self._lock(key):
            existed = self._path(key).exists()
            self._write_unlocked(key, None)
            return existed

    def _cas_sync(
        self,
        key: str,
        expected: StateValue | None,
        new: StateValue | None,
    ) -> bool:
        with self._lock(key):
            if self._read_unlocked(key) != expected:
                return False
            self._write_unlocked(key, new)
            return True

    def _update_sync(self, key: str, fn: UpdateFn) -> StateValue | None:
        with self._lock(key):
            new = fn(self._read_unlocked(key))
            self._write_unlocked(key, new)
            return new

    async def read(self, key: str) -> StateValue | None:
        return await asyncio.to_thread(self._read_sync, key)

    async def write(self, key: str, value: StateValue) -> None:
        await asyncio.to_thread(self._write_sync, key, value)

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, key)

    async def compare_and_swap(
        self,
        key: str,
        expected: StateValue | None,
        new: StateValue | None,
    ) -> bool:
        swapped = await asyncio.to_thread(self._cas_sync, key, expected, new)
        if not swapped:
            logger.debug("state_cas_conflict", key=key)
        return swapped

    async def update(self, key: str, fn: UpdateFn) -> StateValue | None:
        return await asyncio.to_thread(self._update_sync, key, fn)


class InMemoryStateStore:
    """Process-local StateStore.

    Values are deep-copied on the way in and out so callers cannot mutate
    stored state by accident.
    """

    def __init__(self, initial: dict[str, StateValue] | None = None) -> None:
        self._data: dict[str, StateValue] = copy.deepcopy(initial or {})
        self._lock = asyncio.Lock()

    def snapshot(self) -> dict[str, StateValue]:
        """Return a copy of everything stored (for assertions)."""
        return copy.deepcopy(self._data)

    async def read(self, key: str) -> StateValue | None:
        validate_key(key)
        async with self._lock:
            value = self._data.get(key)
            return copy.deepcopy(value) if value is not None else None

    async def write(self, key: str, value: StateValue) -> None:
        validate_key(key)
        async with self._lock:
            self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> bool:
        validate_key(key)
        async with self._lock:
            return self._data.pop(key, None) is not None

    async def compare_and_swap(
        self,
        key: str,
        expected: StateValue | None,
        new: StateValue | None,
    ) -> bool:
        validate_key(key)
        async with self._lock:
            if self._data.get(key) != expected:
                return False
            if new is None:
                self._data.pop(key, None)
            else:
                self._data[key] = copy.deepcopy(new)
            return True

    async def update(self, key: str, fn: UpdateFn) -> StateValue | None:
        validate_key(key)
        async with self._lock:
            current = self._data.get(key)
            new = fn(copy.deepcopy(current) if current is not None else None)
            if new is None:
                self._data.pop(key, None)
            else:
                self._data[key] = copy.deepcopy(new)
            return copy.deepcopy(new) if new is not None else None


__all__ = [
    "FileStateStore",
    "InMemoryStateStore",
    "StateStore",
    "StateValue",
    "validate_key",
]
