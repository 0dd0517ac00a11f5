"""Unit tests for DeployLock."""

from __future__ import annotations

import asyncio

import pytest

from slipway_core.errors import LockContentionError
from slipway_core.events import EventChannel, EventKind
from slipway_core.lock import OPERATOR_ENV, DeployLock, default_holder
from slipway_core.schemas.config import LockConfig
from slipway_core.schemas.release import LockOperation
from slipway_core.store import InMemoryStateStore

HOUR_MS = 3_600_000


class _Clock:
    def __init__(self, now_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


@pytest.fixture
def lock(store: InMemoryStateStore, events: EventChannel, clock: _Clock) -> DeployLock:
    return DeployLock(
        store,
        LockConfig(ttl_ms=HOUR_MS),
        events=events,
        holder="alice@build-01",
        clock=clock,
    )


class TestAcquireRelease:
    @pytest.mark.asyncio
    async def test_acquire_writes_record(self, lock: DeployLock, store: InMemoryStateStore) -> None:
        handle = await lock.acquire("prod", LockOperation.DEPLOY)

        stored = store.snapshot()["locks/prod"]
        assert stored["lockId"] == handle.lock_id
        assert stored["holder"] == "alice@build-01"
        assert stored["operation"] == "deploy"
        assert stored["ttlMs"] == HOUR_MS
        assert await lock.is_locked("prod") is True

    @pytest.mark.asyncio
    async def test_second_acquire_is_rejected_with_holder(self, lock: DeployLock) -> None:
        first = await lock.acquire("prod")

        with pytest.raises(LockContentionError) as exc_info:
            await lock.acquire("prod", LockOperation.ROLLBACK)

        assert exc_info.value.holder is not None
        assert exc_info.value.holder.lock_id == first.lock_id
        assert exc_info.value.exit_code == 2

    @pytest.mark.asyncio
    async def test_targets_are_independent(self, lock: DeployLock) -> None:
        await lock.acquire("prod")
        handle = await lock.acquire("staging")
        assert handle.target == "staging"

    @pytest.mark.asyncio
    async def test_release_then_reacquire(self, lock: DeployLock) -> None:
        handle = await lock.acquire("prod")
        assert await lock.release(handle) is True
        assert await lock.is_locked("prod") is False

        again = await lock.acquire("prod")
        assert again.lock_id != handle.lock_id

    @pytest.mark.asyncio
    async def test_concurrent_acquire_has_one_winner(self, lock: DeployLock) -> None:
        results = await asyncio.gather(
            *(lock.acquire("prod") for _ in range(5)),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, BaseException)]
        losers = [r for r in results if isinstance(r, LockContentionError)]
        assert len(winners) == 1
        assert len(losers) == 4

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self, lock: DeployLock) -> None:
        with pytest.raises(RuntimeError):
            async with lock.hold("prod"):
                assert await lock.is_locked("prod")
                raise RuntimeError("deploy blew up")

        assert await lock.is_locked("prod") is False


class TestStaleLocks:
    @pytest.mark.asyncio
    async def test_expired_lock_is_reclaimed(
        self,
        store: InMemoryStateStore,
        events: EventChannel,
        clock: _Clock,
    ) -> None:
        subscription = events.subscribe(kinds={EventKind.STALE_LOCK_RECLAIMED})
        crashed = DeployLock(store, LockConfig(ttl_ms=HOUR_MS), holder="bob@ci", clock=clock)
        await crashed.acquire("prod")

        clock.now_ms += 2 * HOUR_MS
        survivor = DeployLock(
            store, LockConfig(ttl_ms=HOUR_MS), events=events, holder="alice@ci", clock=clock
        )
        handle = await survivor.acquire("prod")

        assert handle.record.holder == "alice@ci"
        (event,) = subscription.drain()
        assert event.details["stale_holder"] == "bob@ci"
        assert event.details["expired_ms_ago"] == HOUR_MS

    @pytest.mark.asyncio
    async def test_lock_still_valid_just_before_ttl(self, lock: DeployLock, clock: _Clock) -> None:
        await lock.acquire("prod")
        clock.now_ms += HOUR_MS - 1

        with pytest.raises(LockContentionError):
            await lock.acquire("prod")

    @pytest.mark.asyncio
    async def test_expired_lock_not_reported(self, lock: DeployLock, clock: _Clock) -> None:
        await lock.acquire("prod")
        clock.now_ms += HOUR_MS

        assert await lock.get_lock_info("prod") is None
        assert await lock.is_locked("prod") is False

    @pytest.mark.asyncio
    async def test_unreadable_record_is_reclaimed(
        self, lock: DeployLock, store: InMemoryStateStore
    ) -> None:
        await store.write("locks/prod", {"garbage": True})

        handle = await lock.acquire("prod")
        assert handle.target == "prod"

    @pytest.mark.asyncio
    async def test_reclaimed_holder_cannot_release_new_lock(
        self, lock: DeployLock, clock: _Clock
    ) -> None:
        old = await lock.acquire("prod")
        clock.now_ms += 2 * HOUR_MS
        new = await lock.acquire("prod")

        assert await lock.release(old) is False
        info = await lock.get_lock_info("prod")
        assert info is not None
        assert info.lock_id == new.lock_id


class TestForceRelease:
    @pytest.mark.asyncio
    async def test_force_release_removes_foreign_lock(
        self, lock: DeployLock, events: EventChannel
    ) -> None:
        subscription = events.subscribe(kinds={EventKind.LOCK_FORCE_RELEASED})
        await lock.acquire("prod")

        assert await lock.force_release("prod") is True
        assert await lock.force_release("prod") is False
        assert [e.target for e in subscription.drain()] == ["prod"]


class TestDefaultHolder:
    def test_operator_env_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(OPERATOR_ENV, "release-bot")
        assert default_holder().startswith("release-bot@")
