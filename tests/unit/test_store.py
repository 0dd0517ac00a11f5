"""Unit tests for the persisted state stores."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from slipway_core.errors import StateStoreError
from slipway_core.store import FileStateStore, InMemoryStateStore, StateStore, validate_key


@pytest.fixture(params=["file", "memory"])
def any_store(request: pytest.FixtureRequest, tmp_path: Path) -> StateStore:
    if request.param == "file":
        return FileStateStore(tmp_path / "state")
    return InMemoryStateStore()


class TestValidateKey:
    @pytest.mark.parametrize("key", ["locks/prod", "ledger/storefront", "a.b-c_d"])
    def test_accepts_relative_keys(self, key: str) -> None:
        assert validate_key(key) == key

    @pytest.mark.parametrize("key", ["", "/etc/passwd", "locks/../secrets", "locks//prod"])
    def test_rejects_escaping_keys(self, key: str) -> None:
        with pytest.raises(StateStoreError):
            validate_key(key)


class TestStateStoreContract:
    """Behaviour shared by every backend."""

    @pytest.mark.asyncio
    async def test_read_missing_returns_none(self, any_store: StateStore) -> None:
        assert await any_store.read("locks/prod") is None

    @pytest.mark.asyncio
    async def test_write_then_read(self, any_store: StateStore) -> None:
        await any_store.write("locks/prod", {"lockId": "abc", "ttlMs": 1000})
        assert await any_store.read("locks/prod") == {"lockId": "abc", "ttlMs": 1000}

    @pytest.mark.asyncio
    async def test_delete(self, any_store: StateStore) -> None:
        await any_store.write("locks/prod", {"lockId": "abc"})
        assert await any_store.delete("locks/prod") is True
        assert await any_store.delete("locks/prod") is False
        assert await any_store.read("locks/prod") is None

    @pytest.mark.asyncio
    async def test_compare_and_swap_create_only_once(self, any_store: StateStore) -> None:
        assert await any_store.compare_and_swap("locks/prod", None, {"lockId": "a"}) is True
        assert await any_store.compare_and_swap("locks/prod", None, {"lockId": "b"}) is False
        assert await any_store.read("locks/prod") == {"lockId": "a"}

    @pytest.mark.asyncio
    async def test_compare_and_swap_delete_requires_match(self, any_store: StateStore) -> None:
        await any_store.write("locks/prod", {"lockId": "a"})
        assert await any_store.compare_and_swap("locks/prod", {"lockId": "x"}, None) is False
        assert await any_store.compare_and_swap("locks/prod", {"lockId": "a"}, None) is True
        assert await any_store.read("locks/prod") is None

    @pytest.mark.asyncio
    async def test_concurrent_cas_has_single_winner(self, any_store: StateStore) -> None:
        results = await asyncio.gather(
            *(any_store.compare_and_swap("locks/prod", None, {"lockId": str(i)}) for i in range(8))
        )
        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_update_is_read_modify_write(self, any_store: StateStore) -> None:
        def append(value: dict | None) -> dict:
            items = (value or {}).get("items", [])
            return {"items": [*items, len(items)]}

        await asyncio.gather(*(any_store.update("ledger/app", append) for _ in range(5)))
        assert await any_store.read("ledger/app") == {"items": [0, 1, 2, 3, 4]}

    @pytest.mark.asyncio
    async def test_update_returning_none_deletes(self, any_store: StateStore) -> None:
        await any_store.write("ledger/app", {"items": []})
        assert await any_store.update("ledger/app", lambda _: None) is None
        assert await any_store.read("ledger/app") is None


class TestFileStateStore:
    @pytest.mark.asyncio
    async def test_layout_on_disk(self, tmp_path: Path) -> None:
        store = FileStateStore(tmp_path / "state")
        await store.write("locks/prod", {"lockId": "abc"})

        assert (tmp_path / "state" / "locks" / "prod.json").exists()
        assert not (tmp_path / "state" / "locks" / "prod.json.tmp").exists()

    @pytest.mark.asyncio
    async def test_survives_new_instance(self, tmp_path: Path) -> None:
        await FileStateStore(tmp_path).write("ledger/app", {"entries": [1, 2]})
        assert await FileStateStore(tmp_path).read("ledger/app") == {"entries": [1, 2]}

    @pytest.mark.asyncio
    async def test_corrupt_record_raises(self, tmp_path: Path) -> None:
        store = FileStateStore(tmp_path)
        (tmp_path / "locks").mkdir()
        (tmp_path / "locks" / "prod.json").write_text("{not json")

        with pytest.raises(StateStoreError, match="corrupt record"):
            await store.read("locks/prod")

    @pytest.mark.asyncio
    async def test_non_object_record_raises(self, tmp_path: Path) -> None:
        store = FileStateStore(tmp_path)
        (tmp_path / "locks").mkdir()
        (tmp_path / "locks" / "prod.json").write_text("[1, 2]")

        with pytest.raises(StateStoreError, match="not an object"):
            await store.read("locks/prod")


class TestInMemoryStateStore:
    @pytest.mark.asyncio
    async def test_values_are_copied(self) -> None:
        store = InMemoryStateStore()
        value = {"items": [1]}
        await store.write("ledger/app", value)
        value["items"].append(2)

        read = await store.read("ledger/app")
        assert read == {"items": [1]}
        read["items"].append(3)
        assert store.snapshot() == {"ledger/app": {"items": [1]}}

    @pytest.mark.asyncio
    async def test_initial_data(self) -> None:
        store = InMemoryStateStore({"locks/prod": {"lockId": "seed"}})
        assert await store.read("locks/prod") == {"lockId": "seed"}
