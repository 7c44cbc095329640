"""Tests for durable key-value storage."""

import pytest

from expense_sync.datastore import MemoryStorage, SqlStorage, StorageError


@pytest.mark.asyncio
async def test_memory_storage_roundtrip():
    storage = MemoryStorage()

    assert await storage.get("token") is None
    await storage.set("token", "abc")
    assert await storage.get("token") == "abc"

    await storage.delete("token")
    await storage.delete("token")
    assert await storage.get("token") is None


@pytest.mark.asyncio
async def test_sql_storage_persists_across_instances(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'state.db'}"

    first = SqlStorage(url)
    await first.init()
    await first.set("offline-request-queue", "[]")
    await first.set("offline-request-queue", '[{"id": "1"}]')
    await first.set("token", "abc")
    await first.close()

    second = SqlStorage(url)
    await second.init()
    try:
        assert await second.get("offline-request-queue") == '[{"id": "1"}]'
        await second.delete("token")
        assert await second.get("token") is None
        assert await second.get("missing") is None
    finally:
        await second.close()


@pytest.mark.asyncio
async def test_sql_storage_requires_init(tmp_path):
    storage = SqlStorage(f"sqlite+aiosqlite:///{tmp_path / 'state.db'}")

    with pytest.raises(StorageError):
        await storage.get("token")
