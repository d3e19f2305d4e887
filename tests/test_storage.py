"""
Tests for the key-value stores.
"""
import asyncio

import pytest

from newspulse.services.storage import MemoryKeyValueStore, SQLiteKeyValueStore


@pytest.fixture
def sqlite_store(tmp_path):
    store = SQLiteKeyValueStore(db_path=str(tmp_path / 'kv.db'))
    asyncio.run(store.initialize_db())
    return store


class TestSQLiteKeyValueStore:
    """Durable store backed by aiosqlite"""

    def test_set_get_overwrite(self, sqlite_store):
        async def scenario():
            assert await sqlite_store.set('newspulse:cache:full', '{"a": 1}')
            assert await sqlite_store.set('newspulse:cache:full', '{"a": 2}')
            return await sqlite_store.get('newspulse:cache:full')

        assert asyncio.run(scenario()) == '{"a": 2}'

    def test_missing_key(self, sqlite_store):
        assert asyncio.run(sqlite_store.get('nope')) is None

    def test_keys_by_prefix_and_delete(self, sqlite_store):
        async def scenario():
            await sqlite_store.set('newspulse:cache:full', '1')
            await sqlite_store.set('newspulse:cache:priority', '2')
            await sqlite_store.set('newspulse:source_stats', '3')
            await sqlite_store.delete('newspulse:cache:full')
            return await sqlite_store.keys('newspulse:cache:')

        assert asyncio.run(scenario()) == ['newspulse:cache:priority']

    def test_initialize_is_repeatable(self, sqlite_store):
        asyncio.run(sqlite_store.set('k', 'v'))
        asyncio.run(sqlite_store.initialize_db())

        assert asyncio.run(sqlite_store.get('k')) == 'v'

    def test_write_without_table_reports_failure(self, tmp_path):
        store = SQLiteKeyValueStore(db_path=str(tmp_path / 'uninitialized.db'))

        assert asyncio.run(store.set('k', 'v')) is False


class TestMemoryKeyValueStore:
    """In-process store with optional quota"""

    def test_quota_rejects_oversized_write(self):
        store = MemoryKeyValueStore(quota_bytes=20)

        assert asyncio.run(store.set('k', 'small'))
        assert asyncio.run(store.set('k2', 'x' * 50)) is False
        assert asyncio.run(store.get('k2')) is None

    def test_overwrite_counts_only_new_value(self):
        store = MemoryKeyValueStore(quota_bytes=20)

        assert asyncio.run(store.set('k', 'x' * 15))
        assert asyncio.run(store.set('k', 'y' * 15))

    def test_keys_and_delete(self):
        store = MemoryKeyValueStore()

        async def scenario():
            await store.set('a:1', '1')
            await store.set('a:2', '2')
            await store.set('b:1', '3')
            await store.delete('a:1')
            await store.delete('missing')
            return await store.keys('a:')

        assert asyncio.run(scenario()) == ['a:2']
