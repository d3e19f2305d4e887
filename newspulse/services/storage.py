"""
Key-value storage used by the cache tiers and the source statistics.

Values are plain strings (JSON produced by the callers). Writes report
failure by returning False instead of raising, so callers can decide how
to degrade.
"""

import logging
from typing import Dict, List, Optional

import aiosqlite


class StorageError(Exception):
    """Raised by stores when the backing storage is unusable"""
    pass


class KeyValueStore:
    """Minimal async key-value contract."""

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str) -> bool:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def keys(self, prefix: str = "") -> List[str]:
        raise NotImplementedError


class MemoryKeyValueStore(KeyValueStore):
    """
    In-process store. An optional byte quota makes writes fail once the
    stored values would exceed it, mimicking a full local storage area.
    """

    def __init__(self, quota_bytes: Optional[int] = None):
        self.quota_bytes = quota_bytes
        self._data: Dict[str, str] = {}
        self.logger = logging.getLogger(__name__)

    def _size_with(self, key: str, value: str) -> int:
        total = sum(len(k) + len(v) for k, v in self._data.items() if k != key)
        return total + len(key) + len(value)

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> bool:
        if self.quota_bytes is not None and self._size_with(key, value) > self.quota_bytes:
            self.logger.debug(f"Quota exceeded writing {key} ({len(value)} bytes)")
            return False
        self._data[key] = value
        return True

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str = "") -> List[str]:
        return [k for k in self._data if k.startswith(prefix)]


class SQLiteKeyValueStore(KeyValueStore):
    """
    Durable store backed by a single SQLite table.
    Call await initialize_db() after constructing.
    """

    def __init__(self, db_path: str = "newspulse.db"):
        self.db_path = db_path
        self.logger = logging.getLogger(__name__)

    async def initialize_db(self) -> None:
        """Create the key-value table if needed."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
                """
            )
            await db.commit()

    async def get(self, key: str) -> Optional[str]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cur = await db.execute("SELECT value FROM kv_store WHERE key = ? LIMIT 1", (key,))
                row = await cur.fetchone()
        except aiosqlite.Error as e:
            self.logger.error(f"Failed to read {key} from {self.db_path}: {e}")
            return None
        return row[0] if row else None

    async def set(self, key: str, value: str) -> bool:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO kv_store (key, value, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    """,
                    (key, value),
                )
                await db.commit()
            return True
        except aiosqlite.Error as e:
            self.logger.warning(f"Failed to write {key} to {self.db_path}: {e}")
            return False

    async def delete(self, key: str) -> None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                await db.commit()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e

    async def keys(self, prefix: str = "") -> List[str]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cur = await db.execute(
                    "SELECT key FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key",
                    (len(prefix), prefix),
                )
                rows = await cur.fetchall()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to list keys: {e}") from e
        return [row[0] for row in rows]
