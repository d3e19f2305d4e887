"""
Tiered result cache.

Two named slots sit on top of the key-value store: a short-lived priority
tier holding the first few sources, and a longer-lived full tier holding the
complete merged result. Expired entries are never deleted on read; they
remain available as a fallback when live fetching fails entirely.
"""

import json
import logging
import time
from typing import Callable, Dict, List, Optional

from newspulse.models.content import CacheEntry, ContentRecord
from newspulse.services.source_manager import STATS_KEY
from newspulse.services.storage import KeyValueStore, StorageError


PRIORITY_TIER = "priority"
FULL_TIER = "full"
TIERS = (PRIORITY_TIER, FULL_TIER)

CACHE_PREFIX = "newspulse:cache:"


class CacheManager:
    """
    TTL-based cache with a priority tier and a full tier.

    Writes are best effort: a failed write prunes stale keys once, retries
    once, and is otherwise dropped. Nothing here is raised to the caller.
    """

    def __init__(self, store: KeyValueStore,
                 priority_ttl_seconds: float = 30,
                 full_ttl_seconds: float = 120,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.ttls: Dict[str, float] = {
            PRIORITY_TIER: priority_ttl_seconds,
            FULL_TIER: full_ttl_seconds,
        }
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def key_for(tier: str) -> str:
        if tier not in TIERS:
            raise ValueError(f"Unknown cache tier: {tier}")
        return f"{CACHE_PREFIX}{tier}"

    async def get(self, tier: str) -> Optional[CacheEntry]:
        """Return the tier's entry, fresh or expired, or None."""
        key = self.key_for(tier)
        try:
            raw = await self.store.get(key)
        except StorageError as e:
            self.logger.warning(f"Cache read failed for {tier}: {e}")
            return None
        if not raw:
            return None

        try:
            data = json.loads(raw)
            records = [ContentRecord.from_dict(item) for item in data['records']]
            return CacheEntry(key=key, records=records, stored_at=float(data['stored_at']))
        except (ValueError, KeyError, TypeError) as e:
            self.logger.warning(f"Ignoring corrupt {tier} cache entry: {e}")
            return None

    async def get_fresh(self, tier: str) -> Optional[CacheEntry]:
        """Return the tier's entry only while it is within its TTL."""
        entry = await self.get(tier)
        if entry is not None and self._entry_is_fresh(tier, entry):
            return entry
        return None

    async def is_fresh(self, tier: str) -> bool:
        return await self.get_fresh(tier) is not None

    def _entry_is_fresh(self, tier: str, entry: CacheEntry) -> bool:
        return entry.is_valid(self.clock(), self.ttls[tier])

    async def set(self, tier: str, records: List[ContentRecord]) -> bool:
        """Replace the tier's value. Returns False when the write was dropped."""
        key = self.key_for(tier)
        payload = json.dumps({
            'stored_at': self.clock(),
            'records': [record.to_dict() for record in records],
        })

        if await self._write(key, payload):
            self.logger.debug(f"Cached {len(records)} records in {tier} tier")
            return True

        pruned = await self._prune(keep=tier)
        self.logger.info(f"Cache write for {tier} failed, pruned {pruned} entries and retrying")
        if await self._write(key, payload):
            return True

        self.logger.warning(f"Dropping {tier} cache write ({len(payload)} bytes)")
        return False

    async def _write(self, key: str, payload: str) -> bool:
        try:
            return bool(await self.store.set(key, payload))
        except (StorageError, OSError) as e:
            self.logger.warning(f"Cache write error for {key}: {e}")
            return False

    async def _prune(self, keep: str) -> int:
        """
        Delete cache keys other than the tier being written and the source
        stats. The other tier is only removed when it has expired.
        """
        keep_keys = {self.key_for(keep), STATS_KEY}
        other = FULL_TIER if keep == PRIORITY_TIER else PRIORITY_TIER
        other_entry = await self.get(other)
        if other_entry is not None and self._entry_is_fresh(other, other_entry):
            keep_keys.add(self.key_for(other))

        removed = 0
        try:
            for key in await self.store.keys(CACHE_PREFIX):
                if key in keep_keys:
                    continue
                await self.store.delete(key)
                removed += 1
        except StorageError as e:
            self.logger.warning(f"Cache prune failed: {e}")
        return removed

    async def fallback(self) -> Optional[CacheEntry]:
        """
        Best entry for degraded operation: fresh full, fresh priority,
        expired full, then expired priority.
        """
        full = await self.get(FULL_TIER)
        priority = await self.get(PRIORITY_TIER)

        if full is not None and self._entry_is_fresh(FULL_TIER, full):
            return full
        if priority is not None and self._entry_is_fresh(PRIORITY_TIER, priority):
            return priority
        if full is not None:
            self.logger.info(f"Using expired full cache ({full.age(self.clock()):.0f}s old)")
            return full
        if priority is not None:
            self.logger.info(f"Using expired priority cache ({priority.age(self.clock()):.0f}s old)")
            return priority
        return None

    async def clear(self) -> int:
        """Remove both tiers. Returns the number of keys removed."""
        removed = 0
        for tier in TIERS:
            key = self.key_for(tier)
            if await self.store.get(key) is not None:
                await self.store.delete(key)
                removed += 1
        return removed
