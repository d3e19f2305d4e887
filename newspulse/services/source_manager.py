"""
Source reliability tracking and ranking.
Sources that keep failing sink to the end of the fetch order and are
eventually skipped. A skipped source is retried once its cooldown since
the last failure has passed; the cooldown doubles with every further
failure, up to a cap.
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from newspulse.models.content import SourceDescriptor, SourceStats
from newspulse.services.storage import KeyValueStore


STATS_KEY = "newspulse:source_stats"

SUCCESS_STEP = 0.1
FAILURE_STEP = 0.2
SKIP_RATE_THRESHOLD = 0.1
SKIP_FAILURE_THRESHOLD = 3
SKIP_QUIET_SECONDS = 5 * 60
# Backoff: 5, 10, 20, 40 minutes ... capped at one hour
RETRY_BASE_SECONDS = 5 * 60
RETRY_MAX_SECONDS = 60 * 60


class SourceManager:
    """
    Tracks per-source success rate and latency, ranks the configured sources
    and decides which ones to skip.
    """

    def __init__(self, sources: List[SourceDescriptor], store: KeyValueStore,
                 clock: Callable[[], float] = time.time):
        self.logger = logging.getLogger(__name__)
        self.sources = list(sources)
        self.store = store
        self.clock = clock
        self.stats: Dict[str, SourceStats] = {}
        self._persist_lock = asyncio.Lock()

        self.logger.info(f"Source manager initialized with {len(self.sources)} sources")

    async def load(self) -> None:
        """Load persisted stats. Unknown sources keep neutral defaults."""
        raw = await self.store.get(STATS_KEY)
        if not raw:
            return
        try:
            data = json.loads(raw)
            loaded = {name: SourceStats.from_dict(values) for name, values in data.items()}
        except (ValueError, TypeError, AttributeError) as e:
            self.logger.error(f"Failed to load source stats, starting fresh: {e}")
            return
        self.stats.update(loaded)
        self.logger.info(f"Loaded stats for {len(loaded)} sources")

    def get_stats(self, name: str) -> SourceStats:
        """Stats for a source, created lazily with neutral defaults."""
        if name not in self.stats:
            self.stats[name] = SourceStats()
        return self.stats[name]

    def score(self, name: str) -> float:
        stats = self.get_stats(name)
        return (
            stats.success_rate
            - stats.avg_response_time_ms / 10000
            - stats.consecutive_failures * 0.1
        )

    def ranked_sources(self) -> List[SourceDescriptor]:
        """
        Sources sorted by descending score. sorted() is stable, so equal
        scores keep their configured order.
        """
        return sorted(self.sources, key=lambda source: -self.score(source.name))

    def is_unreliable(self, name: str) -> bool:
        """Low rate, repeated failures and no recent success."""
        stats = self.get_stats(name)
        if stats.success_rate >= SKIP_RATE_THRESHOLD:
            return False
        if stats.consecutive_failures <= SKIP_FAILURE_THRESHOLD:
            return False
        # A source that never succeeded has been quiet forever
        if stats.last_success_at is None:
            return True
        return self.clock() - stats.last_success_at > SKIP_QUIET_SECONDS

    def retry_cooldown(self, name: str) -> float:
        """Seconds an unreliable source waits after its last failure."""
        extra_failures = max(0, self.get_stats(name).consecutive_failures - SKIP_FAILURE_THRESHOLD - 1)
        return min(RETRY_MAX_SECONDS, RETRY_BASE_SECONDS * 2 ** extra_failures)

    def should_skip(self, name: str) -> bool:
        """Skip an unreliable source until its retry cooldown has elapsed."""
        if not self.is_unreliable(name):
            return False
        last_failure_at = self.get_stats(name).last_failure_at
        if last_failure_at is None:
            return True
        return self.clock() - last_failure_at < self.retry_cooldown(name)

    async def record_success(self, name: str, elapsed_ms: float) -> None:
        stats = self.get_stats(name)
        stats.success_rate = min(1.0, stats.success_rate + SUCCESS_STEP)
        stats.avg_response_time_ms = (stats.avg_response_time_ms + elapsed_ms) / 2
        stats.last_success_at = self.clock()
        stats.consecutive_failures = max(0, stats.consecutive_failures - 1)
        stats.total_successes += 1
        self.logger.debug(
            f"{name}: success in {elapsed_ms:.0f}ms "
            f"(rate={stats.success_rate:.2f}, avg={stats.avg_response_time_ms:.0f}ms)"
        )
        await self._persist()

    async def record_failure(self, name: str) -> None:
        stats = self.get_stats(name)
        stats.success_rate = max(0.0, stats.success_rate - FAILURE_STEP)
        stats.consecutive_failures += 1
        stats.last_failure_at = self.clock()
        stats.total_failures += 1
        self.logger.debug(
            f"{name}: failure #{stats.consecutive_failures} (rate={stats.success_rate:.2f})"
        )
        if self.should_skip(name):
            self.logger.warning(f"{name} is skipped, next retry in {self.retry_cooldown(name):.0f}s")
        await self._persist()

    async def reset(self, name: Optional[str] = None) -> None:
        """Restore neutral stats for one source, or for all of them."""
        if name is None:
            self.stats.clear()
        else:
            self.stats.pop(name, None)
        await self._persist()

    def status_report(self) -> List[Dict[str, Any]]:
        """Health information per source, in ranked order."""
        report = []
        for source in self.ranked_sources():
            stats = self.get_stats(source.name)
            report.append({
                'name': source.name,
                'url': source.url,
                'category': source.category,
                'score': round(self.score(source.name), 3),
                'skipped': self.should_skip(source.name),
                'unreliable': self.is_unreliable(source.name),
                **stats.to_dict(),
            })
        return report

    async def _persist(self) -> None:
        # The snapshot is taken inside the lock so the last writer always
        # stores the newest state
        async with self._persist_lock:
            payload = json.dumps({name: stats.to_dict() for name, stats in self.stats.items()})
            if not await self.store.set(STATS_KEY, payload):
                self.logger.warning("Failed to persist source stats")
