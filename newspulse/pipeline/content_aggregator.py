import asyncio
import dataclasses
import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Sequence, Union

from newspulse.models.content import CacheEntry, ContentRecord, SourceDescriptor
from newspulse.services.cache_service import FULL_TIER, PRIORITY_TIER, CacheManager
from newspulse.services.deduplication_service import Deduplicator
from newspulse.services.proxy_fetcher import ProxyFetcher
from newspulse.services.rate_limiter import RateLimiter
from newspulse.services.source_manager import SourceManager
from newspulse.utils.logging_config import PerformanceTracker, log_pipeline_metrics


ProgressCallback = Callable[[List[ContentRecord], bool], Union[None, Awaitable[None]]]


class AggregationState(Enum):
    IDLE = "idle"
    PRIORITY_FETCH = "priority_fetch"
    MAIN_FETCH_BATCHING = "main_fetch_batching"
    COMPLETE = "complete"
    FAILED = "failed"


class AggregationFailure(Exception):
    """No source produced records during a run"""
    pass


class SourceNotFoundError(ValueError):
    """Requested source name is not configured"""
    pass


@dataclass
class ProgressSnapshot:
    """One emission of the accumulated result"""
    records: List[ContentRecord]
    is_complete: bool


@dataclass
class AggregationOutcome:
    """
    What happened during a run. status is one of:
    complete (every fetched source succeeded), partial (some failed),
    degraded (served from the cache fallback), empty (nothing at all).
    """
    status: str = "empty"
    record_count: int = 0
    succeeded_sources: List[str] = field(default_factory=list)
    failed_sources: List[str] = field(default_factory=list)
    skipped_sources: List[str] = field(default_factory=list)
    cache_tier_used: Optional[str] = None
    snapshots_emitted: int = 0
    duration_ms: float = 0.0


class ProgressiveAggregator:
    """
    Orchestrates a progressive fetch across all configured sources.

    The top-ranked sources are fetched first (or served from the priority
    cache) so the consumer sees content quickly; the rest follow in fixed
    size batches. Each batch is merged into the running result and emitted
    before the next batch starts, so snapshots only ever grow.
    """

    def __init__(self,
                 fetcher: ProxyFetcher,
                 source_manager: SourceManager,
                 cache: CacheManager,
                 deduplicator: Optional[Deduplicator] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 priority_count: int = 3,
                 batch_size: int = 4,
                 reuse_fresh_full_cache: bool = False):
        self.logger = logging.getLogger(__name__)
        self.fetcher = fetcher
        self.source_manager = source_manager
        self.cache = cache
        self.deduplicator = deduplicator or Deduplicator()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.priority_count = priority_count
        self.batch_size = batch_size
        self.reuse_fresh_full_cache = reuse_fresh_full_cache

        self.state = AggregationState.IDLE
        self.last_outcome: Optional[AggregationOutcome] = None

        self._accumulated: List[ContentRecord] = []
        self._final_emitted = False

    async def aggregate(self, on_progress: Optional[ProgressCallback] = None,
                        category: Optional[str] = None) -> List[ContentRecord]:
        """
        Run one aggregation cycle and return the merged, recency-sorted
        records. Never raises for source or cache trouble: a total failure
        resolves to cached content or an empty list.
        """
        start = time.monotonic()
        self.state = AggregationState.IDLE
        self._accumulated = []
        self._final_emitted = False
        self.deduplicator.reset()
        outcome = AggregationOutcome()

        try:
            records = await self._run(on_progress, category, outcome)
        except AggregationFailure as e:
            self.logger.warning(f"Aggregation failed: {e}")
            records = await self._fail(on_progress, category, outcome)
        except Exception:  # noqa: BLE001
            self.logger.exception("Unexpected error during aggregation")
            records = await self._fail(on_progress, category, outcome)

        outcome.record_count = len(records)
        outcome.duration_ms = (time.monotonic() - start) * 1000
        self.last_outcome = outcome
        self.logger.debug(f"Dedup stats: {self.deduplicator.stats}")
        self.logger.info(
            f"Aggregation {self.state.value}: {len(records)} records, status={outcome.status}, "
            f"ok={len(outcome.succeeded_sources)} failed={len(outcome.failed_sources)} "
            f"skipped={len(outcome.skipped_sources)} ({outcome.duration_ms:.0f}ms)"
        )
        return records

    async def iter_snapshots(self, category: Optional[str] = None) -> AsyncIterator[ProgressSnapshot]:
        """Async-generator view of aggregate(): yields each progress snapshot."""
        queue: "asyncio.Queue[ProgressSnapshot]" = asyncio.Queue()

        async def sink(records: List[ContentRecord], is_complete: bool) -> None:
            await queue.put(ProgressSnapshot(records=records, is_complete=is_complete))

        task = asyncio.ensure_future(self.aggregate(sink, category))
        try:
            while not (task.done() and queue.empty()):
                getter = asyncio.ensure_future(queue.get())
                await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if not getter.done():
                    getter.cancel()
                    continue
                snapshot = getter.result()
                yield snapshot
                if snapshot.is_complete:
                    break
            await task
        finally:
            if not task.done():
                task.cancel()

    async def test_single_source(self, name: str) -> List[ContentRecord]:
        """Fetch and parse one source, bypassing ranking, skipping and batching."""
        source = next((s for s in self.source_manager.sources if s.name == name), None)
        if source is None:
            raise SourceNotFoundError(f"Source '{name}' not configured")
        records = await self.fetcher.fetch(source.url, source.name)
        return self._tag_category(source, records)

    async def _run(self, on_progress: Optional[ProgressCallback], category: Optional[str],
                   outcome: AggregationOutcome) -> List[ContentRecord]:
        # Category runs only see a subset, they must not overwrite the shared tiers
        use_cache = category is None
        sources = self._eligible_sources(category, outcome)

        if use_cache and self.reuse_fresh_full_cache:
            full = await self.cache.get_fresh(FULL_TIER)
            if full is not None:
                self.logger.info(f"Serving {len(full.records)} records from fresh full cache")
                self._accumulated = self.deduplicator.add([full.records])
                outcome.cache_tier_used = FULL_TIER
                outcome.status = "complete"
                self.state = AggregationState.COMPLETE
                await self._emit(on_progress, outcome, True)
                return list(self._accumulated)

        self.state = AggregationState.PRIORITY_FETCH
        priority = sources[:self.priority_count]
        remaining = sources[self.priority_count:]

        cached_priority = await self.cache.get_fresh(PRIORITY_TIER) if use_cache else None
        if cached_priority is not None:
            self.logger.info(f"Priority tier served from cache ({len(cached_priority.records)} records)")
            self._accumulated = self.deduplicator.add([cached_priority.records])
            outcome.cache_tier_used = PRIORITY_TIER
        else:
            results = await self._fetch_batch(priority, outcome)
            self._accumulated = self.deduplicator.add(results)
            if use_cache and self._accumulated:
                await self.cache.set(PRIORITY_TIER, self._accumulated)
            self.logger.info(
                f"Priority sources loaded: {len(self._accumulated)} records from {len(priority)} sources"
            )
        # Always signal once here so the consumer is never left waiting
        await self._emit(on_progress, outcome, False)

        self.state = AggregationState.MAIN_FETCH_BATCHING
        batches = [remaining[i:i + self.batch_size] for i in range(0, len(remaining), self.batch_size)]
        for index, batch in enumerate(batches, start=1):
            with PerformanceTracker(f"batch {index}/{len(batches)}", self.logger) as tracker:
                results = await self._fetch_batch(batch, outcome)
            fetched = sum(len(result) for result in results)
            before = len(self._accumulated)
            self._accumulated = self.deduplicator.add(results)
            log_pipeline_metrics(
                self.logger, f"batch_{index}", fetched, len(self._accumulated) - before,
                tracker.duration_ms, sources=[source.name for source in batch],
            )

            is_last = index == len(batches)
            if is_last and not outcome.succeeded_sources:
                raise AggregationFailure(f"none of {len(sources)} sources returned records")
            await self._emit(on_progress, outcome, is_last)

        if not outcome.succeeded_sources:
            raise AggregationFailure(f"none of {len(sources)} sources returned records")
        if not batches:
            await self._emit(on_progress, outcome, True)

        self.state = AggregationState.COMPLETE
        if use_cache:
            await self.cache.set(FULL_TIER, self._accumulated)
        outcome.status = "partial" if outcome.failed_sources else "complete"
        return list(self._accumulated)

    async def _fail(self, on_progress: Optional[ProgressCallback], category: Optional[str],
                    outcome: AggregationOutcome) -> List[ContentRecord]:
        """Serve the best cache entry merged with anything already shown."""
        self.state = AggregationState.FAILED
        try:
            entry = await self.cache.fallback()
        except Exception:  # noqa: BLE001
            self.logger.exception("Cache fallback lookup failed")
            entry = None

        if entry is not None:
            cached = self._filter_category(entry, category)
            self._accumulated = self.deduplicator.add([cached])
            outcome.cache_tier_used = entry.key.rsplit(':', 1)[-1]
            self.logger.info(f"Falling back to {outcome.cache_tier_used} cache: {len(cached)} records")

        outcome.status = "degraded" if self._accumulated else "empty"
        if not self._final_emitted:
            await self._emit(on_progress, outcome, True)
        return list(self._accumulated)

    def _eligible_sources(self, category: Optional[str],
                          outcome: AggregationOutcome) -> List[SourceDescriptor]:
        ranked = self.source_manager.ranked_sources()
        if category:
            ranked = [s for s in ranked if (s.category or '').lower() == category.lower()]

        eligible = []
        for source in ranked:
            if self.source_manager.should_skip(source.name):
                outcome.skipped_sources.append(source.name)
                continue
            eligible.append(source)

        if outcome.skipped_sources:
            self.logger.info(f"Skipping unreliable sources: {', '.join(outcome.skipped_sources)}")
        return eligible

    async def _fetch_batch(self, batch: Sequence[SourceDescriptor],
                           outcome: AggregationOutcome) -> List[List[ContentRecord]]:
        """Fetch a batch concurrently. Results keep batch order."""
        tasks = [
            self.rate_limiter.run(lambda source=source: self.fetcher.fetch(source.url, source.name))
            for source in batch
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        batch_records: List[List[ContentRecord]] = []
        for source, result in zip(batch, results):
            if isinstance(result, BaseException):
                self.logger.error(f"Fetcher raised for {source.name}: {result!r}")
                result = []
            if result:
                outcome.succeeded_sources.append(source.name)
            else:
                outcome.failed_sources.append(source.name)
            batch_records.append(self._tag_category(source, result))
        return batch_records

    @staticmethod
    def _tag_category(source: SourceDescriptor, records: List[ContentRecord]) -> List[ContentRecord]:
        if not source.category:
            return records
        return [
            record if record.category == source.category
            else dataclasses.replace(record, category=source.category)
            for record in records
        ]

    @staticmethod
    def _filter_category(entry: CacheEntry, category: Optional[str]) -> List[ContentRecord]:
        if not category:
            return list(entry.records)
        return [r for r in entry.records if (r.category or '').lower() == category.lower()]

    async def _emit(self, on_progress: Optional[ProgressCallback],
                    outcome: AggregationOutcome, is_complete: bool) -> None:
        snapshot = list(self._accumulated)
        outcome.snapshots_emitted += 1
        if is_complete:
            self._final_emitted = True
        if on_progress is None:
            return
        try:
            result = on_progress(snapshot, is_complete)
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001
            self.logger.exception("Progress callback failed")
