#!/usr/bin/env python3
import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from newspulse.models.content import ContentRecord
from newspulse.pipeline.content_aggregator import ProgressiveAggregator, SourceNotFoundError
from newspulse.services.cache_service import CacheManager
from newspulse.services.deduplication_service import Deduplicator, filter_records
from newspulse.services.feed_parser import FeedParser
from newspulse.services.proxy_fetcher import ProxyFetcher
from newspulse.services.rate_limiter import RateLimiter
from newspulse.services.source_manager import SourceManager
from newspulse.services.storage import KeyValueStore, SQLiteKeyValueStore
from newspulse.settings import EngineConfig, load_config, load_sources
from newspulse.utils.error_monitoring import ErrorMonitor
from newspulse.utils.logging_config import setup_logging


@dataclass
class Engine:
    """All wired components of one engine instance"""
    config: EngineConfig
    store: KeyValueStore
    source_manager: SourceManager
    cache: CacheManager
    fetcher: ProxyFetcher
    aggregator: ProgressiveAggregator
    error_monitor: ErrorMonitor


async def build_engine(config: EngineConfig, store: Optional[KeyValueStore] = None) -> Engine:
    """
    Construct every component once and inject them into the aggregator.
    Stats are loaded from the store before returning.
    """
    if store is None:
        Path(config.database_path).parent.mkdir(parents=True, exist_ok=True)
        store = SQLiteKeyValueStore(db_path=config.database_path)
        await store.initialize_db()

    sources = load_sources(config.sources_file)
    source_manager = SourceManager(sources, store)
    await source_manager.load()

    error_monitor = ErrorMonitor()
    fetcher = ProxyFetcher(
        source_manager,
        relays=config.relays,
        parser=FeedParser(
            max_title_length=config.max_title_length,
            max_body_length=config.max_body_length,
        ),
        error_monitor=error_monitor,
        request_timeout=config.request_timeout,
        source_timeout=config.source_timeout,
        max_records_per_source=config.max_records_per_source,
    )
    cache = CacheManager(
        store,
        priority_ttl_seconds=config.priority_ttl_seconds,
        full_ttl_seconds=config.full_ttl_seconds,
    )
    aggregator = ProgressiveAggregator(
        fetcher,
        source_manager,
        cache,
        deduplicator=Deduplicator(),
        rate_limiter=RateLimiter(config.max_concurrent),
        priority_count=config.priority_count,
        batch_size=config.batch_size,
        reuse_fresh_full_cache=config.reuse_fresh_full_cache,
    )
    return Engine(
        config=config,
        store=store,
        source_manager=source_manager,
        cache=cache,
        fetcher=fetcher,
        aggregator=aggregator,
        error_monitor=error_monitor,
    )


def print_records(records: List[ContentRecord], limit: int) -> None:
    for record in records[:limit]:
        stamp = record.published_at.strftime('%Y-%m-%d %H:%M')
        print(f"  [{stamp}] {record.source_name}: {record.title}")
        print(f"      {record.link}")
    if len(records) > limit:
        print(f"  ... {len(records) - limit} more")


async def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(description="Progressive multi-source feed aggregator")
    parser.add_argument('--source', help='Fetch a single source by name and print its records')
    parser.add_argument('--category', help='Only aggregate sources from this category')
    parser.add_argument('--search', help='Only print records matching this keyword')
    parser.add_argument('--status', action='store_true', help='Show source health report')
    parser.add_argument('--reset-stats', action='store_true', help='Reset reliability stats for all sources')
    parser.add_argument('--clear-cache', action='store_true', help='Clear the priority and full cache tiers')
    parser.add_argument('--limit', type=int, default=20, help='Records to print (default: 20)')
    parser.add_argument('--quiet', action='store_true', help='Do not print intermediate snapshots')
    args = parser.parse_args()

    config = load_config()
    setup_logging(log_level=config.log_level, log_dir=config.log_dir)

    try:
        engine = await build_engine(config)

        if args.clear_cache:
            removed = await engine.cache.clear()
            print(f"Cleared {removed} cache tiers")
            return
        if args.reset_stats:
            await engine.source_manager.reset()
            print("Source stats reset")
            return
        if args.status:
            print("Source Health Status:")
            for row in engine.source_manager.status_report():
                flag = 'SKIP' if row['skipped'] else 'ok'
                print(
                    f"  {row['name']:28} score={row['score']:+.3f} rate={row['success_rate']:.2f} "
                    f"avg={row['avg_response_time_ms']:.0f}ms fails={row['consecutive_failures']} {flag}"
                )
            return
        if args.source:
            records = await engine.aggregator.test_single_source(args.source)
            print(f"{args.source}: {len(records)} records")
            print_records(records, args.limit)
            return

        def on_progress(records: List[ContentRecord], is_complete: bool) -> None:
            if args.quiet and not is_complete:
                return
            label = "final" if is_complete else "partial"
            print(f"[{label}] {len(records)} records")

        records = await engine.aggregator.aggregate(on_progress, category=args.category)
        if args.search:
            records = filter_records(records, args.search)
        print_records(records, args.limit)

        outcome = engine.aggregator.last_outcome
        if outcome:
            print(
                f"Status: {outcome.status} | sources ok={len(outcome.succeeded_sources)} "
                f"failed={len(outcome.failed_sources)} skipped={len(outcome.skipped_sources)} "
                f"| {outcome.duration_ms / 1000:.2f}s"
            )
        for pattern in engine.error_monitor.detect_error_patterns():
            print(f"  ! {pattern}")
    except SourceNotFoundError as e:
        print(f"Error: {e}")
        sys.exit(2)
    except KeyboardInterrupt:
        print("\nShutting down...")
    except Exception as e:  # noqa: BLE001
        print(f"Fatal error: {e}")
        logging.exception("Fatal error in main")
        sys.exit(1)


def run():
    """Console script entry point"""
    asyncio.run(main())


if __name__ == "__main__":
    run()
