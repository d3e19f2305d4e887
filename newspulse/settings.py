"""
Engine configuration loaded from the environment, plus the source list.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

from newspulse.models.content import SourceDescriptor
from newspulse.services.proxy_fetcher import DEFAULT_RELAYS


DEFAULT_SOURCES_FILE = os.path.join(os.path.dirname(__file__), 'config', 'sources.json')

logger = logging.getLogger(__name__)


@dataclass
class EngineConfig:
    """Tunables for fetching, batching and caching"""
    relays: List[str] = field(default_factory=lambda: list(DEFAULT_RELAYS))
    request_timeout: float = 4.0       # per relay request
    source_timeout: float = 6.0        # per source, across all relays
    max_concurrent: int = 4
    batch_size: int = 4
    priority_count: int = 3
    max_records_per_source: int = 25
    max_title_length: int = 300
    max_body_length: int = 500
    priority_ttl_seconds: float = 30
    full_ttl_seconds: float = 120
    reuse_fresh_full_cache: bool = False

    # Paths
    database_path: str = "data/newspulse.db"
    sources_file: str = DEFAULT_SOURCES_FILE
    log_dir: str = "logs"
    log_level: str = "INFO"

    def __post_init__(self):
        if self.source_timeout < self.request_timeout:
            logger.warning(
                f"source_timeout ({self.source_timeout}s) is shorter than "
                f"request_timeout ({self.request_timeout}s)"
            )
        if self.batch_size < 1 or self.priority_count < 0 or self.max_concurrent < 1:
            raise ValueError("batch_size and max_concurrent must be >= 1, priority_count >= 0")


def _relays_from_env(raw: Optional[str]) -> List[str]:
    if raw is None:
        return list(DEFAULT_RELAYS)
    # "direct" stands for a request without relay
    return ['' if relay.strip().lower() == 'direct' else relay.strip()
            for relay in raw.split(',') if relay.strip()]


def load_config() -> EngineConfig:
    """Load configuration from environment variables"""
    return EngineConfig(
        relays=_relays_from_env(os.getenv('NEWSPULSE_RELAYS')),
        request_timeout=float(os.getenv('NEWSPULSE_REQUEST_TIMEOUT', '4')),
        source_timeout=float(os.getenv('NEWSPULSE_SOURCE_TIMEOUT', '6')),
        max_concurrent=int(os.getenv('NEWSPULSE_MAX_CONCURRENT', '4')),
        batch_size=int(os.getenv('NEWSPULSE_BATCH_SIZE', '4')),
        priority_count=int(os.getenv('NEWSPULSE_PRIORITY_COUNT', '3')),
        max_records_per_source=int(os.getenv('NEWSPULSE_MAX_RECORDS_PER_SOURCE', '25')),
        priority_ttl_seconds=float(os.getenv('NEWSPULSE_PRIORITY_TTL', '30')),
        full_ttl_seconds=float(os.getenv('NEWSPULSE_FULL_TTL', '120')),
        reuse_fresh_full_cache=(os.getenv('NEWSPULSE_REUSE_FULL_CACHE', 'false').lower() == 'true'),
        database_path=os.getenv('NEWSPULSE_DB_PATH', 'data/newspulse.db'),
        sources_file=os.getenv('NEWSPULSE_SOURCES_FILE', DEFAULT_SOURCES_FILE),
        log_dir=os.getenv('NEWSPULSE_LOG_DIR', 'logs'),
        log_level=os.getenv('NEWSPULSE_LOG_LEVEL', 'INFO'),
    )


def load_sources(path: Optional[str] = None) -> List[SourceDescriptor]:
    """
    Load the source list. Accepts either {"sources": [...]} or a bare list.
    Duplicate names keep the first definition.
    """
    path = path or DEFAULT_SOURCES_FILE
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    entries = data.get('sources', []) if isinstance(data, dict) else data
    sources: List[SourceDescriptor] = []
    seen = set()
    for entry in entries:
        source = SourceDescriptor.from_dict(entry)
        if source.name in seen:
            logger.warning(f"Duplicate source name '{source.name}' in {path}, keeping the first")
            continue
        seen.add(source.name)
        sources.append(source)

    logger.info(f"Loaded {len(sources)} sources from {path}")
    return sources
