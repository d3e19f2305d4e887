"""
Tests for configuration loading and engine wiring.
"""
import asyncio
import json

import pytest

from newspulse.main import build_engine
from newspulse.services.proxy_fetcher import DEFAULT_RELAYS
from newspulse.services.storage import MemoryKeyValueStore
from newspulse.settings import EngineConfig, load_config, load_sources


class TestEngineConfig:
    """Environment driven configuration"""

    def test_defaults(self, monkeypatch):
        for name in ('NEWSPULSE_RELAYS', 'NEWSPULSE_BATCH_SIZE', 'NEWSPULSE_FULL_TTL'):
            monkeypatch.delenv(name, raising=False)

        config = load_config()

        assert config.relays == DEFAULT_RELAYS
        assert config.batch_size == 4
        assert config.priority_count == 3
        assert config.full_ttl_seconds == 120
        assert config.reuse_fresh_full_cache is False

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv('NEWSPULSE_RELAYS', 'direct, https://relay.test/?')
        monkeypatch.setenv('NEWSPULSE_BATCH_SIZE', '6')
        monkeypatch.setenv('NEWSPULSE_PRIORITY_TTL', '15')
        monkeypatch.setenv('NEWSPULSE_REUSE_FULL_CACHE', 'TRUE')

        config = load_config()

        assert config.relays == ['', 'https://relay.test/?']
        assert config.batch_size == 6
        assert config.priority_ttl_seconds == 15
        assert config.reuse_fresh_full_cache is True

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            EngineConfig(batch_size=0)

    def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            EngineConfig(max_concurrent=0)


class TestLoadSources:
    """Source list files"""

    def test_bundled_sources(self):
        sources = load_sources()

        assert len(sources) == 25
        assert len({s.name for s in sources}) == 25
        assert all(s.url.startswith('http') for s in sources)

    def test_bare_list_and_duplicates(self, tmp_path):
        path = tmp_path / 'sources.json'
        path.write_text(json.dumps([
            {'name': 'One', 'url': 'https://one.test/feed', 'category': 'Tech'},
            {'name': 'Two', 'url': 'https://two.test/feed'},
            {'name': 'One', 'url': 'https://other.test/feed'},
        ]))

        sources = load_sources(str(path))

        assert [s.name for s in sources] == ['One', 'Two']
        assert sources[0].url == 'https://one.test/feed'
        assert sources[1].category is None


class TestBuildEngine:
    """Component wiring"""

    def test_wires_components_from_config(self, tmp_path):
        path = tmp_path / 'sources.json'
        path.write_text(json.dumps({'sources': [
            {'name': 'One', 'url': 'https://one.test/feed'},
        ]}))
        config = EngineConfig(sources_file=str(path), batch_size=5, relays=[''])

        engine = asyncio.run(build_engine(config, store=MemoryKeyValueStore()))

        assert [s.name for s in engine.source_manager.sources] == ['One']
        assert engine.aggregator.batch_size == 5
        assert engine.fetcher.relays == ['']
        assert engine.aggregator.fetcher is engine.fetcher
        assert engine.fetcher.error_monitor is engine.error_monitor
