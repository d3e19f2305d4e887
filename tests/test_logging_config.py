"""
Tests for logging setup and the performance helpers.
"""
import json
import logging

import pytest

from newspulse.utils.logging_config import (
    PerformanceTracker,
    StructuredFormatter,
    log_pipeline_metrics,
    setup_logging,
)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestSetupLogging:
    """Handler configuration"""

    def test_file_logging_creates_log_files(self, tmp_path, restore_root_logger):
        setup_logging(log_level='DEBUG', log_dir=str(tmp_path))
        logging.getLogger('newspulse.test').error('something broke')

        assert (tmp_path / 'newspulse.log').exists()
        assert 'something broke' in (tmp_path / 'errors.log').read_text()
        assert logging.getLogger('aiosqlite').level == logging.WARNING

    def test_console_only(self, tmp_path, restore_root_logger):
        setup_logging(log_level='INFO', log_dir=str(tmp_path), enable_file_logging=False)

        assert len(logging.getLogger().handlers) == 1
        assert not (tmp_path / 'newspulse.log').exists()

    def test_structured_formatter_includes_extra_data(self):
        record = logging.LogRecord('newspulse', logging.INFO, __file__, 1, 'batch done', None, None)
        record.extra_data = {'stage': 'batch_1'}

        payload = json.loads(StructuredFormatter().format(record))

        assert payload['message'] == 'batch done'
        assert payload['extra']['stage'] == 'batch_1'


class TestPerformanceHelpers:
    """Timing and metrics logging"""

    def test_tracker_measures_duration(self):
        with PerformanceTracker('batch') as tracker:
            sum(range(1000))

        assert tracker.duration_ms >= 0

    def test_pipeline_metrics_are_attached(self, caplog):
        logger = logging.getLogger('newspulse.test.metrics')

        with caplog.at_level(logging.INFO, logger='newspulse.test.metrics'):
            log_pipeline_metrics(logger, 'batch_1', 10, 8, 12.5, sources=['A'])

        record = caplog.records[-1]
        assert record.extra_data['reduction_rate'] == pytest.approx(0.2)
        assert record.extra_data['sources'] == ['A']
