"""
Tests for ErrorMonitor severity classification and pattern detection.
"""
from newspulse.services.feed_parser import ParseError
from newspulse.services.proxy_fetcher import TransientFetchError
from newspulse.utils.error_monitoring import ErrorMonitor, ErrorSeverity


class TestErrorMonitor:
    """Swallowed errors stay observable"""

    def test_severity_classification(self):
        monitor = ErrorMonitor()

        assert monitor.classify_severity(TransientFetchError('x')) == ErrorSeverity.LOW
        assert monitor.classify_severity(ParseError('x')) == ErrorSeverity.MEDIUM
        assert monitor.classify_severity(KeyError('x')) == ErrorSeverity.HIGH

    def test_handle_error_records_context(self):
        monitor = ErrorMonitor()

        context = monitor.handle_error(
            TransientFetchError('Timed out after 4s'), 'Feed', 'fetch', {'url': 'https://a.test'},
        )

        assert context.source == 'Feed'
        assert context.severity == 'low'
        assert 'timed out' in context.recovery_action.lower()
        assert context.metadata == {'url': 'https://a.test'}

    def test_repeated_errors_are_reported_as_pattern(self):
        monitor = ErrorMonitor()
        for _ in range(3):
            monitor.handle_error(ParseError('no items'), 'Feed', 'fetch')
        monitor.handle_error(ParseError('no items'), 'Other', 'fetch')

        patterns = monitor.detect_error_patterns()

        assert len(patterns) == 1
        assert 'Feed' in patterns[0]
        assert monitor.get_error_statistics()['total_errors'] == 4

    def test_history_is_bounded(self):
        monitor = ErrorMonitor(history_size=5)
        for i in range(10):
            monitor.handle_error(TransientFetchError(str(i)), 'Feed', 'fetch')

        assert len(monitor.error_history) == 5
        assert monitor.error_counts['TransientFetchError'] == 10

        monitor.clear()
        assert monitor.get_error_statistics()['total_errors'] == 0
