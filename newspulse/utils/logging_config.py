"""
Centralized logging configuration for the newspulse engine.

This module provides consistent logging across all services with:
- Color-coded console output for development
- File logging for debugging long-running sessions
- Structured JSON logging for analysis
- Performance tracking helpers
"""

import json
import logging
import logging.handlers
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class StructuredFormatter(logging.Formatter):
    """Custom formatter that outputs structured JSON logs for analysis."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        # Add extra fields if present
        if hasattr(record, 'extra_data'):
            log_entry['extra'] = record.extra_data

        return json.dumps(log_entry, ensure_ascii=False)


class ColoredConsoleFormatter(logging.Formatter):
    """Colored console formatter for better development experience."""

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        color = self.COLORS.get(record.levelname, '')
        reset = self.RESET

        # Format: [TIMESTAMP] LEVEL [MODULE] MESSAGE
        formatted = f"{color}[{self.formatTime(record, '%H:%M:%S')}] {record.levelname:8} [{record.name:20}] {record.getMessage()}{reset}"

        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"

        return formatted


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
    enable_file_logging: bool = True,
    enable_structured_logging: bool = False
) -> None:
    """
    Configure centralized logging for the engine.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for log files (defaults to 'logs')
        enable_file_logging: Whether to write logs to files
        enable_structured_logging: Whether to use JSON structured logging
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(getattr(logging, log_level.upper()))

    if enable_structured_logging:
        console_handler.setFormatter(StructuredFormatter())
    else:
        console_handler.setFormatter(ColoredConsoleFormatter())

    root_logger.addHandler(console_handler)

    if enable_file_logging:
        log_path = Path(log_dir) if log_dir else Path.cwd() / "logs"
        log_path.mkdir(parents=True, exist_ok=True)

        # Daily rotating file handler for all logs
        daily_handler = logging.handlers.TimedRotatingFileHandler(
            log_path / "newspulse.log",
            when='midnight',
            backupCount=7,
            encoding='utf-8'
        )
        daily_handler.setLevel(logging.DEBUG)

        if enable_structured_logging:
            daily_handler.setFormatter(StructuredFormatter())
        else:
            daily_handler.setFormatter(logging.Formatter(
                '%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s'
            ))

        root_logger.addHandler(daily_handler)

        # Separate error log for critical issues
        error_handler = logging.FileHandler(
            log_path / "errors.log",
            encoding='utf-8'
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(levelname)-8s | %(name)-20s | %(funcName)s:%(lineno)d | %(message)s'
        ))

        root_logger.addHandler(error_handler)

    configure_engine_loggers(log_level)


def configure_engine_loggers(log_level: str) -> None:
    """Configure specific loggers for the engine components."""

    # Relay traffic is noisy, keep it at INFO unless explicitly debugging
    fetcher_logger = logging.getLogger('newspulse.services.proxy_fetcher')
    fetcher_logger.setLevel(logging.DEBUG if log_level.upper() == 'DEBUG' else logging.INFO)

    # Aggregator - batch progress
    aggregator_logger = logging.getLogger('newspulse.pipeline.content_aggregator')
    aggregator_logger.setLevel(logging.INFO)

    # aiosqlite logs every statement at DEBUG
    logging.getLogger('aiosqlite').setLevel(logging.WARNING)


class PerformanceTracker:
    """Context manager for tracking operation performance."""

    def __init__(self, operation_name: str, logger: Optional[logging.Logger] = None):
        self.operation_name = operation_name
        self.logger = logger or logging.getLogger(__name__)
        self.start_time = None
        self.duration_ms = 0.0

    def __enter__(self):
        self.start_time = time.monotonic()
        self.logger.debug(f"Starting: {self.operation_name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            self.duration_ms = (time.monotonic() - self.start_time) * 1000

            if exc_type:
                self.logger.error(f"Failed: {self.operation_name} ({self.duration_ms:.1f}ms) - {exc_val}")
            else:
                self.logger.info(f"Completed: {self.operation_name} ({self.duration_ms:.1f}ms)")


def log_pipeline_metrics(
    logger: logging.Logger,
    stage: str,
    input_count: int,
    output_count: int,
    duration_ms: float,
    **extra_data
):
    """Log structured pipeline metrics for analysis."""
    metrics = {
        'stage': stage,
        'input_count': input_count,
        'output_count': output_count,
        'duration_ms': duration_ms,
        'reduction_rate': (input_count - output_count) / input_count if input_count > 0 else 0,
        **extra_data
    }

    logger.info(f"{stage}: {input_count} -> {output_count} ({duration_ms:.1f}ms)", extra={'extra_data': metrics})
