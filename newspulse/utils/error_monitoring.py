import json
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple


@dataclass
class ErrorContext:
    """Context for a swallowed per-source error"""
    error_type: str
    error_message: str
    timestamp: datetime
    source: str
    operation: str
    severity: str
    recovery_action: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class ErrorSeverity(Enum):
    """Error severity levels"""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ErrorMonitor:
    """
    Keeps a bounded history of errors that were converted into degraded
    results, so they stay visible even though nothing is raised.
    """

    def __init__(self, history_size: int = 100) -> None:
        self.error_history: Deque[ErrorContext] = deque(maxlen=history_size)
        self.error_counts: Dict[str, int] = defaultdict(int)
        self.source_error_counts: Dict[str, int] = defaultdict(int)

        self.recovery_strategies: Dict[str, Callable[[Exception], str]] = {
            'TransientFetchError': self._suggest_connection_recovery,
            'TimeoutError': self._suggest_timeout_recovery,
            'FeedValidationError': self._suggest_validation_recovery,
            'ParseError': self._suggest_validation_recovery,
        }

        self.logger = logging.getLogger(__name__)

    def handle_error(
        self,
        error: Exception,
        source: str,
        operation: str,
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorContext:
        error_type = type(error).__name__
        error_message = str(error)
        timestamp = datetime.now(timezone.utc)
        severity = self.classify_severity(error)

        error_context = ErrorContext(
            error_type=error_type,
            error_message=error_message,
            timestamp=timestamp,
            source=source,
            operation=operation,
            severity=severity.value,
            recovery_action=self.get_recovery_suggestion(error),
            metadata=context or {},
        )

        self.error_history.append(error_context)
        self.error_counts[error_type] += 1
        self.source_error_counts[source] += 1

        log = self.logger.warning if severity == ErrorSeverity.HIGH else self.logger.debug
        log(json.dumps({
            'event': 'source_error',
            'source': source,
            'operation': operation,
            'severity': severity.value,
            'error_type': error_type,
            'error_message': error_message,
            'timestamp': timestamp.isoformat(),
        }))

        return error_context

    def classify_severity(self, error: Exception) -> ErrorSeverity:
        error_name = type(error).__name__
        # Per-source network trouble is routine for third-party feeds
        if error_name in ('TransientFetchError', 'TimeoutError', 'ClientError'):
            return ErrorSeverity.LOW
        if error_name in ('FeedValidationError', 'ParseError'):
            return ErrorSeverity.MEDIUM
        # Anything else is a bug on our side, not a flaky feed
        return ErrorSeverity.HIGH

    def get_recovery_suggestion(self, error: Exception) -> Optional[str]:
        name = type(error).__name__
        message = str(error).lower()
        if 'timeout' in message or 'timed out' in message:
            return self._suggest_timeout_recovery(error)
        if name in self.recovery_strategies:
            return self.recovery_strategies[name](error)
        return None

    def _suggest_connection_recovery(self, error: Exception) -> str:
        return "Relay or upstream unreachable. Check relay endpoints and the feed URL."

    def _suggest_timeout_recovery(self, error: Exception) -> str:
        return "Source timed out. Consider raising the source timeout or moving the source down the list."

    def _suggest_validation_recovery(self, error: Exception) -> str:
        return "Response was not a usable feed. The URL may have moved or the relay returned an error page."

    def detect_error_patterns(self) -> List[str]:
        patterns: List[str] = []
        if not self.error_history:
            return patterns

        tuple_counts: Dict[Tuple[str, str], int] = defaultdict(int)
        for ctx in self.error_history:
            tuple_counts[(ctx.error_type, ctx.source)] += 1

        for (etype, source), count in tuple_counts.items():
            if count >= 3:
                patterns.append(
                    f"Repeated pattern: {etype} from {source} occurred {count} times recently"
                )

        return patterns

    def get_error_statistics(self) -> Dict[str, Any]:
        total = sum(self.error_counts.values())
        return {
            'total_errors': total,
            'error_types': dict(self.error_counts),
            'sources': dict(self.source_error_counts),
        }

    def clear(self) -> None:
        self.error_history.clear()
        self.error_counts.clear()
        self.source_error_counts.clear()
