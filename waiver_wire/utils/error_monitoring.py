import asyncio
import json
import logging
import threading
import traceback
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple, TypeVar


T = TypeVar("T")


class ErrorSeverity(Enum):
    """Error severity levels"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class BreakerOpenError(Exception):
    """Raised instead of calling an operation whose breaker is open"""

    def __init__(self, name: str):
        super().__init__(f"Circuit breaker open for {name}")
        self.name = name


@dataclass
class ErrorContext:
    """Context for an error occurrence"""
    error_type: str
    error_message: str
    stack_trace: str
    timestamp: datetime
    service: str
    operation: str
    severity: str
    retryable: bool
    recovery_action: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class ErrorClassification:
    error_type: str
    severity: ErrorSeverity
    retryable: bool


NON_RETRYABLE_TYPES = ('BreakerOpenError', 'ValidationError', 'RunAlreadyActiveError', 'ConfigError')


class ErrorHandler:
    """
    Classifies failures and keeps a short history of them.

    Exceptions that carry a `retryable` attribute decide for themselves.
    Everything else is classified from its type name and message.
    """

    MAX_RETRY_DELAY = 30.0

    def __init__(self) -> None:
        self.error_history: Deque[ErrorContext] = deque(maxlen=100)
        self.error_counts: Dict[str, int] = defaultdict(int)
        self.logger = logging.getLogger(__name__)

    def classify(self, error: BaseException) -> ErrorClassification:
        error_name = type(error).__name__
        message_lower = str(error).lower()

        timed_out = isinstance(error, (TimeoutError, asyncio.TimeoutError))

        if timed_out or 'timeout' in message_lower or 'timed out' in message_lower:
            error_type, severity, retryable = 'timeout', ErrorSeverity.MEDIUM, True
        elif 'rate limit' in message_lower or 'too many requests' in message_lower:
            error_type, severity, retryable = 'rate_limit', ErrorSeverity.LOW, True
        elif 'unauthorized' in message_lower or 'authentication' in message_lower or 'credentials' in message_lower:
            error_type, severity, retryable = 'authentication', ErrorSeverity.HIGH, False
        elif 'network' in message_lower or 'connection' in message_lower or isinstance(error, ConnectionError):
            error_type, severity, retryable = 'network', ErrorSeverity.MEDIUM, True
        elif error_name in NON_RETRYABLE_TYPES:
            error_type, severity, retryable = error_name, ErrorSeverity.MEDIUM, False
        else:
            error_type, severity, retryable = 'unknown', ErrorSeverity.MEDIUM, True

        explicit = getattr(error, 'retryable', None)
        if isinstance(explicit, bool):
            retryable = explicit
            if not explicit and severity is ErrorSeverity.LOW:
                severity = ErrorSeverity.MEDIUM

        return ErrorClassification(error_type=error_type, severity=severity, retryable=retryable)

    def is_retryable(self, error: BaseException) -> bool:
        return self.classify(error).retryable

    def retry_delay(self, attempt: int, base_delay: float = 1.0) -> float:
        """Exponential delay for the given 1-based attempt, capped at 30 seconds."""
        return min(base_delay * (2 ** (attempt - 1)), self.MAX_RETRY_DELAY)

    def handle_error(
        self,
        error: BaseException,
        service: str,
        operation: str,
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorContext:
        error_type = type(error).__name__
        classification = self.classify(error)
        timestamp = datetime.now()

        error_context = ErrorContext(
            error_type=error_type,
            error_message=str(error),
            stack_trace=''.join(traceback.format_exception(type(error), error, error.__traceback__)),
            timestamp=timestamp,
            service=service,
            operation=operation,
            severity=classification.severity.value,
            retryable=classification.retryable,
            recovery_action=self.get_recovery_suggestion(classification),
            metadata=context or {},
        )

        self.error_history.append(error_context)
        self.error_counts[error_type] += 1

        self.logger.error(json.dumps({
            'event': 'error',
            'service': service,
            'operation': operation,
            'severity': classification.severity.value,
            'error_type': error_type,
            'error_message': str(error),
            'retryable': classification.retryable,
            'timestamp': timestamp.isoformat(),
        }))

        return error_context

    def get_recovery_suggestion(self, classification: ErrorClassification) -> Optional[str]:
        suggestions = {
            'timeout': "Operation timed out. Check provider latency and consider a longer stage timeout.",
            'rate_limit': "Rate limit encountered. Lower the configured requests per minute for this source.",
            'authentication': "Authentication failure. Verify the source credentials in the environment.",
            'network': "Check network connectivity and the provider status page.",
        }
        return suggestions.get(classification.error_type)

    def detect_error_patterns(self) -> List[str]:
        tuple_counts: Dict[Tuple[str, str], int] = defaultdict(int)
        for ctx in self.error_history:
            tuple_counts[(ctx.error_type, ctx.service)] += 1

        return [
            f"Repeated pattern: {etype} in {service} occurred {count} times recently"
            for (etype, service), count in tuple_counts.items()
            if count >= 3
        ]

    def get_error_statistics(self) -> Dict[str, Any]:
        return {
            'total_errors': sum(self.error_counts.values()),
            'error_types': dict(self.error_counts),
            'patterns': self.detect_error_patterns(),
        }


@dataclass
class CircuitBreakerState:
    """Failure count and the time of the latest failure for one named operation."""
    consecutive_failures: int = 0
    last_failure_at: Optional[datetime] = None
    open: bool = False


class CircuitBreaker:
    """
    Circuit breaker keyed by operation name.

    A name is open while it has at least failure_threshold failures and the
    latest of them is inside the window. Once the latest failure ages out the
    count resets to zero. A success forgives one failure rather than clearing
    them all.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        failure_window: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.failure_threshold = failure_threshold
        self.failure_window = failure_window
        self._clock = clock
        self._states: Dict[str, CircuitBreakerState] = defaultdict(CircuitBreakerState)
        self._lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def _expire(self, name: str, state: CircuitBreakerState, now: datetime) -> None:
        if state.last_failure_at is None or now - state.last_failure_at <= self.failure_window:
            return
        if state.open:
            self.logger.info(f"Circuit breaker for {name} reset after failure window elapsed")
        state.consecutive_failures = 0
        state.open = False

    def is_open(self, name: str) -> bool:
        with self._lock:
            state = self._states[name]
            self._expire(name, state, self._clock())
            state.open = state.consecutive_failures >= self.failure_threshold
            return state.open

    def record_success(self, name: str) -> None:
        with self._lock:
            state = self._states[name]
            self._expire(name, state, self._clock())
            state.consecutive_failures = max(0, state.consecutive_failures - 1)
            state.open = False

    def record_failure(self, name: str) -> None:
        with self._lock:
            now = self._clock()
            state = self._states[name]
            self._expire(name, state, now)
            state.consecutive_failures += 1
            state.last_failure_at = now
            if not state.open and state.consecutive_failures >= self.failure_threshold:
                state.open = True
                self.logger.warning(
                    f"🔌 Circuit breaker opened for {name} after "
                    f"{state.consecutive_failures} failures"
                )

    async def call(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run operation unless the breaker is open, recording the outcome."""
        if self.is_open(name):
            raise BreakerOpenError(name)
        try:
            result = await operation()
        except Exception:
            self.record_failure(name)
            raise
        self.record_success(name)
        return result

    def state(self, name: str) -> Dict[str, Any]:
        with self._lock:
            state = self._states[name]
            self._expire(name, state, self._clock())
            state.open = state.consecutive_failures >= self.failure_threshold
            return {
                'consecutive_failures': state.consecutive_failures,
                'last_failure_at': state.last_failure_at,
                'open': state.open,
            }

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: self.state(name) for name in list(self._states)}

    def reset(self, name: Optional[str] = None) -> None:
        with self._lock:
            if name is None:
                self._states.clear()
            else:
                self._states.pop(name, None)
