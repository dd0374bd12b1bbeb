"""
Logging setup for the waiver wire pipeline.

Console output is colored text (or JSON lines when structured logging is on).
File logging adds a midnight-rotated full log and an errors-only log under
the log directory. Helpers below attach their numbers to the record as
``extra_data`` so the JSON formatter can ship them.
"""

import json
import logging
import logging.handlers
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


FILE_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s'
ERROR_FILE_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)-20s | %(funcName)s:%(lineno)d | %(message)s'

MAIN_LOG_NAME = "waiver_wire.log"
ERROR_LOG_NAME = "errors.log"
ROTATED_LOGS_KEPT = 14

# Third-party loggers that are noisy below WARNING
QUIET_LOGGERS = ('aiohttp', 'asyncio')


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, stamped with the record's own creation time."""

    FIELDS = (
        ('level', 'levelname'),
        ('logger', 'name'),
        ('module', 'module'),
        ('function', 'funcName'),
        ('line', 'lineno'),
    )

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'message': record.getMessage(),
        }
        for key, attribute in self.FIELDS:
            entry[key] = getattr(record, attribute, None)

        extra = getattr(record, 'extra_data', None)
        if extra is not None:
            entry['extra'] = extra
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    """Short timestamped lines, tinted by level when writing to a terminal."""

    LEVEL_COLORS = {
        logging.DEBUG: '\033[36m',
        logging.INFO: '\033[32m',
        logging.WARNING: '\033[33m',
        logging.ERROR: '\033[31m',
        logging.CRITICAL: '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, use_color: bool = True):
        super().__init__('[%(asctime)s] %(levelname)-8s [%(name)-20s] %(message)s', datefmt='%H:%M:%S')
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        color = self.LEVEL_COLORS.get(record.levelno) if self.use_color else None
        if not color:
            return line
        return f"{color}{line}{self.RESET}"


def _console_handler(level: int, structured: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    if structured:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(ColoredConsoleFormatter(use_color=sys.stdout.isatty()))
    return handler


def _file_handlers(log_path: Path, structured: bool) -> List[logging.Handler]:
    log_path.mkdir(parents=True, exist_ok=True)

    main_log = logging.handlers.TimedRotatingFileHandler(
        log_path / MAIN_LOG_NAME,
        when='midnight',
        backupCount=ROTATED_LOGS_KEPT,
        encoding='utf-8',
    )
    main_log.setLevel(logging.DEBUG)
    main_log.setFormatter(StructuredFormatter() if structured else logging.Formatter(FILE_FORMAT))

    errors = logging.FileHandler(log_path / ERROR_LOG_NAME, encoding='utf-8')
    errors.setLevel(logging.ERROR)
    errors.setFormatter(logging.Formatter(ERROR_FILE_FORMAT))

    return [main_log, errors]


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
    enable_file_logging: bool = True,
    enable_structured_logging: bool = False,
) -> None:
    """
    Replace the root logger's handlers.

    Args:
        log_level: Console threshold name, e.g. "DEBUG"; unknown names mean INFO
        log_dir: Where file logs go; ./logs when not given
        enable_file_logging: Also write the rotated main log and the errors log
        enable_structured_logging: JSON lines instead of text on console and main log
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handlers = [_console_handler(level, enable_structured_logging)]
    if enable_file_logging:
        log_path = Path(log_dir) if log_dir else Path.cwd() / "logs"
        handlers.extend(_file_handlers(log_path, enable_structured_logging))

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(min(h.level for h in handlers))
    for handler in handlers:
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class PerformanceTracker:
    """
    Times a block and logs the outcome.

    Completion is logged at INFO and failure at ERROR; exceptions are never
    suppressed. ``duration_ms`` is set on exit.
    """

    def __init__(self, operation_name: str, logger: Optional[logging.Logger] = None):
        self.operation_name = operation_name
        self.logger = logger or logging.getLogger(__name__)
        self.duration_ms: float = 0.0
        self._started: Optional[float] = None

    @property
    def elapsed_ms(self) -> float:
        if self._started is None:
            return 0.0
        return (time.perf_counter() - self._started) * 1000

    def __enter__(self):
        self._started = time.perf_counter()
        self.logger.debug(f"⏱️ Starting: {self.operation_name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = self.elapsed_ms
        fields = {'operation': self.operation_name, 'duration_ms': round(self.duration_ms, 1)}
        if exc_type is None:
            _log_with_data(self.logger, logging.INFO,
                           f"✅ Completed: {self.operation_name} ({self.duration_ms:.1f}ms)", fields)
        else:
            _log_with_data(self.logger, logging.ERROR,
                           f"💥 Failed: {self.operation_name} ({self.duration_ms:.1f}ms) - {exc_val}",
                           dict(fields, error=str(exc_val)))
        return False


def _log_with_data(logger: logging.Logger, level: int, message: str, data: Dict[str, Any]) -> None:
    logger.log(level, message, extra={'extra_data': data})


def log_pipeline_metrics(
    logger: logging.Logger,
    stage: str,
    input_count: int,
    output_count: int,
    duration_ms: Optional[float] = None,
    **extra_data,
) -> None:
    """Record how many items a stage took in and handed on."""
    data = dict(extra_data, stage=stage, input_count=input_count, output_count=output_count)
    message = f"📊 {stage}: {input_count} → {output_count}"
    if duration_ms is not None:
        data['duration_ms'] = duration_ms
        message += f" ({duration_ms:.1f}ms)"
    _log_with_data(logger, logging.INFO, message, data)


def log_source_fetch(
    logger: logging.Logger,
    source: str,
    record_count: int,
    response_time_ms: float,
    success: bool,
    **extra_data,
) -> None:
    """One line per source fetch; failures are logged at WARNING."""
    data = dict(extra_data, source=source, record_count=record_count,
                response_time_ms=response_time_ms, success=success)
    if success:
        _log_with_data(logger, logging.INFO,
                       f"✅ {source}: {record_count} records | {response_time_ms:.1f}ms", data)
    else:
        _log_with_data(logger, logging.WARNING,
                       f"❌ {source}: fetch failed after {response_time_ms:.1f}ms", data)
