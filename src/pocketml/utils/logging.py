# /pocket-ml/src/pocketml/utils/logging.py

"""
Training Logging Infrastructure

Structured logging for the training search engine. Library modules log
through ``logging.getLogger(__name__)`` with dotted event names and
``extra`` fields; this module decides where those records go and how
they look.

Key Features:
- Structured logging with JSON and text formatters
- Context-aware logging with cycle and stage tracking
- Process memory/CPU attached to records by a filter
- Log rotation for file output
- Timers and counters for stage-level performance tracking

Architecture:
- Handlers live on the package logger ('pocketml'); module loggers propagate
- TrainingLogger adds persistent context on top of a standard logger
"""

import json
import logging
import logging.handlers
import time
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional
from contextlib import contextmanager
import traceback
import sys
import os

import psutil


PACKAGE_LOGGER = "pocketml"

# Attributes every LogRecord carries; extra keys must not collide with them
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """
    JSON-structured log formatter with consistent schema.
    """

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra
        self.hostname = os.uname().nodename if hasattr(os, 'uname') else 'unknown'

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'thread_name': record.threadName,
            'process': record.process,
            'hostname': self.hostname
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info)
            }

        if self.include_extra:
            extra = {}
            for key, value in extra_fields(record).items():
                try:
                    json.dumps(value)
                    extra[key] = value
                except (TypeError, ValueError):
                    extra[key] = str(value)

            if extra:
                log_entry['extra'] = extra

        return json.dumps(log_entry)


class TextFormatter(logging.Formatter):
    """
    Human-readable text formatter with consistent structure.
    """

    def __init__(self, include_extra: bool = True):
        format_str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        super().__init__(format_str)
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured text."""
        base_message = super().format(record)

        if self.include_extra:
            fields = [f"{key}={value}" for key, value in extra_fields(record).items()]
            if fields:
                base_message += f" [{', '.join(fields)}]"

        return base_message


class PerformanceLogFilter(logging.Filter):
    """
    Filter that attaches process memory and CPU usage to each record.
    """

    def __init__(self):
        super().__init__()
        self._process = psutil.Process()

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, 'memory_usage_mb'):
            try:
                record.memory_usage_mb = round(self._process.memory_info().rss / (1024 * 1024), 1)
                record.cpu_percent = self._process.cpu_percent()
            except psutil.Error:
                record.memory_usage_mb = None
                record.cpu_percent = None

        return True


def extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields passed through ``extra`` (everything not standard on a LogRecord)."""
    return {
        key: value for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith('_')
    }


def safe_extra(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Rename keys that would clash with LogRecord attributes."""
    return {
        (f"ctx_{key}" if key in _RESERVED_ATTRS else key): value
        for key, value in fields.items()
    }


class TrainingLogger:
    """
    High-level training logger with persistent context, timers and counters.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)

        self._context: Dict[str, Any] = {}
        self._context_lock = threading.RLock()

        self._timers: Dict[str, float] = {}
        self._counters: Dict[str, int] = {}

    def set_context(self, **kwargs) -> None:
        """Set persistent context for all log messages."""
        with self._context_lock:
            self._context.update(kwargs)

    def clear_context(self) -> None:
        with self._context_lock:
            self._context.clear()

    @contextmanager
    def context(self, **kwargs):
        """Temporary context manager for log messages."""
        with self._context_lock:
            old_context = self._context.copy()
        try:
            self.set_context(**kwargs)
            yield
        finally:
            with self._context_lock:
                self._context = old_context

    def _log_with_context(self, level: int, message: str,
                          extra: Optional[Dict[str, Any]] = None,
                          exc_info: bool = False) -> None:
        combined_extra = {}

        with self._context_lock:
            combined_extra.update(self._context)

        if extra:
            combined_extra.update(extra)

        self.logger.log(level, message, extra=safe_extra(combined_extra), exc_info=exc_info)

    def debug(self, message: str, extra: Optional[Dict[str, Any]] = None) -> None:
        self._log_with_context(logging.DEBUG, message, extra)

    def info(self, message: str, extra: Optional[Dict[str, Any]] = None) -> None:
        self._log_with_context(logging.INFO, message, extra)

    def warning(self, message: str, extra: Optional[Dict[str, Any]] = None) -> None:
        self._log_with_context(logging.WARNING, message, extra)

    def error(self, message: str, extra: Optional[Dict[str, Any]] = None,
              exc_info: bool = True) -> None:
        """Log error message with exception info."""
        self._log_with_context(logging.ERROR, message, extra, exc_info=exc_info)

    def start_timer(self, timer_name: str) -> None:
        self._timers[timer_name] = time.time()
        self.debug("timer.started", extra={'timer_name': timer_name})

    def stop_timer(self, timer_name: str, log_result: bool = True) -> float:
        """Stop a named timer and optionally log the duration."""
        if timer_name not in self._timers:
            self.warning("timer.not_found", extra={'timer_name': timer_name})
            return 0.0

        duration = time.time() - self._timers.pop(timer_name)

        if log_result:
            self.info("timer.completed", extra={
                'timer_name': timer_name,
                'duration_seconds': duration
            })

        return duration

    @contextmanager
    def timer(self, timer_name: str, log_result: bool = True):
        self.start_timer(timer_name)
        try:
            yield
        finally:
            self.stop_timer(timer_name, log_result)

    def increment_counter(self, counter_name: str, value: int = 1) -> int:
        self._counters[counter_name] = self._counters.get(counter_name, 0) + value
        return self._counters[counter_name]

    def get_counter(self, counter_name: str) -> int:
        return self._counters.get(counter_name, 0)


def setup_training_logging(level: str = "INFO",
                           log_format: str = "text",
                           log_dir: str = "logs/training",
                           enable_console: bool = True,
                           enable_file: bool = False,
                           log_file_prefix: str = "training",
                           log_rotation_size_mb: int = 100,
                           log_retention_count: int = 10) -> Dict[str, Any]:
    """
    Configure handlers on the package logger.

    Calling it again replaces the handlers installed by a previous call.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Console format (json, text); files are always JSON
        log_dir: Directory for log files
        enable_console: Enable console logging
        enable_file: Enable rotating file logging

    Returns:
        Logging configuration dictionary
    """
    config = {
        'log_level': level.upper(),
        'log_format': log_format.lower(),
        'log_dir': log_dir,
        'enable_console': enable_console,
        'enable_file': enable_file,
        'log_file_prefix': log_file_prefix,
        'log_rotation_size_mb': log_rotation_size_mb,
        'log_retention_count': log_retention_count
    }

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(getattr(logging, config['log_level']))

    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    performance_filter = PerformanceLogFilter()

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        if config['log_format'] == 'json':
            console_handler.setFormatter(StructuredFormatter())
        else:
            console_handler.setFormatter(TextFormatter())
        console_handler.addFilter(performance_filter)
        package_logger.addHandler(console_handler)

    if enable_file:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            directory / f"{log_file_prefix}.log",
            maxBytes=log_rotation_size_mb * 1024 * 1024,
            backupCount=log_retention_count
        )
        file_handler.setFormatter(StructuredFormatter())
        file_handler.addFilter(performance_filter)
        package_logger.addHandler(file_handler)

    package_logger.info("training_logging.initialized", extra={
        'log_level': config['log_level'],
        'log_format': config['log_format'],
        'handlers': len(package_logger.handlers)
    })

    return config


def setup_logging_from_config(monitoring_config) -> Dict[str, Any]:
    """Configure logging from a MonitoringConfig."""
    settings = monitoring_config.to_logging_config()
    return setup_training_logging(
        level=settings['log_level'],
        log_format=settings['log_format'],
        log_dir=settings['log_dir'],
        enable_console=settings['enable_console'],
        enable_file=settings['enable_file'],
        log_file_prefix=settings['log_file_prefix'],
        log_rotation_size_mb=settings['log_rotation_size_mb']
    )


def get_training_logger(name: str) -> TrainingLogger:
    return TrainingLogger(name)


@contextmanager
def stage_logging(logger: TrainingLogger, stage_name: str, **context):
    """Context manager for pipeline stage logging."""
    stage_context = {'stage': stage_name, **context}

    with logger.context(**stage_context):
        logger.info("stage.started", extra={'stage_name': stage_name})

        start_time = time.time()
        try:
            yield logger
        except Exception as e:
            logger.error("stage.failed", extra={
                'stage_name': stage_name,
                'error': str(e),
                'duration': time.time() - start_time
            })
            raise
        finally:
            logger.info("stage.completed", extra={
                'stage_name': stage_name,
                'duration': time.time() - start_time
            })
