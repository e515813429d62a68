"""
Logging configuration for Touchline Core.

Structured logging with correlation ids, JSON output for production and
colored console output for development. Components log through
``get_logger(name, component)`` and pass structured context as keyword
arguments.
"""

import json
import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import uuid4


correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)

# Attributes every LogRecord carries; anything else came in through ``extra``
_RESERVED_ATTRS = set(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}


class CorrelationFilter(logging.Filter):
    """Add the correlation id and component context to log records."""

    def filter(self, record):
        record.correlation_id = correlation_id.get() or 'none'
        record.component = getattr(record, 'component', 'unknown')
        record.operation = getattr(record, 'operation', 'unknown')
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record):
        log_entry = {
            'timestamp': datetime.utcnow().isoformat() + 'Z',
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'correlation_id': getattr(record, 'correlation_id', 'none'),
            'component': getattr(record, 'component', 'unknown'),
            'operation': getattr(record, 'operation', 'unknown'),
            'module': record.module,
            'line': record.lineno,
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info)
            }

        if self.include_extra:
            for key, value in record.__dict__.items():
                if key in log_entry or key in _RESERVED_ATTRS or key.startswith('_'):
                    continue
                try:
                    json.dumps(value)
                    log_entry[key] = value
                except (TypeError, ValueError):
                    log_entry[key] = str(value)

        return json.dumps(log_entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def format(self, record):
        color = self.COLORS.get(record.levelname, '')
        formatted = super().format(record)
        component = getattr(record, 'component', 'unknown')
        return f"{color}{formatted}{self.RESET} [{component}] [{getattr(record, 'correlation_id', 'none')[:8]}]"


class TouchlineLogger:
    """Logger wrapper that attaches component, operation and keyword context."""

    def __init__(self, name: str, component: Optional[str] = None):
        self.logger = logging.getLogger(name)
        self.component = component or name.split('.')[-1]

    def _log(self, log_level: int, message: str, operation: Optional[str] = None,
             exc_info: bool = False, **kwargs):
        extra = {
            'component': self.component,
            'operation': operation or 'unknown',
            **kwargs
        }
        self.logger.log(log_level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, operation: Optional[str] = None, **kwargs):
        self._log(logging.DEBUG, message, operation, **kwargs)

    def info(self, message: str, operation: Optional[str] = None, **kwargs):
        self._log(logging.INFO, message, operation, **kwargs)

    def warning(self, message: str, operation: Optional[str] = None, **kwargs):
        self._log(logging.WARNING, message, operation, **kwargs)

    def error(self, message: str, operation: Optional[str] = None, **kwargs):
        self._log(logging.ERROR, message, operation, **kwargs)

    def critical(self, message: str, operation: Optional[str] = None, **kwargs):
        self._log(logging.CRITICAL, message, operation, **kwargs)

    def exception(self, message: str, operation: Optional[str] = None, **kwargs):
        """Log an error together with the active exception's traceback."""
        self._log(logging.ERROR, message, operation or 'exception', exc_info=True, **kwargs)


class LoggingConfig:
    """Centralized logging configuration."""

    DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    COMPONENT_LOGGERS = ('src.shared', 'src.ops_gateway')

    THIRD_PARTY_LEVELS = {
        'uvicorn': logging.WARNING,
        'fastapi': logging.WARNING,
        'aiohttp': logging.WARNING,
        'redis': logging.WARNING,
        'httpx': logging.WARNING,
    }

    @classmethod
    def setup_logging(
        cls,
        level: Union[str, int] = logging.INFO,
        format_type: str = 'json',
        log_file: Optional[str] = None,
        console_output: bool = True,
    ):
        """
        Setup logging for the process.

        Args:
            level: Logging level
            format_type: 'json', 'colored', or 'standard'
            log_file: Optional log file path, always written as JSON
            console_output: Enable console output
        """
        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        correlation_filter = CorrelationFilter()

        if console_output:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(level)
            console_handler.setFormatter(cls._build_formatter(format_type))
            console_handler.addFilter(correlation_filter)
            root_logger.addHandler(console_handler)

        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(level)
            file_handler.setFormatter(JSONFormatter())
            file_handler.addFilter(correlation_filter)
            root_logger.addHandler(file_handler)

        for component in cls.COMPONENT_LOGGERS:
            logging.getLogger(component).setLevel(level)
        for logger_name, third_party_level in cls.THIRD_PARTY_LEVELS.items():
            logging.getLogger(logger_name).setLevel(third_party_level)

        get_logger(__name__, 'logging_config').info(
            "Logging system initialized",
            operation="setup_logging",
            level=str(level),
            format_type=format_type,
            log_file=log_file,
        )

    @classmethod
    def _build_formatter(cls, format_type: str) -> logging.Formatter:
        if format_type == 'json':
            return JSONFormatter()
        if format_type == 'colored':
            return ColoredFormatter(cls.DEFAULT_FORMAT)
        return logging.Formatter(cls.DEFAULT_FORMAT)

    @classmethod
    def from_settings(cls, logging_settings) -> None:
        """Apply a LoggingSettings instance."""
        level = getattr(logging_settings.level, 'value', logging_settings.level)
        cls.setup_logging(
            level=level,
            format_type=logging_settings.format,
            log_file=logging_settings.file,
        )


class CorrelationContext:
    """Context manager binding a correlation id to the current task."""

    def __init__(self, correlation_id_value: Optional[str] = None):
        self.correlation_id_value = correlation_id_value or str(uuid4())
        self.token = None

    def __enter__(self):
        self.token = correlation_id.set(self.correlation_id_value)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.token is not None:
            correlation_id.reset(self.token)


def get_logger(name: str, component: Optional[str] = None) -> TouchlineLogger:
    """Get a component logger."""
    return TouchlineLogger(name, component)


def get_correlation_id() -> Optional[str]:
    """Get current correlation ID."""
    return correlation_id.get()


def describe_logging() -> Dict[str, Any]:
    """Describe the active root logger configuration."""
    root_logger = logging.getLogger()
    return {
        'level': logging.getLevelName(root_logger.level),
        'handlers': [type(handler).__name__ for handler in root_logger.handlers],
    }
