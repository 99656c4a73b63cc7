"""
Logging Configuration and Utilities

Structured logging built on structlog and python-json-logger, with request
context propagation and a small adapter that carries per-logger context.
"""

import sys
import logging
from typing import Any, Dict, Optional
from datetime import datetime, timezone
from contextvars import ContextVar

import structlog
from pythonjsonlogger import jsonlogger

from .config import LoggingSettings, Settings, get_settings

# Context variables for request tracking
request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
actor_id: ContextVar[Optional[str]] = ContextVar("actor_id", default=None)

# Attributes owned by logging.LogRecord; passing them through ``extra`` raises.
_RESERVED_RECORD_KEYS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


class RequestContextProcessor:
    """Add request context to structlog event dicts"""

    def __init__(self, environment: str = "development"):
        self.environment = environment

    def __call__(self, logger, method_name, event_dict):
        req_id = request_id.get()
        if req_id:
            event_dict["request_id"] = req_id

        uid = actor_id.get()
        if uid:
            event_dict["actor_id"] = uid

        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
        event_dict["service"] = "orderflow"
        event_dict["environment"] = self.environment
        return event_dict


class SensitiveDataProcessor:
    """Mask payment secrets before they reach a sink"""

    sensitive_keys = ("card", "cvv", "secret", "token", "password", "authorization_header")

    def __call__(self, logger, method_name, event_dict):
        for key in list(event_dict.keys()):
            if any(sensitive in key.lower() for sensitive in self.sensitive_keys):
                event_dict[key] = "[REDACTED]"
        return event_dict


class RequestContextFilter(logging.Filter):
    """Copy request context onto stdlib records"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id.get()
        record.actor_id = actor_id.get()
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter for structured logging"""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["function"] = record.funcName
        log_record["line"] = record.lineno

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)


class LoggingConfig:
    """Centralized logging configuration"""

    @staticmethod
    def configure_structured_logging(settings: Settings):
        """Configure structured logging with structlog"""
        processors = [
            RequestContextProcessor(settings.ENVIRONMENT),
            SensitiveDataProcessor(),
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
        ]

        if settings.logging.LOG_FORMAT == "json":
            processors.append(structlog.processors.JSONRenderer())
        else:
            processors.append(structlog.processors.KeyValueRenderer())

        structlog.configure(
            processors=processors,
            wrapper_class=structlog.stdlib.BoundLogger,
            logger_factory=structlog.stdlib.LoggerFactory(),
            context_class=dict,
            cache_logger_on_first_use=True,
        )

    @staticmethod
    def configure_standard_logging(logging_settings: LoggingSettings):
        """Configure standard Python logging"""
        level = getattr(logging, logging_settings.LOG_LEVEL)

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.addFilter(RequestContextFilter())

        if logging_settings.LOG_FORMAT == "json":
            formatter = CustomJsonFormatter("%(asctime)s %(name)s %(levelname)s %(message)s")
        else:
            formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

        LoggingConfig._configure_library_loggers(logging_settings)

    @staticmethod
    def _configure_library_loggers(logging_settings: LoggingSettings):
        """Reduce noise from external libraries"""
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)

        if logging_settings.LOG_SQL_QUERIES:
            logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)
        else:
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


class LoggerAdapter:
    """Logger adapter with context management"""

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self._context: Dict[str, Any] = {}

    def add_context(self, **kwargs):
        """Add context to all log messages"""
        self._context.update(kwargs)
        return self

    def _log(self, level: int, message: str, *args, **kwargs):
        extra = dict(self._context)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = {
            (f"ctx_{key}" if key in _RESERVED_RECORD_KEYS else key): value
            for key, value in extra.items()
        }
        self.logger.log(level, message, *args, **kwargs)

    def debug(self, message: str, *args, **kwargs):
        self._log(logging.DEBUG, message, *args, **kwargs)

    def info(self, message: str, *args, **kwargs):
        self._log(logging.INFO, message, *args, **kwargs)

    def warning(self, message: str, *args, **kwargs):
        self._log(logging.WARNING, message, *args, **kwargs)

    def error(self, message: str, *args, **kwargs):
        self._log(logging.ERROR, message, *args, **kwargs)

    def critical(self, message: str, *args, **kwargs):
        self._log(logging.CRITICAL, message, *args, **kwargs)

    def exception(self, message: str, *args, **kwargs):
        kwargs.setdefault("exc_info", True)
        self._log(logging.ERROR, message, *args, **kwargs)


def get_logger(name: Optional[str] = None) -> LoggerAdapter:
    """
    Get configured logger instance.

    Args:
        name: Logger name (defaults to "orderflow")

    Returns:
        Logger adapter
    """
    return LoggerAdapter(logging.getLogger(name or "orderflow"))


def get_structured_logger(name: Optional[str] = None):
    """Get a structlog logger bound to ``name``."""
    return structlog.get_logger(name or "orderflow")


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure stdlib and structlog logging for the application."""
    settings = settings or get_settings()
    LoggingConfig.configure_standard_logging(settings.logging)
    if settings.logging.ENABLE_STRUCTURED_LOGGING:
        LoggingConfig.configure_structured_logging(settings)

    get_logger(__name__).info(
        "Logging configured",
        extra={
            "log_level": settings.logging.LOG_LEVEL,
            "log_format": settings.logging.LOG_FORMAT,
            "structured": settings.logging.ENABLE_STRUCTURED_LOGGING,
        },
    )
