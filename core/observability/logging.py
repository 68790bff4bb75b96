"""
Structured Logging with Correlation IDs

Provides logging utilities that automatically include:
- owner_id: Links logs to the owner partition being synced
- cycle_id: Links logs to a single push/pull cycle
- direction / phase: Where in the cycle the log line was written
- shipment_key: Links logs to a specific shipment

Usage:
    from core.observability.logging import get_logger, with_correlation

    logger = get_logger(__name__)

    with with_correlation(owner_id="user-1", cycle_id="pull-abc"):
        logger.info("Pulling shipments")  # Automatically includes correlation IDs
"""

import json
import logging
import sys
from contextvars import ContextVar
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from contextlib import contextmanager


# =============================================================================
# Correlation Context
# =============================================================================

@dataclass
class CorrelationContext:
    """Context for correlating logs across a sync cycle."""
    owner_id: Optional[str] = None
    cycle_id: Optional[str] = None
    direction: Optional[str] = None
    phase: Optional[str] = None
    shipment_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict, excluding None values."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    def merge(self, **kwargs) -> "CorrelationContext":
        """Create a new context with merged values."""
        data = self.to_dict()
        data.update({k: v for k, v in kwargs.items() if v is not None})
        return CorrelationContext(**data)


# Context variable for async/thread-safe correlation
_correlation_context: ContextVar[CorrelationContext] = ContextVar(
    "correlation_context",
    default=CorrelationContext()
)


def get_correlation_context() -> CorrelationContext:
    """Get the current correlation context."""
    return _correlation_context.get()


def set_correlation_context(ctx: CorrelationContext) -> None:
    """Set the current correlation context."""
    _correlation_context.set(ctx)


@contextmanager
def with_correlation(**kwargs):
    """
    Context manager to set correlation IDs for logging.

    Usage:
        with with_correlation(owner_id="user-1", phase="PULLING_SHIPMENTS"):
            logger.info("Fetching")  # Will include owner_id and phase
    """
    old_ctx = get_correlation_context()
    new_ctx = old_ctx.merge(**kwargs)
    token = _correlation_context.set(new_ctx)
    try:
        yield new_ctx
    finally:
        _correlation_context.reset(token)


# =============================================================================
# Formatters
# =============================================================================

def _record_correlation(record: logging.LogRecord) -> Dict[str, Any]:
    """Correlation captured when the record was created.

    Records from plain stdlib loggers carry no snapshot; the live context is
    used for those.
    """
    correlation = getattr(record, "correlation", None)
    if correlation is None:
        correlation = get_correlation_context().to_dict()
    return correlation


def _record_time(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter that includes correlation context.

    Output format:
    {
        "timestamp": "2024-01-09T12:00:00.000Z",
        "level": "INFO",
        "logger": "sync_engine.coordinator",
        "message": "Pull cycle completed",
        "owner_id": "user-1",
        "cycle_id": "pull-3f2a",
        "inserted": 4
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": _record_time(record).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_data.update(_record_correlation(record))
        log_data.update(getattr(record, "extra_fields", {}))

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter that includes key correlation IDs.

    Output format:
    2024-01-09 12:00:00 [INFO ] sync_engine.coordinator [user-1/pull-3f2a/KS0001]: Pulled boxes
    """

    # owner / cycle / shipment; direction and phase are in the cycle id and message
    PREFIX_FIELDS = ("owner_id", "cycle_id", "shipment_key")
    CYCLE_ID_WIDTH = 13

    def format(self, record: logging.LogRecord) -> str:
        correlation = _record_correlation(record)

        parts = []
        for name in self.PREFIX_FIELDS:
            value = correlation.get(name)
            if not value:
                continue
            if name == "cycle_id":
                value = value[:self.CYCLE_ID_WIDTH]
            parts.append(str(value))
        prefix = "/".join(parts) or "-"

        timestamp = _record_time(record).strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} [{record.levelname:5}] {record.name} [{prefix}]: {record.getMessage()}"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


# =============================================================================
# Logger with Correlation Support
# =============================================================================

class CorrelatedLogger:
    """
    Logger wrapper that automatically includes correlation context.

    Also supports adding extra fields to individual log calls.
    """

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(self, level: int, msg: str, *args, **kwargs):
        """Build the record with extra fields and a snapshot of the correlation context."""
        extra_fields = kwargs.pop("extra_fields", {})
        exc_info = kwargs.pop("exc_info", None)
        if exc_info is True:
            exc_info = sys.exc_info()

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "(unknown file)",
            0,
            msg,
            args,
            exc_info or None,
        )
        record.extra_fields = extra_fields
        record.correlation = get_correlation_context().to_dict()

        self._logger.handle(record)

    def debug(self, msg: str, *args, **kwargs):
        if self._logger.isEnabledFor(logging.DEBUG):
            self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        if self._logger.isEnabledFor(logging.INFO):
            self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        if self._logger.isEnabledFor(logging.WARNING):
            self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        if self._logger.isEnabledFor(logging.ERROR):
            self._log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs):
        kwargs["exc_info"] = True
        self.error(msg, *args, **kwargs)

    def log(self, level: int, msg: str, *args, **kwargs):
        if self._logger.isEnabledFor(level):
            self._log(level, msg, *args, **kwargs)

    # Delegate other methods
    def setLevel(self, level):
        self._logger.setLevel(level)

    def isEnabledFor(self, level):
        return self._logger.isEnabledFor(level)


# =============================================================================
# Logger Factory
# =============================================================================

_loggers: Dict[str, CorrelatedLogger] = {}
_configured = False


def configure_logging(
    level: int = logging.INFO,
    json_format: bool = False,
):
    """
    Configure logging for the application.

    Args:
        level: Logging level
        json_format: If True, use JSON format; otherwise human-readable
    """
    global _configured

    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)

    for logger_name in ["sync_engine", "storage", "connectors", "connectivity", "identity_resolver", "api", "core"]:
        logger = logging.getLogger(logger_name)
        logger.setLevel(level)

    # Reduce noise from third-party libraries
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> CorrelatedLogger:
    """
    Get a correlated logger for the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        CorrelatedLogger instance
    """
    if name not in _loggers:
        if not _configured:
            configure_logging()

        base_logger = logging.getLogger(name)
        _loggers[name] = CorrelatedLogger(base_logger)

    return _loggers[name]


# =============================================================================
# Convenience Functions for Sync Cycles
# =============================================================================

def log_cycle_start(direction: str, **kwargs):
    """Log cycle start with correlation."""
    logger = get_logger(f"sync_engine.{direction}")
    logger.info(f"Cycle started: {direction}", extra_fields=kwargs)


def log_cycle_complete(direction: str, duration_ms: float = None, **kwargs):
    """Log cycle completion with correlation."""
    logger = get_logger(f"sync_engine.{direction}")
    extra = {"duration_ms": duration_ms} if duration_ms else {}
    extra.update(kwargs)
    logger.info(f"Cycle completed: {direction}", extra_fields=extra)


def log_cycle_error(direction: str, error: str, **kwargs):
    """Log cycle error with correlation."""
    logger = get_logger(f"sync_engine.{direction}")
    logger.error(f"Cycle failed: {direction} - {error}", extra_fields=kwargs)
