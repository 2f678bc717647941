"""Correlation ID based logging for tracing a gift across request and background paths.

A gift is touched by HTTP handlers, the event subscription, the poll cycle and
the scheduled sweeps. Every one of those runs inside a correlation context so
the log lines for one gift can be stitched back together.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar, Token
from typing import Optional

# Gift code or generated ID of the request/job/event being handled
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

TEXT_FORMAT = "%(asctime)s [%(levelname)s] [%(correlation_id)s] %(name)s: %(message)s"


class CorrelationIdFilter(logging.Filter):
    """Add correlation ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line; messages containing quotes or newlines stay valid."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "correlation_id": getattr(record, "correlation_id", "-"),
            "name": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure root logging for the service.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper()))
    for existing in root.handlers[:]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))
    handler.addFilter(CorrelationIdFilter())
    root.addHandler(handler)

    # web3 logs every provider request at DEBUG
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def generate_correlation_id(prefix: str = "req") -> str:
    """Generate a new correlation ID.

    Args:
        prefix: Short tag for the originating path (req, poll, event, sweep, job).
    """
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class CorrelationIdContext:
    """Scope a correlation ID to a block.

    Contexts nest: a sweep wraps each gift in its own ID (usually the gift
    code) and the sweep's ID is back in place once that gift is done.
    """

    def __init__(self, correlation_id: Optional[str] = None, prefix: str = "req"):
        self.correlation_id = correlation_id or generate_correlation_id(prefix)
        self._token: Optional[Token] = None

    def __enter__(self) -> str:
        self._token = correlation_id_var.set(self.correlation_id)
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        correlation_id_var.reset(self._token)
