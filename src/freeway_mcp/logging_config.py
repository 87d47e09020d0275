"""Structured logging configuration for freeway-mcp.

JSON log lines carry the correlation ID of the tool call that produced
them, plus the session and CID being resolved, so a single block lookup
can be followed through claim discovery, index fetches and range reads.
"""

import contextvars
import json
import logging
from datetime import datetime, timezone
from typing import Any

from multiformats import CID

from freeway_mcp.models import cid_str

# Context variable for correlation ID tracking across async operations
correlation_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    'correlation_id', default=None
)

_CONTEXT_FIELDS = ("session_id", "operation", "cid", "duration_ms", "extra")


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        timestamp = datetime.now(timezone.utc).replace(tzinfo=None)
        log_data = {
            "timestamp": timestamp.isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            log_data["correlation_id"] = correlation_id

        for field in _CONTEXT_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            log_data["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class StructuredLogger:
    """Wraps a standard logger to attach structured fields.

    ``cid`` values are stringified so callers can pass CID objects directly.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def log_operation(
        self,
        level: str,
        message: str,
        session_id: str | None = None,
        operation: str | None = None,
        cid: Any = None,
        duration_ms: int | None = None,
        **extra: Any
    ) -> None:
        """Log with structured fields.

        Args:
            level: Log level (INFO, WARNING, ERROR, etc.)
            message: Log message
            session_id: Optional session ID
            operation: Optional operation name (e.g., "freeway.block.get")
            cid: Optional CID the message is about
            duration_ms: Optional operation duration in milliseconds
            **extra: Additional fields to include in log
        """
        log_level = getattr(logging, level.upper())
        if not self.logger.isEnabledFor(log_level):
            return

        record = self.logger.makeRecord(
            self.logger.name,
            log_level,
            "(structured)",
            0,
            message,
            (),
            None
        )

        if session_id:
            record.session_id = session_id
        if operation:
            record.operation = operation
        if cid is not None:
            record.cid = cid_str(cid) if isinstance(cid, CID) else str(cid)
        if duration_ms is not None:
            record.duration_ms = duration_ms
        if extra:
            record.extra = extra

        self.logger.handle(record)

    def info(self, message: str, **kwargs: Any) -> None:
        self.log_operation("INFO", message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.log_operation("WARNING", message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self.log_operation("ERROR", message, **kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self.log_operation("DEBUG", message, **kwargs)


def configure_logging(
    log_level: str = "INFO",
    structured: bool = True,
    log_file: str | None = None
) -> None:
    """Configure application logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR)
        structured: If True, use JSON formatter; if False, use human-readable
        log_file: Optional file path to write logs to
    """
    root_logger = logging.getLogger("freeway_mcp")
    root_logger.setLevel(log_level.upper())

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        if structured:
            handler.setFormatter(StructuredFormatter())
        else:
            handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
                )
            )
        root_logger.addHandler(handler)
