import json
import logging
import sys
import time
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# One JSON document per line on stdout, collected by the log shipper as-is
root = logging.getLogger()
if root.handlers:
    for handler in list(root.handlers):
        root.removeHandler(handler)

handler = logging.StreamHandler(sys.stdout)
handler.setFormatter(logging.Formatter('%(message)s'))
root.addHandler(handler)
root.setLevel(logging.INFO)

logger = root

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def configure_logging(level: str) -> None:
    """Set the root log level from a level name such as ``INFO``."""
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


class StructuredLogger:
    """
    Structured JSON logger whose output can be queried by event type.

    The request id is tracked per asyncio task through a context variable,
    so concurrent requests never see each other's id.
    """

    def set_request_id(self, request_id: Optional[str]) -> None:
        """Set the request ID for the current context."""
        _request_id.set(request_id)

    def get_request_id(self) -> Optional[str]:
        """Get the current request ID."""
        return _request_id.get()

    def _format_log(
        self,
        level: str,
        event_type: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        error: Optional[BaseException] = None
    ) -> str:
        """Format log entry as JSON string."""
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "request_id": _request_id.get() or str(uuid.uuid4()),
            "level": level,
            "event_type": event_type,
            "message": message,
        }

        if data:
            log_entry["data"] = data
        if context:
            log_entry["context"] = context
        if error:
            log_entry["error"] = {
                "type": error.__class__.__name__,
                "message": str(error),
                "traceback": "".join(
                    traceback.format_exception(type(error), error, error.__traceback__)
                ),
            }

        return json.dumps(log_entry, default=str)

    def info(
        self,
        event_type: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log an INFO level message."""
        if logger.isEnabledFor(logging.INFO):
            logger.info(self._format_log("INFO", event_type, message, data, context))

    def warning(
        self,
        event_type: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log a WARNING level message."""
        if logger.isEnabledFor(logging.WARNING):
            logger.warning(self._format_log("WARNING", event_type, message, data, context))

    def error(
        self,
        event_type: str,
        message: str,
        error: Optional[BaseException] = None,
        data: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log an ERROR level message."""
        logger.error(
            self._format_log("ERROR", event_type, message, data, context, error)
        )

    def debug(
        self,
        event_type: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log a DEBUG level message."""
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(self._format_log("DEBUG", event_type, message, data, context))


slogger = StructuredLogger()


class Timer:
    """Context manager for timing operations."""

    def __init__(self):
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.end_time = time.perf_counter()

    @property
    def elapsed_ms(self) -> float:
        """Elapsed time in milliseconds; live while the block is still running."""
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return (end - self.start_time) * 1000
