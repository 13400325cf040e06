"""Logging setup for applications embedding the client.

Pipeline records carry a ``request_id`` extra, the id of the pending call
they belong to, so one request can be followed through gate queueing,
retries and cancellation. ``RequestIdFilter`` guarantees the attribute on
every record, which lets the text format print it unconditionally.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from httpgate.core.config import settings

LIBRARY_LOGGER = "httpgate"
NO_REQUEST_ID = "-"
TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(request_id)s | %(message)s"


class RequestIdFilter(logging.Filter):
    """Default ``request_id`` for records logged outside a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = NO_REQUEST_ID
        return True


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter for production."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None)
        if request_id and request_id != NO_REQUEST_ID:
            log_data["request_id"] = request_id
        if record.exc_info and record.exc_info[1]:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


def setup_logging(
    level: str | None = None,
    json_logs: bool | None = None,
    *,
    root: bool = False,
) -> logging.Logger:
    """Install a single stdout handler and return the configured logger.

    By default only the ``httpgate`` logger is configured and it stops
    propagating, so the host application's root handlers are left alone.
    ``root=True`` configures the root logger instead. Explicit arguments win
    over the values from settings.
    """
    level_name = (level or settings.log_level).upper()
    log_level = getattr(logging, level_name, logging.INFO)
    use_json = settings.log_json if json_logs is None else json_logs

    target = logging.getLogger() if root else logging.getLogger(LIBRARY_LOGGER)
    target.setLevel(log_level)

    # Remove existing handlers
    for handler in target.handlers[:]:
        target.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.addFilter(RequestIdFilter())
    if use_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    target.addHandler(handler)
    if not root:
        target.propagate = False

    # Suppress noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    return target
