"""Structured JSON log formatter and logging configuration.

Both processes run unattended under a process supervisor, so their
output is consumed by log aggregators rather than people.  This module
provides a :class:`JsonFormatter` that emits one JSON object per log
record on a single line (JSON Lines / NDJSON format).

Each log line includes **correlation metadata** (``service`` name and
application ``version``) plus any of the bridge's correlation fields
(``command_id``, ``topic``, ``device``) that the caller passed via
``extra=``::

    logger.info("Dispatched command", extra={"command_id": cmd.id})

Text format remains available for local development.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from typing import Any

from commandbridge._settings import LoggingSettings

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

CORRELATION_FIELDS: tuple[str, ...] = ("command_id", "topic", "device")
"""``LogRecord`` attributes copied into JSON output when present."""


class JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects (NDJSON).

    Each record produces a JSON object with these fields:

    - ``timestamp``: ISO 8601 with timezone (always UTC)
    - ``level``: Python log level name
    - ``logger``: dotted logger name
    - ``message``: the formatted log message
    - ``service``: process role (``bridge`` / ``subscriber``)
    - ``version``: application version (omitted when empty)
    - ``command_id`` / ``topic`` / ``device``: only when supplied
      through ``extra=``
    - ``exception``: formatted traceback (only when an exception
      is logged)

    Args:
        service: Process role included in every log line.
        version: Application version string.  Omitted from
            output when empty.
    """

    def __init__(
        self,
        *,
        service: str = "",
        version: str = "",
    ) -> None:
        super().__init__()
        self._service = service
        self._version = version

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a single-line JSON string."""
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self._service,
        }

        if self._version:
            entry["version"] = self._version

        for name in CORRELATION_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            entry["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(entry, default=str)


def configure_logging(
    settings: LoggingSettings,
    *,
    service: str,
    version: str = "",
) -> None:
    """Configure the root logger from settings.

    Clears any existing handlers on the root logger, then installs a
    ``stderr`` stream handler and, when ``settings.file`` is set, a
    :class:`~logging.handlers.RotatingFileHandler` rotating at
    ``settings.max_file_size_mb``.

    aiohttp's per-request access log is lowered to WARNING; request
    outcomes are already logged by the trigger handler.
    """
    root = logging.getLogger()

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    if settings.format == "json":
        formatter: logging.Formatter = JsonFormatter(service=service, version=version)
    else:
        formatter = logging.Formatter(_TEXT_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if settings.file is not None:
        file_handler = RotatingFileHandler(
            settings.file,
            maxBytes=settings.max_file_size_mb * 1024 * 1024,
            backupCount=settings.backup_count,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(settings.level)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
