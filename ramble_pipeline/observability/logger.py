"""Structured JSON logging for the pipeline daemon.

Each record becomes one JSON object per line carrying severity,
timestamp, logger name and message, plus whichever recording/job context
the call site passed through ``extra``.
"""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TextIO

EXTRA_FIELDS = (
    "recording_id",
    "job_id",
    "stage",
    "retry_count",
    "delay_seconds",
    "error",
)


class StructuredJsonFormatter(logging.Formatter):
    """Render log records as single-line JSON objects."""

    SEVERITY_MAP: dict[int, str] = {
        logging.DEBUG: "DEBUG",
        logging.INFO: "INFO",
        logging.WARNING: "WARNING",
        logging.ERROR: "ERROR",
        logging.CRITICAL: "CRITICAL",
    }

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).strftime(
                "%Y-%m-%dT%H:%M:%SZ"
            ),
            "severity": self.SEVERITY_MAP.get(record.levelno, "DEFAULT"),
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value

        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            entry["exception"] = str(exc)
            entry["exception_type"] = type(exc).__name__

        return json.dumps(entry, default=str)


def configure_logging(level: int = logging.INFO, stream: TextIO | None = None) -> None:
    """Route the root logger through StructuredJsonFormatter.

    Calling it again replaces the handler it installed earlier instead of
    stacking a second one.

    Args:
        level: Root logger level.
        stream: Destination; defaults to stdout.
    """
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        if isinstance(handler.formatter, StructuredJsonFormatter):
            root.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(handler)
