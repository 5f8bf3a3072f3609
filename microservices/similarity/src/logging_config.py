"""
Structured logging configuration for the similarity microservice.

Batch runs are long-lived and unattended, so every log line can be emitted as
machine-parseable JSON (``LOG_FORMAT=json``) for ELK / Loki / CloudWatch.  In
development the human-readable format is kept.

Usage
-----
Call :func:`configure_logging` once at startup.

    >>> from microservices.similarity.src.logging_config import configure_logging
    >>> configure_logging()
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone

_SERVICE_NAME = "similarity"


class _JSONFormatter(logging.Formatter):
    """Emit each log record as a single-line JSON object."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        log_entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": record.threadName,
            "service": _SERVICE_NAME,
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False)


def configure_logging(logger_name: str | None = None) -> logging.Logger:
    """Set up the root logger based on environment variables.

    Parameters
    ----------
    logger_name : str, optional
        If provided, return a named child logger.  Otherwise return the
        root logger after configuration.

    Environment variables
    ---------------------
    LOG_FORMAT : str
        ``"json"`` for structured JSON output (production).
        Anything else (or unset) for human-readable console output.
    LOG_LEVEL : str
        Standard Python log level name (default: ``"INFO"``).

    Returns
    -------
    logging.Logger
        Configured logger instance.
    """
    log_format = os.environ.get("LOG_FORMAT", "text").lower()
    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()

    root = logging.getLogger()
    root.setLevel(log_level)

    # Remove existing handlers to avoid duplicate output
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)

    if log_format == "json":
        handler.setFormatter(_JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(threadName)s %(name)s - %(message)s"
            )
        )

    root.addHandler(handler)

    # Spark's JVM gateway is very chatty at INFO
    for noisy in ("py4j", "pyspark"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logging.getLogger(logger_name) if logger_name else root
