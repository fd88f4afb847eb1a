"""
Process-wide logging setup for Caps.

Log lines are either one JSON object per line, using OpenTelemetry log
field names so they ship to Loki/Elastic unchanged, or plain text for a
terminal. Either way each record carries the run it belongs to: the
orchestrator opens a ``log_context(run_id=...)`` on the run thread and
``RunContextFilter`` copies those fields onto every record emitted there.

Environment variables:
- CAPS_LOG_FORMAT: 'json' (default) or 'text'
- CAPS_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- CAPS_SERVICE_NAME / CAPS_ENVIRONMENT / CAPS_VERSION: resource fields

Usage:
    from Caps.Core.logging_config import configure_logging, log_context

    configure_logging()
    with log_context(run_id=run_id):
        logger.info("Run started")
"""
import json
import logging
import os
import sys
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from flask import g, has_request_context, request

LOG_FORMATS = ("json", "text")

# Python level -> (OTEL SeverityText, SeverityNumber)
OTEL_SEVERITY_TEXT: Dict[int, str] = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "FATAL",
}
OTEL_SEVERITY_NUMBER: Dict[int, int] = {
    logging.DEBUG: 5,
    logging.INFO: 9,
    logging.WARNING: 13,
    logging.ERROR: 17,
    logging.CRITICAL: 21,
}

# Attributes every LogRecord has; anything else came from ``extra`` or a filter
STANDARD_RECORD_FIELDS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}

DEFAULT_LOG_FORMAT: str = "json"
DEFAULT_LOG_LEVEL: str = "INFO"
DEFAULT_SERVICE_NAME: str = "caps"
DEFAULT_ENVIRONMENT: str = "development"
DEFAULT_VERSION: str = "unknown"

_configured: bool = False
_context = threading.local()


def get_log_config() -> Dict[str, Any]:
    """Read the CAPS_LOG_* and resource settings from the environment."""
    return {
        "format": os.environ.get("CAPS_LOG_FORMAT", DEFAULT_LOG_FORMAT).lower(),
        "level": os.environ.get("CAPS_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(),
        "service_name": os.environ.get("CAPS_SERVICE_NAME", DEFAULT_SERVICE_NAME),
        "environment": os.environ.get("CAPS_ENVIRONMENT", DEFAULT_ENVIRONMENT),
        "version": os.environ.get("CAPS_VERSION", DEFAULT_VERSION),
    }


def get_log_context() -> Dict[str, Any]:
    """Fields bound on the current thread by ``log_context``."""
    return dict(getattr(_context, "fields", {}))


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """
    Bind fields to every record logged on this thread inside the block.

    Nested blocks add to the outer fields and restore them on exit.
    """
    previous = getattr(_context, "fields", {})
    _context.fields = {**previous, **fields}
    try:
        yield
    finally:
        _context.fields = previous


def get_request_context() -> Dict[str, Optional[str]]:
    """HTTP attributes of the current Flask request, empty outside one."""
    if not has_request_context():
        return {}
    return {
        "http.method": request.method,
        "http.route": request.path,
        "http.url": request.url,
        "http.request_id": getattr(g, "request_id", None),
    }


class RunContextFilter(logging.Filter):
    """Copies ``log_context`` fields onto records that lack them."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in get_log_context().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with OTEL log data model field names."""

    def __init__(
        self,
        service_name: str = DEFAULT_SERVICE_NAME,
        environment: str = DEFAULT_ENVIRONMENT,
        version: str = DEFAULT_VERSION,
    ):
        super().__init__()
        self.resource = {
            "service.name": service_name,
            "service.version": version,
            "deployment.environment": environment,
        }

    def _attributes(self, record: logging.LogRecord) -> Dict[str, Any]:
        attributes: Dict[str, Any] = {
            k: v for k, v in get_request_context().items() if v is not None
        }
        attributes.update({
            "code.filepath": record.pathname,
            "code.lineno": record.lineno,
            "code.function": record.funcName,
            "thread.name": record.threadName,
        })
        if record.exc_info and record.exc_info[0] is not None:
            attributes["exception.type"] = record.exc_info[0].__name__
            attributes["exception.message"] = str(record.exc_info[1])
            attributes["exception.stacktrace"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key not in STANDARD_RECORD_FIELDS:
                attributes[key] = value
        return attributes

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps({
            "Timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "SeverityText": OTEL_SEVERITY_TEXT.get(record.levelno, "INFO"),
            "SeverityNumber": OTEL_SEVERITY_NUMBER.get(record.levelno, 9),
            "Body": record.getMessage(),
            "Resource": self.resource,
            "InstrumentationScope": {"Name": record.name},
            "Attributes": self._attributes(record),
        }, default=str)


class TextFormatter(logging.Formatter):
    """Plain text; run and step names, when known, prefix the message."""

    FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None):
        super().__init__(fmt=fmt or self.FORMAT, datefmt=datefmt or "%Y-%m-%d %H:%M:%S")

    def formatMessage(self, record: logging.LogRecord) -> str:
        tags = []
        run_id = getattr(record, "run_id", None)
        if run_id:
            tags.append(f"run_id={run_id}")
        step_name = getattr(record, "step_name", None)
        if step_name:
            tags.append(f"step={step_name}")
        if not tags:
            return super().formatMessage(record)
        original = record.message
        record.message = f"[{' '.join(tags)}] {original}"
        try:
            return super().formatMessage(record)
        finally:
            record.message = original


def configure_logging(
    log_format: Optional[str] = None,
    log_level: Optional[str] = None,
    service_name: Optional[str] = None,
    environment: Optional[str] = None,
    version: Optional[str] = None,
) -> None:
    """
    Install a single stdout handler on the root logger.

    Arguments default to the environment (see module docstring). An unknown
    level falls back to INFO and an unknown format to JSON.
    """
    global _configured

    config = get_log_config()
    log_format = (log_format or config["format"]).lower()
    if log_format not in LOG_FORMATS:
        log_format = DEFAULT_LOG_FORMAT
    level_name = (log_level or config["level"]).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    if log_format == "text":
        formatter: logging.Formatter = TextFormatter()
    else:
        formatter = JSONFormatter(
            service_name=service_name or config["service_name"],
            environment=environment or config["environment"],
            version=version or config["version"],
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(RunContextFilter())

    root_logger = logging.getLogger()
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Module logger; configures logging with defaults on first use."""
    if not _configured:
        configure_logging()
    return logging.getLogger(name)


def is_logging_configured() -> bool:
    return _configured


def reset_logging_config() -> None:
    """Forget that logging was configured (tests)."""
    global _configured
    _configured = False
