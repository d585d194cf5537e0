"""
Structured logging configuration.

``LOGGER_FORMAT=json`` emits one JSON object per record for log shippers;
``console`` renders a colored single line for local development. Both carry
the request id of the HTTP request being served and the active trace ids.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

from common.telemetry import get_current_trace_fields

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Attributes passed via ``extra=`` that are copied into the output
ACCESS_FIELDS = (
    "method",
    "url",
    "status",
    "size",
    "duration",
    "remote_client",
    "user_agent",
    "referer",
)
SCAN_FIELDS = ("command", "file_name", "file_size")
_BYTE_FIELDS = {"size", "file_size"}


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields: dict[str, Any] = dict(getattr(record, "extra_fields", None) or {})
    for name in ACCESS_FIELDS + SCAN_FIELDS:
        if name in record.__dict__:
            fields[name] = record.__dict__[name]
    return fields


class JSONFormatter(logging.Formatter):
    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "svc": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
        }
        req_id = request_id_var.get()
        if req_id:
            entry["req_id"] = req_id
        entry.update(get_current_trace_fields())
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(_record_fields(record))
        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """Colored ``HH:MM:SS LEVEL svc │ message [k=v, ...]`` lines."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    DIM = "\033[2m"

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def _context(self, record: logging.LogRecord) -> list[str]:
        parts = []
        req_id = request_id_var.get()
        if req_id:
            parts.append(f"req={req_id[:8]}")
        trace_id = get_current_trace_fields().get("trace_id")
        if trace_id:
            parts.append(f"trace={trace_id[:8]}")
        for key, value in _record_fields(record).items():
            suffix = "B" if key in _BYTE_FIELDS else ""
            parts.append(f"{key}={value}{suffix}")
        return parts

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, "")
        line = "{ts} {color}{level:<7}{reset} {dim}{svc}{reset} │ {msg}".format(
            ts=datetime.fromtimestamp(record.created).strftime("%H:%M:%S"),
            color=color,
            level=record.levelname,
            reset=self.RESET,
            dim=self.DIM,
            svc=self.service_name,
            msg=record.getMessage(),
        )
        context = self._context(record)
        if context:
            line += f" {self.DIM}[{', '.join(context)}]{self.RESET}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    service_name: str, level: int = logging.INFO, log_format: str = "json"
) -> None:
    """
    Configure process-wide logging.

    Args:
        service_name: Name stamped on every record (``svc``)
        level: Logging level (default: INFO)
        log_format: ``"json"`` or ``"console"`` (``"pretty"`` is accepted too)
    """
    if log_format in ("console", "pretty"):
        formatter: logging.Formatter = PrettyFormatter(service_name)
    else:
        formatter = JSONFormatter(service_name)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]

    # uvicorn's own handlers are replaced; requests are logged by the API middleware.
    for name in ("uvicorn", "uvicorn.error"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers = [handler]
        uv_logger.propagate = False
    logging.getLogger("uvicorn.access").disabled = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_request_id(request_id: str):
    """Bind the request ID to the current context; returns the reset token."""
    return request_id_var.set(request_id)


def reset_request_id(token) -> None:
    request_id_var.reset(token)


def log_with_context(
    logger: logging.Logger, level: int, message: str, **kwargs
) -> None:
    """
    Log a message with additional context fields.

    Args:
        logger: Logger instance
        level: Log level (e.g., logging.INFO)
        message: Log message
        **kwargs: Additional fields to include in the output
    """
    logger.log(level, message, extra={"extra_fields": kwargs})
