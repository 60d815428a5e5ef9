"""Logging configuration for the Call Signaling service.

Every log line carries the request context (request id and acting user) set
by the middleware, and, inside a call flow, the id of the call being worked
on. Call flows run on long-lived tasks (subscription readers, ring timers),
so the call id lives in a context variable bound with :func:`call_context`
rather than being threaded through every log call.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

from call_signaling.config import get_settings

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
actor_id_var: ContextVar[Optional[str]] = ContextVar("actor_id", default=None)
call_id_var: ContextVar[Optional[str]] = ContextVar("call_id", default=None)

_CONTEXT_VARS = {
    "request_id": request_id_var,
    "actor_id": actor_id_var,
    "call_id": call_id_var,
}

# Attributes every LogRecord has; anything else came in through extra=...
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "extra_fields", "context"}

_logger: Optional[logging.Logger] = None


def _context_fields() -> Dict[str, str]:
    fields = {}
    for key, var in _CONTEXT_VARS.items():
        value = var.get()
        if value:
            fields[key] = value
    return fields


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shipping in production."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            **_context_fields(),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        log_data.update(getattr(record, "extra_fields", {}))
        log_data.update(
            (key, value) for key, value in record.__dict__.items() if key not in _STANDARD_ATTRS
        )
        return json.dumps(log_data, default=str)


class StandardFormatter(logging.Formatter):
    """Human-readable lines for development, tagged with request and call ids."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        fields = _context_fields()
        record.context = " ".join(f"{key}={value}" for key, value in fields.items()) or "-"
        return super().format(record)


def setup_logging() -> logging.Logger:
    """Configure the ``call_signaling`` logger tree once per process."""
    global _logger

    if _logger is not None:
        return _logger

    settings = get_settings()
    level = getattr(logging, settings.log_level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if settings.is_production else StandardFormatter())

    logger = logging.getLogger("call_signaling")
    logger.setLevel(level)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.propagate = False

    # Library chatter; pub/sub reconnects are reported by our own subscription logs
    quiet = logging.INFO if settings.debug else logging.WARNING
    for name in ("uvicorn", "uvicorn.access", "fastapi", "httpx", "websockets"):
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(quiet)

    _logger = logger
    logger.info(
        f"Logging configured: level={settings.log_level}, "
        f"environment={settings.environment.value}, "
        f"store={settings.store_backend.value}, "
        f"format={'JSON' if settings.is_production else 'Standard'}"
    )
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Get a logger under the ``call_signaling`` namespace."""
    if name:
        return logging.getLogger(f"call_signaling.{name}")
    return logging.getLogger("call_signaling")


def set_request_id(request_id: str) -> None:
    request_id_var.set(request_id)


def set_actor_id(actor_id: Optional[str]) -> None:
    actor_id_var.set(actor_id)


@contextmanager
def call_context(call_id: str) -> Iterator[None]:
    """Tag log lines emitted inside the block with ``call_id``."""
    token = call_id_var.set(call_id)
    try:
        yield
    finally:
        call_id_var.reset(token)


def log_error(
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
    **kwargs: Any,
) -> None:
    """Log an error with its traceback and context.

    Signaling errors also contribute their code, HTTP status and details, so
    a lost race and a store outage can be told apart in the logs.
    """
    extra_fields: Dict[str, Any] = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "context": context or {},
        **kwargs,
    }
    code = getattr(error, "code", None)
    if code is not None:
        extra_fields["error_code"] = code
        extra_fields["status_code"] = getattr(error, "status_code", None)
        extra_fields["error_details"] = getattr(error, "details", {})

    get_logger("error").error(
        f"Error: {type(error).__name__}: {str(error)}",
        exc_info=error,
        extra={"extra_fields": extra_fields},
    )
