"""Logging for the deals assistant.

Every record carries the id of the HTTP request it was emitted under (set by
``RequestIDMiddleware``), so a chat turn can be followed across the classifier,
gateway, tools and persistence. Production emits one JSON object per line;
development emits a readable single-line format.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from deals_assistant.config import Settings, get_settings

ROOT_LOGGER = "deals_assistant"

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# (logger name, level when DEBUG is off, level when DEBUG is on)
NOISY_LOGGERS: Tuple[Tuple[str, int, int], ...] = (
    ("uvicorn", logging.WARNING, logging.INFO),
    ("uvicorn.access", logging.WARNING, logging.WARNING),
    ("fastapi", logging.WARNING, logging.WARNING),
    ("httpx", logging.WARNING, logging.WARNING),
    ("httpcore", logging.WARNING, logging.WARNING),
    ("LiteLLM", logging.WARNING, logging.INFO),
    ("litellm", logging.WARNING, logging.INFO),
)

# LogRecord attributes that are never copied into the JSON payload.
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "extra_fields", "request_id", "taskName"}

_configured = False


class JSONFormatter(logging.Formatter):
    """One JSON object per record, tagged with service and environment."""

    def __init__(self, service: str, environment: str):
        super().__init__()
        self.service = service
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "environment": self.environment,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        request_id = request_id_var.get()
        if request_id:
            payload["request_id"] = request_id

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        payload.update(getattr(record, "extra_fields", None) or {})
        payload.update(
            {key: value for key, value in vars(record).items() if key not in _RECORD_ATTRS}
        )
        return json.dumps(payload, default=str)


class StandardFormatter(logging.Formatter):
    """Readable development format with a short request id."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s %(name)s [%(request_id)s] %(message)s",
            datefmt="%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        request_id = request_id_var.get()
        record.request_id = request_id[:8] if request_id else "-"
        return super().format(record)


def setup_logging(settings: Optional[Settings] = None, force: bool = False) -> logging.Logger:
    """Configure the ``deals_assistant`` logger tree once per process."""
    global _configured

    logger = logging.getLogger(ROOT_LOGGER)
    if _configured and not force:
        return logger

    settings = settings or get_settings()
    level = getattr(logging, settings.log_level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    if settings.is_production:
        handler.setFormatter(JSONFormatter(settings.app_name, settings.environment.value))
    else:
        handler.setFormatter(StandardFormatter())

    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False

    for name, quiet, verbose in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(verbose if settings.debug else quiet)

    _configured = True
    logger.info(
        f"Logging configured: level={settings.log_level}, "
        f"environment={settings.environment.value}, "
        f"format={'json' if settings.is_production else 'text'}"
    )
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Child of the service logger, e.g. ``get_logger("tool_service")``."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}" if name else ROOT_LOGGER)


def set_request_id(request_id: str) -> None:
    request_id_var.set(request_id)


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def log_request(
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
    **kwargs: Any,
) -> None:
    """Access log line for one HTTP request."""
    level = logging.WARNING if status_code >= 500 else logging.INFO
    get_logger("http").log(
        level,
        f"{method} {path} -> {status_code} ({duration_ms:.1f}ms)",
        extra={
            "extra_fields": {
                "method": method,
                "path": path,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 2),
                **kwargs,
            }
        },
    )


def log_error(
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
    **kwargs: Any,
) -> None:
    """Log an exception with its traceback and request context."""
    get_logger("error").error(
        f"{type(error).__name__}: {error}",
        exc_info=error,
        extra={
            "extra_fields": {
                "error_type": type(error).__name__,
                "error_message": str(error),
                "context": context or {},
                **kwargs,
            }
        },
    )
