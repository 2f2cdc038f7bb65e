"""Logging setup helpers for streamkoppler."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from .config import LoggingConfig

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_CONTROLLED_LOGGER_PREFIXES = (
    "httpcore",
    "httpx",
    "uvicorn",
    "watchdog",
)

# Keys a request logger attaches to every record.
_CONTEXT_FIELDS = ("request_id", "provider", "attempt")


def _record_context(record: logging.LogRecord) -> dict[str, Any]:
    context = {}
    for name in _CONTEXT_FIELDS:
        value = getattr(record, name, None)
        if value is not None:
            context[name] = value
    return context


class JsonLogFormatter(logging.Formatter):
    """Format log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        """Render one log record as JSON."""
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_record_context(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class TextLogFormatter(logging.Formatter):
    """Plain text lines with request context appended as `key=value` pairs."""

    def __init__(self) -> None:
        super().__init__(TEXT_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _record_context(record)
        if not context:
            return line
        return line + " [" + " ".join(f"{key}={value}" for key, value in context.items()) + "]"


class RequestLogAdapter(logging.LoggerAdapter):
    """Binds request id and provider to every record of one stream request.

    Per-call `extra` values (such as `attempt`) are merged over the bound ones.
    """

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def request_logger(logger: logging.Logger, *, request_id: str, provider: str) -> RequestLogAdapter:
    return RequestLogAdapter(logger, {"request_id": request_id, "provider": provider})


def setup_logging(cfg: LoggingConfig) -> None:
    """Configure the root logger from runtime configuration.

    Safe to call again after a config reload; handlers are replaced, not stacked.
    Third-party logger trees are reset so they follow the configured level.
    """
    level = getattr(logging, cfg.level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter() if cfg.json_logs else TextLogFormatter())
    root.handlers.clear()
    root.addHandler(handler)

    known = [str(name) for name in logging.root.manager.loggerDict]
    for prefix in _CONTROLLED_LOGGER_PREFIXES:
        for name in [prefix, *(name for name in known if name.startswith(f"{prefix}."))]:
            logger = logging.getLogger(name)
            logger.setLevel(level)
            logger.handlers.clear()
            logger.propagate = True
