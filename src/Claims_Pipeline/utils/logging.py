"""Structured logging for the claims pipeline.

Key Responsibilities:
    - Route stdlib and Structlog output through one JSON (or console) renderer
    - Redact credential fields and truncate oversized values such as base64
      document payloads before they reach the log sink
    - Carry the ticket id of the running stage as ``correlation_id``

Side Effects:
    - :func:`configure_logging` replaces the handler it installed previously on
      the root logger and reconfigures Structlog globally

Thread Safety:
    - Correlation helpers rely on ``contextvars`` and are safe for async use
"""

# ==============================================================================
# IMPORTS
# ==============================================================================

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Any, Callable

import structlog

from Claims_Pipeline.config.settings import LoggingSettings

REDACTED = "***"
CORRELATION_FIELD = "correlation_id"

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)

_STANDARD_RECORD_FIELDS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime"}

_HANDLER_MARKER = "_claims_pipeline_handler"


# ==============================================================================
# REDACTION
# ==============================================================================


class _Redactor:
    """Masks configured keys at any depth and clips long strings."""

    def __init__(self, fields: Iterable[str] | None, max_length: int | None = None) -> None:
        self._fields = {field.lower() for field in fields or ()}
        self._max_length = max_length

    def masks(self, key: object) -> bool:
        return str(key).lower() in self._fields

    def __call__(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {
                key: REDACTED if self.masks(key) else self(item) for key, item in value.items()
            }
        if isinstance(value, (list, tuple)):
            return [self(item) for item in value]
        if isinstance(value, str) and self._max_length and len(value) > self._max_length:
            return f"{value[: self._max_length]}...<{len(value)} chars>"
        return value


class JsonFormatter(logging.Formatter):
    """Single line JSON for stdlib records, with the same redaction as Structlog."""

    def __init__(
        self, *, scrub_fields: Iterable[str] | None = None, max_value_length: int | None = None
    ) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")
        self._redact = _Redactor(scrub_fields, max_value_length)

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "time": self.formatTime(record, self.datefmt),
        }
        correlation_id = _correlation_id.get()
        if correlation_id:
            payload[CORRELATION_FIELD] = correlation_id
        extras = {
            key: value
            for key, value in vars(record).items()
            if key not in _STANDARD_RECORD_FIELDS
        }
        payload.update(self._redact(extras))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, sort_keys=True, default=str)


def _redaction_processor(
    redact: _Redactor,
) -> Callable[[Any, str, dict[str, Any]], dict[str, Any]]:
    def processor(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        correlation_id = _correlation_id.get()
        if correlation_id:
            event_dict.setdefault(CORRELATION_FIELD, correlation_id)
        return redact(event_dict)

    return processor


# ==============================================================================
# CONFIGURATION
# ==============================================================================


def _level_value(level: int | str | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        value = logging.getLevelName(level.upper())
        if isinstance(value, int):
            return value
    return logging.INFO


def configure_logging(
    level: int | str | None = None,
    *,
    settings: LoggingSettings | None = None,
) -> None:
    """Configure stdlib logging and Structlog for the pipeline.

    ``settings`` takes precedence over ``level`` and also supplies the
    redacted fields, the value length limit and the renderer.
    """
    if settings is None:
        settings = LoggingSettings()
        level_value = _level_value(level)
    else:
        level_value = _level_value(settings.level)
    redact = _Redactor(settings.scrub_fields, settings.max_value_length)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        JsonFormatter(scrub_fields=settings.scrub_fields, max_value_length=settings.max_value_length)
    )
    setattr(handler, _HANDLER_MARKER, True)
    root = logging.getLogger()
    for existing in list(root.handlers):
        if getattr(existing, _HANDLER_MARKER, False):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level_value)

    renderer: Any = (
        structlog.dev.ConsoleRenderer()
        if settings.renderer == "console"
        else structlog.processors.JSONRenderer(sort_keys=True, default=str)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _redaction_processor(redact),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


# ==============================================================================
# CORRELATION HELPERS
# ==============================================================================


def bind_correlation_id(value: str | None) -> Token[str | None]:
    """Bind ``value`` as the active correlation identifier."""
    return _correlation_id.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    _correlation_id.reset(token)


def get_correlation_id() -> str | None:
    return _correlation_id.get()


@contextmanager
def correlation_scope(value: str | None) -> Iterator[None]:
    """Bind ``value`` (usually the ticket id) for the duration of the block."""
    token = bind_correlation_id(value)
    try:
        yield
    finally:
        reset_correlation_id(token)


__all__ = [
    "JsonFormatter",
    "bind_correlation_id",
    "configure_logging",
    "correlation_scope",
    "get_correlation_id",
    "reset_correlation_id",
]
