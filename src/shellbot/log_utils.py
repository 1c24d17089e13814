"""Logging configuration and structured context helpers."""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import os
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator

from shellbot.paths import log_dir

DEFAULT_LOG_MAX_BYTES = 5_000_000
DEFAULT_LOG_BACKUPS = 3
REDACTED = "<redacted>"

# Long polling logs every request at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore")

_LOG_CONTEXT: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("shellbot_log_context", default={})
_LOG_OUTPUT_ENABLED = False
_SECRETS: set[str] = set()


@dataclass(frozen=True)
class LogConfig:
    """Where and how to log; see :func:`build_log_config` for the ``SHELLBOT_LOG_*`` overrides."""

    log_file: Path
    level: int = logging.INFO
    stderr: bool = False
    json: bool = False
    log_output: bool = False
    max_bytes: int = DEFAULT_LOG_MAX_BYTES
    backup_count: int = DEFAULT_LOG_BACKUPS


def _env_level(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    if value.isdigit():
        return int(value)
    return logging.getLevelNamesMapping().get(value.upper(), default)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    with contextlib.suppress(TypeError, ValueError):
        return int(os.getenv(name))  # type: ignore[arg-type]
    return default


def build_log_config(*, log_file_name: str, default_level: int = logging.INFO) -> LogConfig:
    """Build log configuration from environment defaults."""

    directory = Path(os.getenv("SHELLBOT_LOG_DIR", str(log_dir())))
    directory.mkdir(parents=True, exist_ok=True)

    return LogConfig(
        log_file=directory / log_file_name,
        level=_env_level("SHELLBOT_LOG_LEVEL", default_level),
        stderr=_env_flag("SHELLBOT_LOG_STDERR"),
        json=_env_flag("SHELLBOT_LOG_JSON"),
        log_output=_env_flag("SHELLBOT_LOG_OUTPUT"),
        max_bytes=_env_int("SHELLBOT_LOG_MAX_BYTES", DEFAULT_LOG_MAX_BYTES),
        backup_count=_env_int("SHELLBOT_LOG_BACKUPS", DEFAULT_LOG_BACKUPS),
    )


def configure_logging(config: LogConfig) -> None:
    """Configure root logging with rotation and context support.

    Root handlers are reset first so repeated calls do not duplicate lines.
    """

    global _LOG_OUTPUT_ENABLED
    _LOG_OUTPUT_ENABLED = config.log_output

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(config.level)

    formatter = JsonFormatter() if config.json else TextFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    handlers: list[logging.Handler] = [
        RotatingFileHandler(
            config.log_file,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
    ]
    if config.stderr:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def register_secret(secret: str) -> None:
    """Mask ``secret`` (the bot token ends up in API URLs) in every log line."""

    if secret:
        _SECRETS.add(secret)


def _redact(text: str) -> str:
    for secret in _SECRETS:
        text = text.replace(secret, REDACTED)
    return text


def log_output_enabled() -> bool:
    """Return True if raw PTY output should be logged (very noisy)."""

    return _LOG_OUTPUT_ENABLED


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach structured context fields to log records within a block."""

    merged = {**_LOG_CONTEXT.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _LOG_CONTEXT.set(merged)
    try:
        yield
    finally:
        _LOG_CONTEXT.reset(token)


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Log a short, stable event name with optional fields."""

    logger.log(level, event, extra={"event_fields": fields})


class _StructuredFormatter(logging.Formatter):
    """Collects the ``log_context`` and ``log_event`` fields of a record.

    Handlers run synchronously in the logging task, so the context variable
    still holds the caller's fields when the record is formatted.
    """

    def fields(self, record: logging.LogRecord) -> tuple[Dict[str, Any], Dict[str, Any]]:
        event_fields = getattr(record, "event_fields", {})
        return dict(_LOG_CONTEXT.get()), {k: v for k, v in event_fields.items() if v is not None}

    def format(self, record: logging.LogRecord) -> str:
        return _redact(self.render(record))

    def render(self, record: logging.LogRecord) -> str:
        raise NotImplementedError


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        if value and not any(ch.isspace() or ch in '="' for ch in value):
            return value
        return json.dumps(value)
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=True, separators=(",", ":"))
    return str(value)


class TextFormatter(_StructuredFormatter):
    """``%``-style lines followed by sorted ``key=value`` fields."""

    def render(self, record: logging.LogRecord) -> str:
        base = super(_StructuredFormatter, self).format(record)
        context, event_fields = self.fields(record)
        extra = " ".join(f"{key}={_format_value(value)}" for key, value in sorted({**context, **event_fields}.items()))
        return f"{base} {extra}" if extra else base


class JsonFormatter(_StructuredFormatter):
    """One JSON object per line."""

    def render(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context, event_fields = self.fields(record)
        if context:
            payload["context"] = context
        if event_fields:
            payload["fields"] = event_fields
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)
