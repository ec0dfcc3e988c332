"""Logging setup for the REPL and the HTTP server, plus structured event helpers.

Records go to a rotating file under the platform log directory so that
streamed model output on the terminal is never interleaved with log lines.
"""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import os
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping

from platformdirs import PlatformDirs

APP_NAME = "llm-repl"
ENV_PREFIX = "LLM_REPL_LOG_"
DEFAULT_LOG_MAX_BYTES = 5_000_000
DEFAULT_LOG_BACKUPS = 3

# Client libraries that log each request at INFO.
QUIET_LIBRARIES = ("httpx", "httpcore", "openai", "uvicorn.access")

# Field names whose values never reach a log line.
SECRET_FIELDS = frozenset({"api_key", "key", "authorization", "token"})
MASK = "***"

_LOG_CONTEXT: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("llmrepl_log_context", default={})
_LOG_CHUNKS_ENABLED = False


def default_log_dir() -> Path:
    return Path(PlatformDirs(appname=APP_NAME, appauthor=False).user_log_path)


@dataclass(frozen=True)
class LogConfig:
    """Where and how the REPL and server log.

    `log_chunks` turns on one DEBUG line per streamed fragment; `library_levels`
    raises the floor for chatty client libraries.
    """

    log_file: Path
    level: int = logging.INFO
    stderr: bool = False
    json: bool = False
    log_chunks: bool = False
    max_bytes: int = DEFAULT_LOG_MAX_BYTES
    backup_count: int = DEFAULT_LOG_BACKUPS
    library_levels: Dict[str, int] = field(default_factory=dict)


def _env(name: str) -> str | None:
    return os.getenv(ENV_PREFIX + name)


def _parse_level(value: str | None, default: int) -> int:
    if not value:
        return default
    if value.isdigit():
        return int(value)
    return logging._nameToLevel.get(value.upper(), default)


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_int(value: str | None, default: int) -> int:
    """Positive integer setting; anything else keeps the default."""
    if value is None or not value.strip().isdigit():
        return default
    return int(value) or default


def build_log_config(*, log_file_name: str, default_level: int = logging.INFO) -> LogConfig:
    """Read LLM_REPL_LOG_{DIR,LEVEL,STDERR,JSON,CHUNKS,MAX_BYTES,BACKUPS}.

    Client libraries stay at WARNING unless the app itself logs at DEBUG, in
    which case their request lines are useful and pass through.
    """

    log_dir = Path(_env("DIR") or default_log_dir())
    log_dir.mkdir(parents=True, exist_ok=True)
    level = _parse_level(_env("LEVEL"), default_level)
    floor = level if level <= logging.DEBUG else max(level, logging.WARNING)

    return LogConfig(
        log_file=log_dir / log_file_name,
        level=level,
        stderr=_parse_bool(_env("STDERR"), False),
        json=_parse_bool(_env("JSON"), False),
        log_chunks=_parse_bool(_env("CHUNKS"), False),
        max_bytes=_parse_int(_env("MAX_BYTES"), DEFAULT_LOG_MAX_BYTES),
        backup_count=_parse_int(_env("BACKUPS"), DEFAULT_LOG_BACKUPS),
        library_levels={name: floor for name in QUIET_LIBRARIES},
    )


def configure_logging(config: LogConfig) -> None:
    """Install the file handler (and optional stderr) on the root logger.

    Existing root handlers are removed first, so calling this twice (REPL plus
    `--serve`) does not duplicate lines.
    """

    global _LOG_CHUNKS_ENABLED
    _LOG_CHUNKS_ENABLED = config.log_chunks

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(config.level)

    formatter: logging.Formatter
    if config.json:
        formatter = JsonFormatter()
    else:
        formatter = ContextFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")

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
        handler.addFilter(ContextFilter())
        root_logger.addHandler(handler)

    for name, level in config.library_levels.items():
        logging.getLogger(name).setLevel(level)


def log_chunks_enabled() -> bool:
    """Per-fragment stream logging, off unless LLM_REPL_LOG_CHUNKS is set."""
    return _LOG_CHUNKS_ENABLED


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach fields such as backend and model to every record logged inside the block.

    None values are skipped so callers can pass optional selections through unchanged.
    The context is a ContextVar, so concurrent requests on one loop keep their own.
    """

    current = _LOG_CONTEXT.get()
    token = _LOG_CONTEXT.set({**current, **{k: v for k, v in fields.items() if v is not None}})
    try:
        yield
    finally:
        _LOG_CONTEXT.reset(token)


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Log a dotted event name ("query.failed", "stream.chunk") with key=value fields."""
    logger.log(level, event, extra={"event_fields": fields})


def redact(fields: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: (MASK if k.lower() in SECRET_FIELDS and v is not None else v) for k, v in fields.items()}


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        if value == "":
            return '""'
        if any(ch.isspace() for ch in value) or "=" in value or '"' in value:
            return json.dumps(value)
        return value
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=True, separators=(",", ":"))
    return str(value)


def _format_fields(fields: Mapping[str, Any]) -> str:
    return " ".join(f"{k}={_format_value(fields[k])}" for k in sorted(fields) if fields[k] is not None)


class ContextFilter(logging.Filter):
    """Copies the active log_context and masks secret-named fields on each record."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 - logging API name
        record.context_fields = redact(_LOG_CONTEXT.get())
        record.event_fields = redact(getattr(record, "event_fields", {}))
        return True


class ContextFormatter(logging.Formatter):
    """`<time> <level> <logger> <event> k=v ...`, context fields first."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        context = _format_fields(getattr(record, "context_fields", {}))
        event_fields = _format_fields(getattr(record, "event_fields", {}))
        extra = " ".join(part for part in (context, event_fields) if part)
        return f"{base} {extra}" if extra else base


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        context = getattr(record, "context_fields", {})
        fields = getattr(record, "event_fields", {})
        if context:
            payload["context"] = context
        if fields:
            payload["fields"] = fields
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)
