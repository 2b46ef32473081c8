"""
agency — structured logging

File: src/agency/observability/logging.py

Purpose
- One JSON object per line for every record under the ``agency`` logger, written
  off the calling thread through a ``QueueHandler``/``QueueListener`` pair.

Functional requirements
- Every line carries ``timestamp``, ``level``, ``logger``, ``message`` and the
  correlation fields in scope (``invocation_id``, ``operation``, ``repo_id``,
  ``run_id``); ``extra=`` values land under ``fields``.
- Secret-looking keys and inline credentials are redacted unless disabled.
- Emitting never blocks: a full queue drops the record and counts it.
- ``shutdown_logging`` drains the queue, closes sinks and restores the logger's
  ``propagate`` flag; it is also registered with ``atexit``.
"""

from __future__ import annotations

import atexit
import contextvars
import json
import logging
import logging.handlers
import math
import queue
import re
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

from agency.constants import LOG_FILENAME

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

REDACTED: Final[str] = "***REDACTED***"
ROOT_LOGGER_NAME: Final[str] = "agency"
CORRELATION_KEYS: Final[tuple[str, ...]] = ("invocation_id", "operation", "repo_id", "run_id")

_SECRET_KEY_RE: Final[re.Pattern[str]] = re.compile(
    r"(?i)secret|token|passw(or)?d|passphrase|api_?key|authorization|credential|cookie|private_key"
)
_INLINE_SECRET_RE: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|authorization)\b(\s*[:=]\s*)[^\s,;]+"
)
_BEARER_RE: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_GITHUB_TOKEN_RE: Final[re.Pattern[str]] = re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b")

# Attributes every LogRecord has; anything else came in through ``extra=``.
_RECORD_ATTRS: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "correlation"}

_correlation: contextvars.ContextVar[Mapping[str, str]] = contextvars.ContextVar(
    "agency_log_correlation", default={}
)

_active_lock = threading.Lock()
_active: LoggingHandle | None = None
_atexit_registered = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Settings for one invocation's structured logging.

    With ``log_dir=None`` no file is written; if ``log_to_stderr`` is also off
    records are accepted and discarded.
    """

    invocation_id: str
    log_dir: Path | str | None = None
    logger_name: str = ROOT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = LOG_FILENAME
    log_to_stderr: bool = False
    redact: bool = True
    max_bytes: int = 10_000_000
    backup_count: int = 5

    def __post_init__(self) -> None:
        if not isinstance(self.invocation_id, str) or not self.invocation_id.strip():
            raise ValueError("invocation_id must be a non-empty string")
        if not self.logger_name.strip():
            raise ValueError("logger_name must be a non-empty string")
        if isinstance(self.queue_size, bool) or not isinstance(self.queue_size, int):
            raise ValueError("queue_size must be an integer")
        if self.queue_size <= 0:
            raise ValueError("queue_size must be positive")
        name = self.log_filename.strip()
        if not name or Path(name).name != name:
            raise ValueError(f"log_filename must be a bare file name, got {self.log_filename!r}")
        resolve_level(self.level)

    @property
    def log_path(self) -> Path | None:
        if self.log_dir is None or not str(self.log_dir):
            return None
        return Path(self.log_dir).expanduser() / self.log_filename.strip()


def resolve_level(level: int | str) -> int:
    """Map ``"debug"``/``"INFO"``/``20`` style levels to an ``int``."""

    if isinstance(level, bool):
        raise ValueError(f"unsupported logging level {level!r}")
    if isinstance(level, int):
        return level
    parsed = logging.getLevelName(str(level).strip().upper())
    if not isinstance(parsed, int):
        raise ValueError(f"unsupported logging level {level!r}")
    return parsed


# ---------------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------------


def get_correlation_context() -> dict[str, str]:
    return dict(_correlation.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for records logged in scope; ``None`` unbinds a key."""

    merged = dict(_correlation.get())
    for key, value in fields.items():
        if value is None:
            merged.pop(key, None)
        elif value.strip():
            merged[key] = value.strip()
    token = _correlation.set(merged)
    try:
        yield
    finally:
        _correlation.reset(token)


# ---------------------------------------------------------------------------
# Redaction and JSON shaping
# ---------------------------------------------------------------------------


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask values under secret-looking keys and credentials embedded in text."""

    if isinstance(value, str):
        text = _INLINE_SECRET_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", value)
        text = _BEARER_RE.sub(f"Bearer {REDACTED}", text)
        return _GITHUB_TOKEN_RE.sub(REDACTED, text)
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: REDACTED if _SECRET_KEY_RE.search(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


def _no_redaction(value: JSONValue) -> JSONValue:
    return value


def _to_json(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, datetime):
        moment = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return moment.astimezone(UTC).isoformat().replace("+00:00", "Z")
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(key): _to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_to_json(item) for item in value), key=repr)
    return repr(value)


class _JsonLinesFormatter(logging.Formatter):
    def __init__(self, *, redactor: LogRedactor, invocation_id: str) -> None:
        super().__init__()
        self._redact = redactor
        self._invocation_id = invocation_id

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": self._text(record.getMessage()),
            "invocation_id": self._invocation_id,
        }
        entry.update(getattr(record, "correlation", {}))

        extras = {
            key: _to_json(value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        }
        for key in CORRELATION_KEYS:
            value = extras.pop(key, None)
            if isinstance(value, str) and value.strip():
                entry[key] = value.strip()
        if extras:
            entry["fields"] = self._redact(extras)

        if record.exc_info:
            entry["exception"] = self._text(self.formatException(record.exc_info))
        if record.stack_info:
            entry["stack"] = self._text(record.stack_info)
        return json.dumps(entry, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def _text(self, text: str) -> str:
        redacted = self._redact(text)
        return redacted if isinstance(redacted, str) else json.dumps(redacted)


class _CorrelatingQueueHandler(logging.handlers.QueueHandler):
    """Snapshots the emitting context's correlation and never blocks on a full queue."""

    def __init__(self, log_queue: queue.Queue[Any]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        record.correlation = get_correlation_context()
        return super().prepare(record)

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class LoggingHandle:
    """Live logging setup; ``close`` is idempotent."""

    logger: logging.Logger
    invocation_id: str
    log_path: Path | None
    _queue: queue.Queue[Any]
    _queue_handler: _CorrelatingQueueHandler
    _sinks: tuple[logging.Handler, ...]
    _listener: logging.handlers.QueueListener
    _previous_propagate: bool
    _closed: bool = False
    _close_lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while self._queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def close(self, *, timeout_seconds: float = 2.0) -> None:
        with self._close_lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            self.logger.propagate = self._previous_propagate
            self._closed = True


def setup_structured_logging(config: LoggingConfig) -> LoggingHandle:
    """Install JSON-lines logging on ``config.logger_name``, replacing any earlier setup."""

    shutdown_logging()
    level = resolve_level(config.level)
    formatter = _JsonLinesFormatter(
        redactor=default_log_redactor if config.redact else _no_redaction,
        invocation_id=config.invocation_id.strip(),
    )

    sinks: list[logging.Handler] = []
    log_path = config.log_path
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        sinks.append(
            logging.handlers.RotatingFileHandler(
                log_path,
                maxBytes=max(1, config.max_bytes),
                backupCount=max(1, config.backup_count),
                encoding="utf-8",
            )
        )
    if config.log_to_stderr:
        sinks.append(logging.StreamHandler())
    if not sinks:
        sinks.append(logging.NullHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(config.logger_name.strip())
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    previous_propagate = logger.propagate
    logger.propagate = False

    log_queue: queue.Queue[Any] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _CorrelatingQueueHandler(log_queue)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)

    handle = LoggingHandle(
        logger=logger,
        invocation_id=config.invocation_id.strip(),
        log_path=log_path,
        _queue=log_queue,
        _queue_handler=queue_handler,
        _sinks=tuple(sinks),
        _listener=listener,
        _previous_propagate=previous_propagate,
    )
    global _active, _atexit_registered
    with _active_lock:
        _active = handle
        if not _atexit_registered:
            atexit.register(shutdown_logging)
            _atexit_registered = True
    return handle


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    invocation_id: str,
    log_dir: Path | str | None = None,
    log_to_stderr: bool | None = None,
    logger_name: str = ROOT_LOGGER_NAME,
) -> logging.Logger:
    """Configure logging from an ``[observability]`` table and return the logger.

    ``log_dir`` and ``log_to_stderr`` override the table when given; an empty
    ``log_dir`` disables the file sink.
    """

    table = dict(observability_config or {})
    directory = log_dir if log_dir is not None else table.get("log_dir") or None
    stderr = bool(table.get("log_to_stderr", False)) if log_to_stderr is None else log_to_stderr
    raw_level = table.get("log_level", "INFO")
    handle = setup_structured_logging(
        LoggingConfig(
            invocation_id=invocation_id,
            log_dir=str(directory) if directory else None,
            logger_name=logger_name,
            level=raw_level if isinstance(raw_level, (int, str)) else "INFO",
            log_to_stderr=stderr,
            redact=bool(table.get("redact_secrets", True)),
        )
    )
    return handle.logger


def get_active_logging_handle() -> LoggingHandle | None:
    with _active_lock:
        return _active


def shutdown_logging(handle: LoggingHandle | None = None) -> None:
    """Drain and close ``handle`` (default: the active setup)."""

    global _active
    with _active_lock:
        target = handle if handle is not None else _active
        if target is _active:
            _active = None
    if target is not None:
        target.close()


__all__ = [
    "CORRELATION_KEYS",
    "JSONValue",
    "LogRedactor",
    "LoggingConfig",
    "LoggingHandle",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "resolve_level",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
