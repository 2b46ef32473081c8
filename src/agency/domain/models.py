"""Dataclass domain records with strict parsing and canonical serialization.

Persisted shapes:
- ``RunMeta`` (``meta.json``) with nested ``RunFlags`` and ``ArchiveInfo``.
- ``ExecutionRecord`` (``verify_record.json`` / ``archive_record.json``).
- ``SelfReport`` (script-written ``.agency/out/verify.json``).
- ``Event`` (one line of ``events.jsonl``).

``RunRef`` is the in-memory reference the resolver operates on.
"""

from __future__ import annotations

import json
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, NoReturn

from agency.constants import EVENT_SCHEMA_VERSION, META_SCHEMA_VERSION, RECORD_SCHEMA_VERSION

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_META_KNOWN_FIELDS = frozenset(
    {
        "schema_version",
        "run_id",
        "repo_id",
        "name",
        "title",
        "runner",
        "parent_branch",
        "branch",
        "worktree_path",
        "created_at",
        "tmux_session_name",
        "pr_number",
        "pr_url",
        "last_push_at",
        "last_verify_at",
        "flags",
        "archive",
    }
)


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def canonical_json(value: object) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def format_rfc3339(moment: datetime) -> str:
    """Second-precision UTC timestamp with a ``Z`` suffix."""

    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_rfc3339_nano(epoch_ns: int) -> str:
    """Nanosecond-precision UTC timestamp with a ``Z`` suffix."""

    seconds, nanos = divmod(epoch_ns, 1_000_000_000)
    base = datetime.fromtimestamp(seconds, tz=UTC).strftime("%Y-%m-%dT%H:%M:%S")
    return f"{base}.{nanos:09d}Z"


def parse_rfc3339(value: str, path: str = "timestamp") -> datetime:
    """Parse RFC3339 into an aware UTC datetime, truncating sub-microsecond digits."""

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    head, sep, rest = text.partition(".")
    if sep:
        digits = len(rest) - len(rest.lstrip("0123456789"))
        text = f"{head}.{rest[:min(digits, 6)]}{rest[digits:]}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        _fail(path, f"invalid RFC3339 timestamp: {value!r}")
    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "timestamp must carry a UTC offset")
    return parsed.astimezone(UTC)


def utc_now_rfc3339() -> str:
    return format_rfc3339(datetime.now(tz=UTC))


def utc_now_rfc3339_nano() -> str:
    return format_rfc3339_nano(time.time_ns())


def _as_str(value: object, path: str, *, default: str = "") -> str:
    if value is None:
        return default
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    return value


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, path)


def _as_bool(value: object, path: str, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    return value


def _as_optional_int(value: object, path: str) -> int | None:
    if value is None:
        return None
    return _as_int(value, path)


def _as_object(value: object, path: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    out: dict[str, Any] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        out[key] = item
    return out


@dataclass(slots=True)
class RunFlags:
    needs_attention: bool = False
    needs_attention_reason: str = ""
    setup_failed: bool = False
    abandoned: bool = False

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "needs_attention": self.needs_attention,
            "needs_attention_reason": self.needs_attention_reason,
            "setup_failed": self.setup_failed,
            "abandoned": self.abandoned,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object] | None) -> RunFlags:
        parsed = _as_object(data, "RunMeta.flags")
        return cls(
            needs_attention=_as_bool(parsed.get("needs_attention"), "flags.needs_attention"),
            needs_attention_reason=_as_str(
                parsed.get("needs_attention_reason"), "flags.needs_attention_reason"
            ),
            setup_failed=_as_bool(parsed.get("setup_failed"), "flags.setup_failed"),
            abandoned=_as_bool(parsed.get("abandoned"), "flags.abandoned"),
        )


@dataclass(slots=True)
class ArchiveInfo:
    archived_at: str = ""
    merged_at: str = ""

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {}
        if self.archived_at:
            payload["archived_at"] = self.archived_at
        if self.merged_at:
            payload["merged_at"] = self.merged_at
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, object] | None) -> ArchiveInfo:
        parsed = _as_object(data, "RunMeta.archive")
        return cls(
            archived_at=_as_str(parsed.get("archived_at"), "archive.archived_at"),
            merged_at=_as_str(parsed.get("merged_at"), "archive.merged_at"),
        )


@dataclass(slots=True)
class RunMeta:
    """Per-run metadata persisted as ``meta.json``.

    ``extra`` keeps fields this version does not know about so a
    read-modify-write never drops data written by a newer writer.
    """

    run_id: str
    repo_id: str
    created_at: str
    name: str = ""
    title: str = ""
    runner: str = ""
    parent_branch: str = ""
    branch: str = ""
    worktree_path: str = ""
    tmux_session_name: str = ""
    pr_number: int | None = None
    pr_url: str = ""
    last_push_at: str = ""
    last_verify_at: str = ""
    flags: RunFlags = field(default_factory=RunFlags)
    archive: ArchiveInfo = field(default_factory=ArchiveInfo)
    schema_version: str = META_SCHEMA_VERSION
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_archived(self) -> bool:
        return bool(self.archive.archived_at)

    @property
    def created_at_datetime(self) -> datetime:
        return parse_rfc3339(self.created_at, "RunMeta.created_at")

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "schema_version": self.schema_version,
                "run_id": self.run_id,
                "repo_id": self.repo_id,
                "name": self.name,
                "title": self.title,
                "runner": self.runner,
                "parent_branch": self.parent_branch,
                "branch": self.branch,
                "worktree_path": self.worktree_path,
                "created_at": self.created_at,
                "tmux_session_name": self.tmux_session_name,
                "flags": self.flags.to_dict(),
            }
        )
        if self.pr_number is not None:
            payload["pr_number"] = self.pr_number
        for key in ("pr_url", "last_push_at", "last_verify_at"):
            value = getattr(self, key)
            if value:
                payload[key] = value
        archive = self.archive.to_dict()
        if archive:
            payload["archive"] = archive
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RunMeta:
        parsed = _as_object(data, "RunMeta")
        schema_version = _as_str(parsed.get("schema_version"), "RunMeta.schema_version")
        if not schema_version.strip():
            _fail("RunMeta.schema_version", "must not be empty")
        created_at = _as_str(parsed.get("created_at"), "RunMeta.created_at")
        if not created_at.strip():
            _fail("RunMeta.created_at", "must not be empty")
        parse_rfc3339(created_at, "RunMeta.created_at")

        return cls(
            schema_version=schema_version,
            run_id=_as_str(parsed.get("run_id"), "RunMeta.run_id"),
            repo_id=_as_str(parsed.get("repo_id"), "RunMeta.repo_id"),
            created_at=created_at,
            name=_as_str(parsed.get("name"), "RunMeta.name"),
            title=_as_str(parsed.get("title"), "RunMeta.title"),
            runner=_as_str(parsed.get("runner"), "RunMeta.runner"),
            parent_branch=_as_str(parsed.get("parent_branch"), "RunMeta.parent_branch"),
            branch=_as_str(parsed.get("branch"), "RunMeta.branch"),
            worktree_path=_as_str(parsed.get("worktree_path"), "RunMeta.worktree_path"),
            tmux_session_name=_as_str(
                parsed.get("tmux_session_name"), "RunMeta.tmux_session_name"
            ),
            pr_number=_as_optional_int(parsed.get("pr_number"), "RunMeta.pr_number"),
            pr_url=_as_str(parsed.get("pr_url"), "RunMeta.pr_url"),
            last_push_at=_as_str(parsed.get("last_push_at"), "RunMeta.last_push_at"),
            last_verify_at=_as_str(parsed.get("last_verify_at"), "RunMeta.last_verify_at"),
            flags=RunFlags.from_dict(parsed.get("flags")),
            archive=ArchiveInfo.from_dict(parsed.get("archive")),
            extra={key: value for key, value in parsed.items() if key not in _META_KNOWN_FIELDS},
        )


@dataclass(frozen=True, slots=True)
class RunRef:
    """Resolver view of one run: identity plus eligibility markers."""

    repo_id: str
    run_id: str
    name: str = ""
    broken: bool = False
    archived: bool = False


@dataclass(frozen=True, slots=True)
class SelfReport:
    """Structured result a script may hand back via ``verify.json``."""

    schema_version: str
    ok: bool
    summary: str = ""
    data: JSONValue = None

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> SelfReport:
        parsed = _as_object(data, "SelfReport")
        schema_version = parsed.get("schema_version")
        if not isinstance(schema_version, str) or not schema_version.strip():
            _fail("SelfReport.schema_version", "must be a non-empty string")
        ok = parsed.get("ok")
        if not isinstance(ok, bool):
            _fail("SelfReport.ok", "must be a boolean")
        summary = parsed.get("summary")
        if summary is not None and not isinstance(summary, str):
            _fail("SelfReport.summary", "must be a string")
        return cls(
            schema_version=schema_version,
            ok=ok,
            summary=summary or "",
            data=parsed.get("data"),
        )


@dataclass(slots=True)
class ExecutionRecord:
    """Structured result of one script execution. Overwritten, never merged."""

    repo_id: str
    run_id: str
    script_path: str
    started_at: str = ""
    finished_at: str = ""
    duration_ms: int = 0
    timeout_ms: int = 0
    timed_out: bool = False
    cancelled: bool = False
    exit_code: int | None = None
    signal: str | None = None
    error: str | None = None
    ok: bool = False
    summary: str = ""
    verify_json_path: str | None = None
    log_path: str = ""
    schema_version: str = RECORD_SCHEMA_VERSION

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "schema_version": self.schema_version,
            "repo_id": self.repo_id,
            "run_id": self.run_id,
            "script_path": self.script_path,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
            "timeout_ms": self.timeout_ms,
            "timed_out": self.timed_out,
            "cancelled": self.cancelled,
            "exit_code": self.exit_code,
            "signal": self.signal,
            "error": self.error,
            "ok": self.ok,
            "summary": self.summary,
            "verify_json_path": self.verify_json_path,
            "log_path": self.log_path,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ExecutionRecord:
        parsed = _as_object(data, "ExecutionRecord")
        return cls(
            schema_version=_as_str(
                parsed.get("schema_version"),
                "ExecutionRecord.schema_version",
                default=RECORD_SCHEMA_VERSION,
            ),
            repo_id=_as_str(parsed.get("repo_id"), "ExecutionRecord.repo_id"),
            run_id=_as_str(parsed.get("run_id"), "ExecutionRecord.run_id"),
            script_path=_as_str(parsed.get("script_path"), "ExecutionRecord.script_path"),
            started_at=_as_str(parsed.get("started_at"), "ExecutionRecord.started_at"),
            finished_at=_as_str(parsed.get("finished_at"), "ExecutionRecord.finished_at"),
            duration_ms=_as_optional_int(parsed.get("duration_ms"), "duration_ms") or 0,
            timeout_ms=_as_optional_int(parsed.get("timeout_ms"), "timeout_ms") or 0,
            timed_out=_as_bool(parsed.get("timed_out"), "ExecutionRecord.timed_out"),
            cancelled=_as_bool(parsed.get("cancelled"), "ExecutionRecord.cancelled"),
            exit_code=_as_optional_int(parsed.get("exit_code"), "ExecutionRecord.exit_code"),
            signal=_as_optional_str(parsed.get("signal"), "ExecutionRecord.signal"),
            error=_as_optional_str(parsed.get("error"), "ExecutionRecord.error"),
            ok=_as_bool(parsed.get("ok"), "ExecutionRecord.ok"),
            summary=_as_str(parsed.get("summary"), "ExecutionRecord.summary"),
            verify_json_path=_as_optional_str(
                parsed.get("verify_json_path"), "ExecutionRecord.verify_json_path"
            ),
            log_path=_as_str(parsed.get("log_path"), "ExecutionRecord.log_path"),
        )


@dataclass(frozen=True, slots=True)
class Event:
    """One append-only line of ``events.jsonl``."""

    repo_id: str
    run_id: str
    event: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now_rfc3339)
    schema_version: str = EVENT_SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "timestamp": self.timestamp,
            "repo_id": self.repo_id,
            "run_id": self.run_id,
            "event": self.event,
            "data": dict(self.data),
        }

    def to_json(self) -> str:
        return canonical_json(self.to_dict())

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Event:
        parsed = _as_object(data, "Event")
        event_name = _as_str(parsed.get("event"), "Event.event")
        if not event_name:
            _fail("Event.event", "must not be empty")
        return cls(
            schema_version=_as_str(
                parsed.get("schema_version"), "Event.schema_version", default=EVENT_SCHEMA_VERSION
            ),
            timestamp=_as_str(parsed.get("timestamp"), "Event.timestamp"),
            repo_id=_as_str(parsed.get("repo_id"), "Event.repo_id"),
            run_id=_as_str(parsed.get("run_id"), "Event.run_id"),
            event=event_name,
            data=_as_object(parsed.get("data"), "Event.data"),
        )


__all__ = [
    "ArchiveInfo",
    "Event",
    "ExecutionRecord",
    "JSONValue",
    "RunFlags",
    "RunMeta",
    "RunRef",
    "SelfReport",
    "canonical_json",
    "format_rfc3339",
    "format_rfc3339_nano",
    "parse_rfc3339",
    "utc_now_rfc3339",
    "utc_now_rfc3339_nano",
]
