"""Append-only per-run event log (``events.jsonl``) and event payload builders.

Every ``append_event`` call writes exactly one compact JSON line through a
single ``O_APPEND`` write, creating parent directories on first use. Prior
lines are never rewritten. Appends within one operation are independent I/O
calls; callers treat a failed append as a diagnostic, not as an abort.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

from agency.domain.models import Event, ExecutionRecord

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

    from agency.control_plane.archive_pipeline import ArchiveResult

EVENT_VERIFY_STARTED: Final[str] = "verify_started"
EVENT_VERIFY_FINISHED: Final[str] = "verify_finished"
EVENT_CLEAN_STARTED: Final[str] = "clean_started"
EVENT_CLEAN_FINISHED: Final[str] = "clean_finished"
EVENT_ARCHIVE_STARTED: Final[str] = "archive_started"
EVENT_ARCHIVE_FINISHED: Final[str] = "archive_finished"
EVENT_ARCHIVE_FAILED: Final[str] = "archive_failed"
EVENT_CMD_START: Final[str] = "cmd_start"
EVENT_CMD_END: Final[str] = "cmd_end"

MAX_REASON_LENGTH: Final[int] = 512


def append_event(path: str | Path, event: Event) -> None:
    """Append one compact JSON line for ``event`` to ``path``."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    line = (event.to_json() + "\n").encode("utf-8")
    fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
    try:
        view = memoryview(line)
        while view:
            written = os.write(fd, view)
            view = view[written:]
    finally:
        os.close(fd)


def iter_events(path: str | Path) -> Iterator[Event]:
    """Yield parsed events in file order; a missing log yields nothing."""

    target = Path(path)
    try:
        handle = target.open("r", encoding="utf-8")
    except FileNotFoundError:
        return
    with handle:
        for index, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValueError(f"{target}:{index}: invalid event line: {exc}") from exc
            yield Event.from_dict(payload)


def read_events(path: str | Path) -> list[Event]:
    return list(iter_events(path))


def truncate_reason(reason: str, limit: int = MAX_REASON_LENGTH) -> str:
    if len(reason) <= limit:
        return reason
    return reason[:limit]


# ----------------------------------------------------------------------
# Payload builders
# ----------------------------------------------------------------------


def verify_started_data(
    *,
    timeout_ms: int,
    log_path: str | Path,
    verify_json_path: str | Path,
) -> dict[str, Any]:
    return {
        "timeout_ms": timeout_ms,
        "log_path": str(log_path),
        "verify_json_path": str(verify_json_path),
    }


def verify_finished_data(
    record: ExecutionRecord,
    *,
    verify_record_path: str | Path,
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "ok": record.ok,
        "timed_out": record.timed_out,
        "cancelled": record.cancelled,
        "duration_ms": record.duration_ms,
        "log_path": record.log_path,
        "verify_record_path": str(verify_record_path),
    }
    if record.exit_code is not None:
        data["exit_code"] = record.exit_code
    if record.verify_json_path:
        data["verify_json_path"] = record.verify_json_path
    return data


def clean_started_data() -> dict[str, Any]:
    return {}


def clean_finished_data(*, ok: bool) -> dict[str, Any]:
    return {"ok": ok}


def archive_started_data(*, script: str, worktree_path: str | Path) -> dict[str, Any]:
    return {"script": script, "worktree_path": str(worktree_path)}


def archive_finished_data(*, ok: bool) -> dict[str, Any]:
    return {"ok": ok}


def archive_failed_data(result: ArchiveResult) -> dict[str, Any]:
    data: dict[str, Any] = {
        "script_ok": result.script_ok,
        "tmux_ok": result.tmux_ok,
        "delete_ok": result.delete_ok,
    }
    if result.script_reason:
        data["script_reason"] = truncate_reason(result.script_reason)
    if result.tmux_reason:
        data["tmux_reason"] = truncate_reason(result.tmux_reason)
    if result.delete_reason:
        data["delete_reason"] = truncate_reason(result.delete_reason)
    return data


def cmd_start_data(command: str, args: Sequence[str] = ()) -> dict[str, Any]:
    return {"command": command, "args": list(args)}


def cmd_end_data(
    command: str,
    *,
    exit_code: int,
    duration_ms: int,
    error_code: str | None = None,
    extra: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "command": command,
        "exit_code": exit_code,
        "duration_ms": duration_ms,
    }
    if error_code:
        data["error_code"] = error_code
    if extra:
        data.update(extra)
    return data


__all__ = [
    "EVENT_ARCHIVE_FAILED",
    "EVENT_ARCHIVE_FINISHED",
    "EVENT_ARCHIVE_STARTED",
    "EVENT_CLEAN_FINISHED",
    "EVENT_CLEAN_STARTED",
    "EVENT_CMD_END",
    "EVENT_CMD_START",
    "EVENT_VERIFY_FINISHED",
    "EVENT_VERIFY_STARTED",
    "MAX_REASON_LENGTH",
    "append_event",
    "archive_failed_data",
    "archive_finished_data",
    "archive_started_data",
    "clean_finished_data",
    "clean_started_data",
    "cmd_end_data",
    "cmd_start_data",
    "iter_events",
    "read_events",
    "truncate_reason",
    "verify_finished_data",
    "verify_started_data",
]
