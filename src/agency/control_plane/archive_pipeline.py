"""
agency — best-effort archive pipeline

File: src/agency/control_plane/archive_pipeline.py

Purpose
- Tear a run down: archive script, terminal session, worktree.

Functional requirements
- All three steps always run, in order, regardless of earlier failures.
- Each step reports ``ok`` plus a bounded reason; the pipeline never raises
  for a step failure.
- ``success`` is ``script_ok and delete_ok``; a session that is already gone
  counts as a successful kill and a failed kill does not fail the pipeline.
- Deletion tries ``git worktree remove --force`` first, then a prefix-guarded
  recursive delete under ``<data_dir>/repos/<repo_id>/worktrees``, and
  confirms the directory is gone.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final

from agency.constants import DEFAULT_ARCHIVE_TIMEOUT_SECONDS, DEFAULT_GRACE_PERIOD_SECONDS
from agency.control_plane.script_env import build_script_env
from agency.errors import AgencyError, ErrorCode
from agency.integration_plane.sessions import SessionError, SessionNotFoundError, session_name
from agency.integration_plane.worktree import WorktreeRemovalError, remove_worktree
from agency.persistence.event_log import truncate_reason
from agency.utils.fs import NotUnderPrefixError, safe_remove_all
from agency.verification_plane.runner import ScriptRunConfig, run_script

if TYPE_CHECKING:
    from agency.domain.models import ExecutionRecord, RunMeta
    from agency.integration_plane.command_runner import CommandRunner
    from agency.integration_plane.sessions import SessionClient
    from agency.persistence.store import Store
    from agency.utils.concurrency import CancellationToken

logger = logging.getLogger(__name__)

ERROR_REASON_LIMIT: Final[int] = 128
NO_SCRIPT_REASON: Final[str] = "no archive script configured"


@dataclass(slots=True)
class ArchiveResult:
    script_ok: bool = False
    script_reason: str = ""
    tmux_ok: bool = False
    tmux_reason: str = ""
    delete_ok: bool = False
    delete_reason: str = ""
    log_path: str = ""
    record: ExecutionRecord | None = None

    def success(self) -> bool:
        return self.script_ok and self.delete_ok

    def to_error(self) -> AgencyError | None:
        """``E_ARCHIVE_FAILED`` naming every failed step, or ``None`` on success."""

        if self.success():
            return None
        parts: list[str] = []
        for ok, label, reason in (
            (self.script_ok, "script failed", self.script_reason),
            (self.tmux_ok, "tmux kill failed", self.tmux_reason),
            (self.delete_ok, "worktree deletion failed", self.delete_reason),
        ):
            if ok:
                continue
            parts.append(f"{label} ({_short(reason)})" if reason else label)
        return AgencyError(
            ErrorCode.ARCHIVE_FAILED,
            "archive failed: " + "; ".join(parts),
            details={
                "script_ok": self.script_ok,
                "tmux_ok": self.tmux_ok,
                "delete_ok": self.delete_ok,
                "log_path": self.log_path,
            },
        )


@dataclass(frozen=True, slots=True)
class ArchiveConfig:
    meta: RunMeta
    data_dir: Path
    archive_script: str
    repo_root: Path | None = None
    timeout_seconds: float = DEFAULT_ARCHIVE_TIMEOUT_SECONDS
    grace_period_seconds: float = DEFAULT_GRACE_PERIOD_SECONDS


@dataclass(frozen=True, slots=True)
class ArchiveDeps:
    runner: CommandRunner
    sessions: SessionClient


async def archive(
    config: ArchiveConfig,
    deps: ArchiveDeps,
    store: Store,
    *,
    cancel_token: CancellationToken | None = None,
) -> ArchiveResult:
    """Run every teardown step and report each outcome."""

    meta = config.meta
    result = ArchiveResult(log_path=str(store.archive_log_path(meta.repo_id, meta.run_id)))

    ok, reason, record = await _run_archive_script(config, store, cancel_token)
    result.script_ok, result.script_reason, result.record = ok, truncate_reason(reason), record

    ok, reason = await asyncio.to_thread(_kill_session, meta, deps.sessions)
    result.tmux_ok, result.tmux_reason = ok, truncate_reason(reason)

    ok, reason = await asyncio.to_thread(_delete_worktree, config, deps.runner, store)
    result.delete_ok, result.delete_reason = ok, truncate_reason(reason)

    logger.info(
        "archive pipeline finished",
        extra={
            "repo_id": meta.repo_id,
            "run_id": meta.run_id,
            "script_ok": result.script_ok,
            "tmux_ok": result.tmux_ok,
            "delete_ok": result.delete_ok,
        },
    )
    return result


async def _run_archive_script(
    config: ArchiveConfig,
    store: Store,
    cancel_token: CancellationToken | None,
) -> tuple[bool, str, ExecutionRecord | None]:
    meta = config.meta
    if not config.archive_script.strip():
        return False, NO_SCRIPT_REASON, None

    run_config = ScriptRunConfig(
        repo_id=meta.repo_id,
        run_id=meta.run_id,
        workdir=Path(meta.worktree_path),
        script=config.archive_script,
        log_path=store.archive_log_path(meta.repo_id, meta.run_id),
        record_path=store.archive_record_path(meta.repo_id, meta.run_id),
        env=build_script_env(meta, data_dir=config.data_dir, repo_root=config.repo_root),
        timeout_seconds=config.timeout_seconds,
        default_timeout_seconds=DEFAULT_ARCHIVE_TIMEOUT_SECONDS,
        grace_period_seconds=config.grace_period_seconds,
        label="archive",
    )
    outcome = await run_script(run_config, cancel_token=cancel_token)
    if outcome.error is not None:
        return False, outcome.error.message, outcome.record
    if not outcome.record.ok:
        return False, outcome.record.summary, outcome.record
    return True, "", outcome.record


def _kill_session(meta: RunMeta, sessions: SessionClient) -> tuple[bool, str]:
    name = meta.tmux_session_name or session_name(meta.run_id)
    try:
        sessions.kill_session(name)
    except SessionNotFoundError:
        return True, ""
    except SessionError as exc:
        return False, str(exc)
    return True, ""


def _delete_worktree(
    config: ArchiveConfig,
    runner: CommandRunner,
    store: Store,
) -> tuple[bool, str]:
    meta = config.meta
    if not meta.worktree_path:
        return False, "worktree path is not recorded in run metadata"
    worktree = Path(meta.worktree_path)

    if config.repo_root is not None:
        try:
            remove_worktree(runner, config.repo_root, worktree)
        except WorktreeRemovalError as exc:
            logger.info(
                "git worktree remove failed; falling back to guarded delete",
                extra={"repo_id": meta.repo_id, "run_id": meta.run_id, "error": str(exc)},
            )
        else:
            if not os.path.lexists(worktree):
                return True, ""

    allowed_prefix = store.worktrees_dir(meta.repo_id)
    try:
        safe_remove_all(worktree, allowed_prefix)
    except NotUnderPrefixError:
        return False, (
            f"worktree path {str(worktree)!r} is outside allowed prefix "
            f"{str(allowed_prefix)!r}; refusing to delete"
        )
    except OSError as exc:
        return False, str(exc)

    if os.path.lexists(worktree):
        return False, "directory still exists after removal attempt"
    return True, ""


def _short(reason: str) -> str:
    if len(reason) <= ERROR_REASON_LIMIT:
        return reason
    return reason[:ERROR_REASON_LIMIT] + "..."


__all__ = [
    "ArchiveConfig",
    "ArchiveDeps",
    "ArchiveResult",
    "archive",
]
