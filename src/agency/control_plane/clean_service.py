"""
agency — clean service

File: src/agency/control_plane/clean_service.py

Purpose
- Abandon a run: resolve it, take the repo lock, drive the archive pipeline,
  and mark the run archived in ``meta.json``.

Functional requirements
- Cleaning an archived run is a no-op success (``already_archived``).
- Broken runs and runs whose worktree is already gone are rejected before
  any side effect.
- Pipeline step failures are data on ``CleanRunResult.archive``; the caller
  maps ``archive.to_error()`` to an exit status.
- ``meta.json`` is never deleted. On success it records ``archive.archived_at``
  and ``flags.abandoned``.
- Event appends are best-effort and reported on the result.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from agency.config.schema import default_config
from agency.control_plane.archive_pipeline import (
    ArchiveConfig,
    ArchiveDeps,
    ArchiveResult,
    archive,
)
from agency.control_plane.run_lookup import lookup_run
from agency.control_plane.script_env import load_run_scripts
from agency.domain.models import Event, RunMeta, utc_now_rfc3339
from agency.errors import AgencyError, ErrorCode
from agency.integration_plane.command_runner import CommandRunner, SubprocessCommandRunner
from agency.integration_plane.sessions import SessionClient, TmuxSessionClient
from agency.observability.logging import correlation_scope
from agency.persistence.event_log import (
    EVENT_ARCHIVE_FAILED,
    EVENT_ARCHIVE_FINISHED,
    EVENT_ARCHIVE_STARTED,
    EVENT_CLEAN_FINISHED,
    EVENT_CLEAN_STARTED,
    append_event,
    archive_failed_data,
    archive_finished_data,
    archive_started_data,
    clean_finished_data,
    clean_started_data,
)
from agency.persistence.repo_lock import RepoLock
from agency.persistence.store import Store

if TYPE_CHECKING:
    from agency.persistence.scan import RunRecord
    from agency.utils.concurrency import CancellationToken

logger = logging.getLogger(__name__)

REPO_ROOT_KEY = "root_path"


@dataclass(slots=True)
class CleanRunResult:
    archive: ArchiveResult
    repo_id: str
    run_id: str
    event_append_errors: list[str] = field(default_factory=list)
    meta_error: str = ""
    already_archived: bool = False

    @property
    def ok(self) -> bool:
        return self.archive.success() and not self.meta_error

    def to_error(self) -> AgencyError | None:
        error = self.archive.to_error()
        if error is not None:
            return error
        if self.meta_error:
            return AgencyError(
                ErrorCode.PERSIST_FAILED,
                f"failed to mark run archived: {self.meta_error}",
                details={"repo_id": self.repo_id, "run_id": self.run_id},
            )
        return None


class CleanService:
    """Archives runs stored under ``data_dir``."""

    def __init__(
        self,
        data_dir: str | Path,
        *,
        config: Mapping[str, Any] | None = None,
        runner: CommandRunner | None = None,
        sessions: SessionClient | None = None,
        now: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self._store = Store(data_dir)
        self._lock = RepoLock(data_dir, now=now)
        self._config = dict(config) if config is not None else dict(default_config())
        self._runner = runner if runner is not None else SubprocessCommandRunner()
        self._sessions = sessions if sessions is not None else TmuxSessionClient(self._runner)
        self._now = now

    @property
    def store(self) -> Store:
        return self._store

    async def clean_run(
        self,
        ref: str,
        *,
        repo_root: str | Path | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> CleanRunResult:
        record = self._resolve(ref)
        if record.broken:
            raise AgencyError(
                ErrorCode.RUN_BROKEN,
                "run exists but meta.json is unreadable or invalid",
                details={"repo_id": record.repo_id, "run_id": record.run_id},
            )

        repo_id, run_id = record.repo_id, record.run_id
        meta = self._store.read_meta(repo_id, run_id)
        if meta.archive.archived_at:
            logger.info(
                "run already archived",
                extra={
                    "repo_id": repo_id,
                    "run_id": run_id,
                    "archived_at": meta.archive.archived_at,
                },
            )
            return CleanRunResult(
                archive=ArchiveResult(script_ok=True, tmux_ok=True, delete_ok=True),
                repo_id=repo_id,
                run_id=run_id,
                already_archived=True,
            )
        if not meta.worktree_path or not os.path.isdir(meta.worktree_path):
            raise AgencyError(
                ErrorCode.WORKTREE_MISSING,
                "worktree is missing; nothing to clean",
                details={
                    "repo_id": repo_id,
                    "run_id": run_id,
                    "worktree_path": meta.worktree_path,
                },
            )

        root = Path(repo_root) if repo_root else _recorded_repo_root(record)
        with correlation_scope(repo_id=repo_id, run_id=run_id, operation="clean"):
            with self._lock.held(repo_id, "clean"):
                return await self._clean_locked(meta, root, cancel_token)

    async def _clean_locked(
        self,
        meta: RunMeta,
        repo_root: Path | None,
        cancel_token: CancellationToken | None,
    ) -> CleanRunResult:
        repo_id, run_id = meta.repo_id, meta.run_id
        scripts = load_run_scripts(meta, self._config)
        events_path = self._store.events_path(repo_id, run_id)
        errors: list[str] = []

        self._emit(events_path, meta, EVENT_CLEAN_STARTED, clean_started_data(), errors)
        self._emit(
            events_path,
            meta,
            EVENT_ARCHIVE_STARTED,
            archive_started_data(script=scripts["archive"], worktree_path=meta.worktree_path),
            errors,
        )

        archive_config = ArchiveConfig(
            meta=meta,
            data_dir=self._store.data_dir,
            archive_script=scripts["archive"],
            repo_root=repo_root,
            timeout_seconds=float(scripts["archive_timeout_seconds"]),
            grace_period_seconds=float(scripts["grace_period_seconds"]),
        )
        outcome = await archive(
            archive_config,
            ArchiveDeps(runner=self._runner, sessions=self._sessions),
            self._store,
            cancel_token=cancel_token,
        )
        result = CleanRunResult(
            archive=outcome,
            repo_id=repo_id,
            run_id=run_id,
            event_append_errors=errors,
        )

        if outcome.success():
            self._emit(
                events_path, meta, EVENT_ARCHIVE_FINISHED, archive_finished_data(ok=True), errors
            )
            archived_at = self._now()
            try:
                self._store.update_meta(
                    repo_id, run_id, lambda current: _mark_archived(current, archived_at)
                )
            except AgencyError as exc:
                result.meta_error = exc.message
                logger.error(
                    "failed to mark run archived",
                    extra={"repo_id": repo_id, "run_id": run_id, "error": exc.message},
                )
        else:
            self._emit(
                events_path, meta, EVENT_ARCHIVE_FAILED, archive_failed_data(outcome), errors
            )

        self._emit(
            events_path, meta, EVENT_CLEAN_FINISHED, clean_finished_data(ok=result.ok), errors
        )
        logger.info(
            "clean finished",
            extra={"repo_id": repo_id, "run_id": run_id, "ok": result.ok},
        )
        return result

    def _resolve(self, ref: str) -> RunRecord:
        # Active runs win name matches; archived ones are reachable for a no-op clean.
        try:
            return lookup_run(self._store, ref)
        except AgencyError as exc:
            if exc.code is not ErrorCode.RUN_NOT_FOUND:
                raise
        return lookup_run(self._store, ref, include_archived=True)

    def _emit(
        self,
        path: Path,
        meta: RunMeta,
        name: str,
        data: dict[str, Any],
        errors: list[str],
    ) -> None:
        event = Event(
            repo_id=meta.repo_id,
            run_id=meta.run_id,
            event=name,
            data=data,
            timestamp=self._now(),
        )
        try:
            append_event(path, event)
        except OSError as exc:
            errors.append(f"{name}: {exc}")
            logger.warning("event append failed", extra={"event": name, "error": str(exc)})


def _recorded_repo_root(record: RunRecord) -> Path | None:
    value = (record.repo or {}).get(REPO_ROOT_KEY)
    if isinstance(value, str) and value.strip():
        return Path(value)
    return None


def _mark_archived(meta: RunMeta, archived_at: str) -> None:
    meta.archive.archived_at = archived_at
    meta.flags.abandoned = True


__all__ = ["CleanRunResult", "CleanService"]
