"""
agency — verify service

File: src/agency/control_plane/verify_service.py

Purpose
- Run a run's configured verify script end to end: resolution, workspace
  checks, repo lock, engine execution, metadata update, and event logging.

Functional requirements
- A failing, timed-out, or cancelled script is a normal result, never an
  exception; the verdict is on ``VerifyRunResult.record``.
- ``meta.json`` keeps ``last_verify_at`` current and owns the attention flag:
  a failed verify sets ``needs_attention`` with reason ``verify_failed``; a
  passing verify clears it only when that was the reason.
- Event appends are best-effort. Failures are collected, returned, and folded
  into the record's ``error`` field.
- Metadata update failure raises ``E_PERSIST_FAILED``; an engine failure raises
  ``E_INTERNAL``. Both carry the partial result.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from agency.config.schema import default_config
from agency.constants import NEEDS_ATTENTION_VERIFY_FAILED
from agency.control_plane.run_lookup import lookup_run
from agency.control_plane.script_env import (
    build_script_env,
    load_run_scripts,
    self_report_path,
)
from agency.domain.models import Event, ExecutionRecord, RunMeta, utc_now_rfc3339
from agency.errors import AgencyError, ErrorCode
from agency.observability.logging import correlation_scope
from agency.persistence.event_log import (
    EVENT_VERIFY_FINISHED,
    EVENT_VERIFY_STARTED,
    append_event,
    verify_finished_data,
    verify_started_data,
)
from agency.persistence.repo_lock import RepoLock
from agency.persistence.store import Store
from agency.verification_plane.runner import ScriptRunConfig, run_script

if TYPE_CHECKING:
    from agency.utils.concurrency import CancellationToken

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class VerifyRunResult:
    record: ExecutionRecord
    repo_id: str
    run_id: str
    record_path: Path
    event_append_errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.record.ok


class VerifyRunError(AgencyError):
    """Verify ran (at least partly) but persisting its outcome failed."""

    def __init__(self, code: ErrorCode, message: str, result: VerifyRunResult) -> None:
        self.result = result
        super().__init__(
            code,
            message,
            details={"repo_id": result.repo_id, "run_id": result.run_id},
        )


class VerifyService:
    """Runs verify scripts for runs stored under ``data_dir``."""

    def __init__(
        self,
        data_dir: str | Path,
        *,
        config: Mapping[str, Any] | None = None,
        now: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self._store = Store(data_dir)
        self._lock = RepoLock(data_dir, now=now)
        self._config = dict(config) if config is not None else dict(default_config())
        self._now = now

    @property
    def store(self) -> Store:
        return self._store

    async def verify_run(
        self,
        ref: str,
        *,
        timeout_seconds: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> VerifyRunResult:
        record = lookup_run(self._store, ref)
        if record.broken:
            raise AgencyError(
                ErrorCode.RUN_BROKEN,
                "run exists but meta.json is unreadable or invalid",
                details={"repo_id": record.repo_id, "run_id": record.run_id},
            )

        repo_id, run_id = record.repo_id, record.run_id
        meta = self._store.read_meta(repo_id, run_id)
        _require_live_worktree(meta)

        with correlation_scope(repo_id=repo_id, run_id=run_id, operation="verify"):
            with self._lock.held(repo_id, "verify"):
                return await self._verify_locked(
                    meta,
                    timeout_seconds=timeout_seconds,
                    cancel_token=cancel_token,
                )

    async def _verify_locked(
        self,
        meta: RunMeta,
        *,
        timeout_seconds: float | None,
        cancel_token: CancellationToken | None,
    ) -> VerifyRunResult:
        repo_id, run_id = meta.repo_id, meta.run_id
        scripts = load_run_scripts(meta, self._config)
        script = scripts["verify"]
        if not script.strip():
            raise AgencyError(
                ErrorCode.INVALID_CONFIG,
                "no verify script configured; set [scripts] verify in agency.toml",
                details={"repo_id": repo_id, "run_id": run_id},
            )

        store = self._store
        log_path = store.verify_log_path(repo_id, run_id)
        record_path = store.verify_record_path(repo_id, run_id)
        events_path = store.events_path(repo_id, run_id)
        report_path = self_report_path(meta.worktree_path)

        run_config = ScriptRunConfig(
            repo_id=repo_id,
            run_id=run_id,
            workdir=Path(meta.worktree_path),
            script=script,
            log_path=log_path,
            record_path=record_path,
            env=build_script_env(meta, data_dir=store.data_dir),
            timeout_seconds=timeout_seconds,
            default_timeout_seconds=float(scripts["verify_timeout_seconds"]),
            grace_period_seconds=float(scripts["grace_period_seconds"]),
            self_report_path=report_path,
            label="verify",
        )

        event_errors: list[str] = []
        self._emit(
            events_path,
            repo_id,
            run_id,
            EVENT_VERIFY_STARTED,
            verify_started_data(
                timeout_ms=int(run_config.effective_timeout_seconds * 1000),
                log_path=log_path,
                verify_json_path=report_path,
            ),
            event_errors,
        )

        outcome = await run_script(run_config, cancel_token=cancel_token)
        record = outcome.record
        result = VerifyRunResult(
            record=record,
            repo_id=repo_id,
            run_id=run_id,
            record_path=record_path,
            event_append_errors=event_errors,
        )

        meta_error: AgencyError | None = None
        try:
            store.update_meta(repo_id, run_id, lambda current: _apply_verdict(current, record))
        except AgencyError as exc:
            meta_error = exc

        self._emit(
            events_path,
            repo_id,
            run_id,
            EVENT_VERIFY_FINISHED,
            verify_finished_data(record, verify_record_path=record_path),
            event_errors,
        )

        if event_errors:
            store.augment_record_error(
                record_path, "events append failed: " + "; ".join(event_errors)
            )
        if meta_error is not None:
            store.augment_record_error(record_path, f"meta update failed: {meta_error.message}")
            raise VerifyRunError(
                ErrorCode.PERSIST_FAILED,
                f"failed to update meta.json: {meta_error.message}",
                result,
            ) from meta_error
        if outcome.error is not None:
            raise VerifyRunError(
                ErrorCode.INTERNAL,
                f"verify runner failed: {outcome.error.message}",
                result,
            ) from outcome.error

        logger.info(
            "verify finished",
            extra={"repo_id": repo_id, "run_id": run_id, "ok": record.ok},
        )
        return result

    def _emit(
        self,
        path: Path,
        repo_id: str,
        run_id: str,
        name: str,
        data: dict[str, Any],
        errors: list[str],
    ) -> None:
        event = Event(repo_id=repo_id, run_id=run_id, event=name, data=data, timestamp=self._now())
        try:
            append_event(path, event)
        except OSError as exc:
            errors.append(f"{name}: {exc}")
            logger.warning(
                "event append failed",
                extra={"repo_id": repo_id, "run_id": run_id, "event": name, "error": str(exc)},
            )


def _require_live_worktree(meta: RunMeta) -> None:
    details = {"repo_id": meta.repo_id, "run_id": meta.run_id}
    if not meta.worktree_path:
        raise AgencyError(
            ErrorCode.STORE_CORRUPT,
            "meta.json has empty worktree_path",
            details=details,
        )
    if meta.is_archived or not os.path.exists(meta.worktree_path):
        raise AgencyError(
            ErrorCode.WORKSPACE_ARCHIVED,
            "run exists but worktree missing or archived; cannot verify",
            details={**details, "worktree_path": meta.worktree_path},
        )


def _apply_verdict(meta: RunMeta, record: ExecutionRecord) -> None:
    if record.started_at:
        meta.last_verify_at = record.finished_at
    flags = meta.flags
    if record.ok:
        if flags.needs_attention and flags.needs_attention_reason == NEEDS_ATTENTION_VERIFY_FAILED:
            flags.needs_attention = False
            flags.needs_attention_reason = ""
    else:
        flags.needs_attention = True
        flags.needs_attention_reason = NEEDS_ATTENTION_VERIFY_FAILED


__all__ = ["VerifyRunError", "VerifyRunResult", "VerifyService"]
