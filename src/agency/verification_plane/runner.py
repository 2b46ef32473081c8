"""
agency — script execution engine

File: src/agency/verification_plane/runner.py

Purpose
- Run one configured shell script for a run under a deadline and an external
  cancellation token, and persist a structured ``ExecutionRecord``.

Functional requirements
- ``sh -lc <script>`` runs in its own session/process group with stdin from the
  null device; stdout and stderr are interleaved into one log file that starts
  with a diagnostic header.
- Process completion races the deadline and the cancellation token; the first
  trigger decides ``timed_out`` vs ``cancelled`` and both escalate identically:
  SIGINT to the process group, a fixed grace period, then SIGKILL to the group.
- Script outcomes (non-zero exit, signal death, timeout, cancellation) are data
  on the record. Only failing to open the log, start the process, or write the
  record is returned as a ``ScriptEngineError``; the record is still written
  best-effort in those cases.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import subprocess
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Final

from agency.constants import DEFAULT_GRACE_PERIOD_SECONDS, DEFAULT_VERIFY_TIMEOUT_SECONDS
from agency.domain.models import ExecutionRecord, format_rfc3339, format_rfc3339_nano
from agency.errors import AgencyError, ErrorCode
from agency.utils.concurrency import CancellationToken, cancel_task
from agency.utils.fs import write_json_atomic
from agency.verification_plane.evidence import derive_ok, derive_summary, read_self_report

logger = logging.getLogger(__name__)

STAGE_LOG_OPEN: Final[str] = "log_open"
STAGE_SPAWN: Final[str] = "spawn"
STAGE_RECORD_WRITE: Final[str] = "record_write"
FORCED_SIGNAL: Final[str] = "SIGKILL"


class ScriptEngineError(AgencyError):
    """Infrastructure failure that kept a script from running or its record from landing."""

    def __init__(self, stage: str, message: str, *, record_path: Path | None = None) -> None:
        self.stage = stage
        details: dict[str, object] = {"stage": stage}
        if record_path is not None:
            details["record_path"] = str(record_path)
        super().__init__(ErrorCode.INTERNAL, message, details=details)


@dataclass(frozen=True, slots=True)
class ScriptRunConfig:
    """Inputs for one script execution.

    ``script`` is the literal configured string and is recorded verbatim.
    ``timeout_seconds`` falls back to ``default_timeout_seconds`` when unset or
    not positive.
    """

    repo_id: str
    run_id: str
    workdir: Path
    script: str
    log_path: Path
    record_path: Path
    env: Mapping[str, str] = field(default_factory=dict)
    timeout_seconds: float | None = None
    default_timeout_seconds: float = DEFAULT_VERIFY_TIMEOUT_SECONDS
    grace_period_seconds: float = DEFAULT_GRACE_PERIOD_SECONDS
    self_report_path: Path | None = None
    label: str = "verify"
    shell: str = "sh"

    @property
    def effective_timeout_seconds(self) -> float:
        if self.timeout_seconds is not None and self.timeout_seconds > 0:
            return float(self.timeout_seconds)
        return float(self.default_timeout_seconds)


@dataclass(frozen=True, slots=True)
class ScriptRunOutcome:
    record: ExecutionRecord
    error: ScriptEngineError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.record.ok


async def run_script(
    config: ScriptRunConfig,
    *,
    cancel_token: CancellationToken | None = None,
) -> ScriptRunOutcome:
    """Execute ``config.script`` and return its record plus any engine error."""

    timeout = config.effective_timeout_seconds
    start_ns = time.time_ns()
    start_mono = time.monotonic()
    record = ExecutionRecord(
        repo_id=config.repo_id,
        run_id=config.run_id,
        script_path=config.script,
        started_at=format_rfc3339_nano(start_ns),
        timeout_ms=int(timeout * 1000),
        log_path=str(config.log_path),
    )

    try:
        config.log_path.parent.mkdir(parents=True, exist_ok=True)
        config.record_path.parent.mkdir(parents=True, exist_ok=True)
        log_handle = config.log_path.open("wb")
    except OSError as exc:
        return _abort(config, record, start_mono, STAGE_LOG_OPEN, f"failed to open log: {exc}")

    with log_handle:
        _write_header(log_handle, config, start_ns)
        try:
            process = await asyncio.create_subprocess_exec(
                config.shell,
                "-lc",
                config.script,
                cwd=str(config.workdir),
                env=dict(config.env),
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            return _abort(
                config,
                record,
                start_mono,
                STAGE_SPAWN,
                f"failed to start {config.label} script: {exc}",
            )

        logger.debug(
            "script started",
            extra={"repo_id": config.repo_id, "run_id": config.run_id, "pid": process.pid},
        )
        timed_out, cancelled = await _race(process, config, timeout, cancel_token)

    returncode = process.returncode
    record.finished_at = format_rfc3339_nano(time.time_ns())
    record.duration_ms = _elapsed_ms(start_mono)
    record.timed_out = timed_out
    record.cancelled = cancelled
    if returncode is not None and returncode >= 0:
        record.exit_code = returncode
    elif returncode is not None:
        record.signal = _signal_name(-returncode)
    if timed_out or cancelled:
        record.signal = FORCED_SIGNAL

    self_report = read_self_report(config.self_report_path)
    if self_report.exists and config.self_report_path is not None:
        record.verify_json_path = str(config.self_report_path)
    if self_report.error and not record.error:
        record.error = self_report.error

    report = self_report.report
    record.ok = derive_ok(timed_out, cancelled, record.exit_code, report)
    record.summary = derive_summary(
        timed_out, cancelled, record.exit_code, report, label=config.label
    )

    try:
        write_json_atomic(config.record_path, record.to_dict())
    except OSError as exc:
        error = ScriptEngineError(
            STAGE_RECORD_WRITE,
            f"failed to write {config.record_path.name}: {exc}",
            record_path=config.record_path,
        )
        return ScriptRunOutcome(record=record, error=error)

    logger.info(
        "script finished",
        extra={
            "repo_id": config.repo_id,
            "run_id": config.run_id,
            "label": config.label,
            "ok": record.ok,
            "exit_code": record.exit_code,
            "signal": record.signal,
            "timed_out": timed_out,
            "cancelled": cancelled,
            "duration_ms": record.duration_ms,
        },
    )
    return ScriptRunOutcome(record=record)


def run_script_sync(
    config: ScriptRunConfig,
    *,
    cancel_token: CancellationToken | None = None,
) -> ScriptRunOutcome:
    """Blocking wrapper for callers outside an event loop."""

    return asyncio.run(run_script(config, cancel_token=cancel_token))


async def _race(
    process: asyncio.subprocess.Process,
    config: ScriptRunConfig,
    timeout: float,
    cancel_token: CancellationToken | None,
) -> tuple[bool, bool]:
    """Return ``(timed_out, cancelled)``; at most one is ``True``."""

    wait_task = asyncio.ensure_future(process.wait())
    triggers: set[asyncio.Future[object]] = {wait_task}
    token_task: asyncio.Task[None] | None = None
    if cancel_token is not None:
        token_task = asyncio.create_task(cancel_token.wait())
        triggers.add(token_task)

    timed_out = False
    cancelled = False
    try:
        done, _ = await asyncio.wait(
            triggers,
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if wait_task not in done:
            if token_task is not None and token_task in done:
                cancelled = True
            else:
                timed_out = True
            logger.info(
                "terminating script process group",
                extra={
                    "repo_id": config.repo_id,
                    "run_id": config.run_id,
                    "reason": "cancelled" if cancelled else "timed_out",
                },
            )
            await _terminate_group(process.pid, config.grace_period_seconds)
            await wait_task
    except BaseException:
        # Interrupted from outside: never leave the group running.
        _signal_group(process.pid, signal.SIGKILL)
        with contextlib.suppress(Exception, asyncio.CancelledError):
            await asyncio.shield(wait_task)
        raise
    finally:
        if token_task is not None:
            await cancel_task(token_task)
    return timed_out, cancelled


async def _terminate_group(pgid: int, grace_period_seconds: float) -> None:
    _signal_group(pgid, signal.SIGINT)
    await asyncio.sleep(max(grace_period_seconds, 0.0))
    _signal_group(pgid, signal.SIGKILL)


def _signal_group(pgid: int, signum: signal.Signals) -> None:
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(pgid, signum)


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"SIG{signum}"


def _write_header(handle: IO[bytes], config: ScriptRunConfig, start_ns: int) -> None:
    started = format_rfc3339(_datetime_from_ns(start_ns))
    header = (
        f"# agency {config.label} log\n"
        f"# timestamp: {started}\n"
        f"# command: {config.shell} -lc {config.script}\n"
        f"# cwd: {config.workdir}\n"
        "# ---\n\n"
    )
    handle.write(header.encode("utf-8"))
    handle.flush()


def _abort(
    config: ScriptRunConfig,
    record: ExecutionRecord,
    start_mono: float,
    stage: str,
    message: str,
) -> ScriptRunOutcome:
    record.error = message
    record.finished_at = format_rfc3339_nano(time.time_ns())
    record.duration_ms = _elapsed_ms(start_mono)
    record.ok = False
    record.summary = derive_summary(False, False, None, None, label=config.label)
    try:
        write_json_atomic(config.record_path, record.to_dict())
    except OSError as exc:
        logger.warning(
            "best-effort record write failed",
            extra={"record_path": str(config.record_path), "error": str(exc)},
        )
    logger.error(
        "script engine failure",
        extra={"repo_id": config.repo_id, "run_id": config.run_id, "stage": stage},
    )
    return ScriptRunOutcome(
        record=record,
        error=ScriptEngineError(stage, message, record_path=config.record_path),
    )


def _elapsed_ms(start_mono: float) -> int:
    return int((time.monotonic() - start_mono) * 1000)


def _datetime_from_ns(epoch_ns: int) -> datetime:
    return datetime.fromtimestamp(epoch_ns / 1_000_000_000, tz=UTC)


__all__ = [
    "FORCED_SIGNAL",
    "STAGE_LOG_OPEN",
    "STAGE_RECORD_WRITE",
    "STAGE_SPAWN",
    "ScriptEngineError",
    "ScriptRunConfig",
    "ScriptRunOutcome",
    "run_script",
    "run_script_sync",
]
