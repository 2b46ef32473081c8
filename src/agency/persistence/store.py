"""
agency — on-disk run store

File: src/agency/persistence/store.py

Purpose
- Own the canonical path layout under the data dir and every structured file write.

Layout
    <data_dir>/repos/<repo_id>/repo.json
    <data_dir>/repos/<repo_id>/.lock
    <data_dir>/repos/<repo_id>/worktrees/<run_id>/
    <data_dir>/repos/<repo_id>/runs/<run_id>/meta.json
    <data_dir>/repos/<repo_id>/runs/<run_id>/events.jsonl
    <data_dir>/repos/<repo_id>/runs/<run_id>/verify_record.json
    <data_dir>/repos/<repo_id>/runs/<run_id>/archive_record.json
    <data_dir>/repos/<repo_id>/runs/<run_id>/logs/{verify,archive}.log

Functional requirements
- Structured writes are temp-file-plus-rename (``agency.utils.fs.atomic_write``).
- Run directories are created exclusively and fail distinctly on collision.
- ``update_meta`` is a single read-modify-write; callers needing several mutations
  to be consistent hold the repo lock for the whole sequence.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from agency.constants import (
    ARCHIVE_LOG_FILENAME,
    ARCHIVE_RECORD_FILENAME,
    EVENTS_FILENAME,
    LOCK_FILENAME,
    LOGS_DIR,
    META_FILENAME,
    REPO_META_FILENAME,
    REPOS_DIR,
    RUNS_DIR,
    VERIFY_LOG_FILENAME,
    VERIFY_RECORD_FILENAME,
    WORKTREES_DIR,
)
from agency.domain.models import ExecutionRecord, RunMeta
from agency.errors import AgencyError, ErrorCode
from agency.utils.fs import read_json_object, write_json_atomic

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class Store:
    """Filesystem-backed run store rooted at ``data_dir``."""

    def __init__(self, data_dir: str | Path) -> None:
        self._data_dir = Path(data_dir).expanduser()

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def repos_dir(self) -> Path:
        return self._data_dir / REPOS_DIR

    def repo_dir(self, repo_id: str) -> Path:
        return self.repos_dir() / _segment(repo_id, "repo_id")

    def repo_meta_path(self, repo_id: str) -> Path:
        return self.repo_dir(repo_id) / REPO_META_FILENAME

    def lock_path(self, repo_id: str) -> Path:
        return self.repo_dir(repo_id) / LOCK_FILENAME

    def worktrees_dir(self, repo_id: str) -> Path:
        return self.repo_dir(repo_id) / WORKTREES_DIR

    def runs_dir(self, repo_id: str) -> Path:
        return self.repo_dir(repo_id) / RUNS_DIR

    def run_dir(self, repo_id: str, run_id: str) -> Path:
        return self.runs_dir(repo_id) / _segment(run_id, "run_id")

    def run_meta_path(self, repo_id: str, run_id: str) -> Path:
        return self.run_dir(repo_id, run_id) / META_FILENAME

    def run_logs_dir(self, repo_id: str, run_id: str) -> Path:
        return self.run_dir(repo_id, run_id) / LOGS_DIR

    def verify_log_path(self, repo_id: str, run_id: str) -> Path:
        return self.run_logs_dir(repo_id, run_id) / VERIFY_LOG_FILENAME

    def archive_log_path(self, repo_id: str, run_id: str) -> Path:
        return self.run_logs_dir(repo_id, run_id) / ARCHIVE_LOG_FILENAME

    def verify_record_path(self, repo_id: str, run_id: str) -> Path:
        return self.run_dir(repo_id, run_id) / VERIFY_RECORD_FILENAME

    def archive_record_path(self, repo_id: str, run_id: str) -> Path:
        return self.run_dir(repo_id, run_id) / ARCHIVE_RECORD_FILENAME

    def events_path(self, repo_id: str, run_id: str) -> Path:
        return self.run_dir(repo_id, run_id) / EVENTS_FILENAME

    # ------------------------------------------------------------------
    # Run directories and metadata
    # ------------------------------------------------------------------

    def create_run_dir(self, repo_id: str, run_id: str) -> Path:
        """Create ``runs/<run_id>`` exclusively, plus its ``logs`` directory."""

        run_dir = self.run_dir(repo_id, run_id)
        try:
            run_dir.parent.mkdir(parents=True, exist_ok=True)
            run_dir.mkdir()
        except FileExistsError as exc:
            raise AgencyError(
                ErrorCode.RUN_DIR_EXISTS,
                f"run directory already exists: {run_dir}",
                details={"repo_id": repo_id, "run_id": run_id, "path": str(run_dir)},
            ) from exc
        except OSError as exc:
            raise AgencyError(
                ErrorCode.RUN_DIR_CREATE_FAILED,
                f"failed to create run directory {run_dir}: {exc}",
                details={"repo_id": repo_id, "run_id": run_id, "path": str(run_dir)},
            ) from exc

        try:
            (run_dir / LOGS_DIR).mkdir()
        except OSError as exc:
            raise AgencyError(
                ErrorCode.RUN_DIR_CREATE_FAILED,
                f"failed to create logs directory under {run_dir}: {exc}",
                details={"repo_id": repo_id, "run_id": run_id, "path": str(run_dir)},
            ) from exc
        return run_dir

    def write_meta(self, meta: RunMeta) -> Path:
        path = self.run_meta_path(meta.repo_id, meta.run_id)
        try:
            write_json_atomic(path, meta.to_dict())
        except OSError as exc:
            raise AgencyError(
                ErrorCode.META_WRITE_FAILED,
                f"failed to write {path}: {exc}",
                details={"repo_id": meta.repo_id, "run_id": meta.run_id, "path": str(path)},
            ) from exc
        return path

    def read_meta(self, repo_id: str, run_id: str) -> RunMeta:
        path = self.run_meta_path(repo_id, run_id)
        try:
            payload = read_json_object(path)
        except FileNotFoundError as exc:
            raise AgencyError(
                ErrorCode.RUN_NOT_FOUND,
                f"run metadata not found: {path}",
                details={"repo_id": repo_id, "run_id": run_id},
            ) from exc
        except (OSError, ValueError) as exc:
            raise AgencyError(
                ErrorCode.STORE_CORRUPT,
                f"unreadable run metadata {path}: {exc}",
                details={"repo_id": repo_id, "run_id": run_id, "path": str(path)},
            ) from exc

        try:
            return RunMeta.from_dict(payload)
        except ValueError as exc:
            raise AgencyError(
                ErrorCode.STORE_CORRUPT,
                f"invalid run metadata {path}: {exc}",
                details={"repo_id": repo_id, "run_id": run_id, "path": str(path)},
            ) from exc

    def update_meta(
        self,
        repo_id: str,
        run_id: str,
        mutate: Callable[[RunMeta], None],
    ) -> RunMeta:
        """Read ``meta.json``, apply ``mutate`` in place, and write it back atomically."""

        meta = self.read_meta(repo_id, run_id)
        mutate(meta)
        self.write_meta(meta)
        return meta

    def read_repo_meta(self, repo_id: str) -> dict[str, Any] | None:
        """Best-effort read of ``repo.json``; any failure yields ``None``."""

        path = self.repo_meta_path(repo_id)
        try:
            return read_json_object(path)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.debug(
                "ignoring unreadable repo metadata",
                extra={"path": str(path), "error": str(exc)},
            )
            return None

    # ------------------------------------------------------------------
    # Execution records
    # ------------------------------------------------------------------

    def write_execution_record(self, path: str | Path, record: ExecutionRecord) -> None:
        write_json_atomic(path, record.to_dict())

    def read_execution_record(self, path: str | Path) -> ExecutionRecord | None:
        """Return the record at ``path``; ``None`` when it was never written."""

        target = Path(path)
        try:
            payload = read_json_object(target)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            raise AgencyError(
                ErrorCode.STORE_CORRUPT,
                f"unreadable execution record {target}: {exc}",
                details={"path": str(target)},
            ) from exc
        try:
            return ExecutionRecord.from_dict(payload)
        except ValueError as exc:
            raise AgencyError(
                ErrorCode.STORE_CORRUPT,
                f"invalid execution record {target}: {exc}",
                details={"path": str(target)},
            ) from exc

    def augment_record_error(self, path: str | Path, message: str) -> bool:
        """Append ``message`` to the record's ``error`` field, best-effort.

        An existing error is kept and ``message`` follows it after ``"; "``.
        Returns ``False`` (and logs) when the record cannot be read or rewritten.
        """

        try:
            record = self.read_execution_record(path)
        except AgencyError as exc:
            logger.warning(
                "cannot augment execution record",
                extra={"path": str(path), "error": str(exc)},
            )
            return False
        if record is None:
            return False

        record.error = append_error(record.error, message)
        try:
            self.write_execution_record(path, record)
        except OSError as exc:
            logger.warning(
                "cannot augment execution record",
                extra={"path": str(path), "error": str(exc)},
            )
            return False
        return True


def append_error(existing: str | None, message: str) -> str:
    if existing:
        return f"{existing}; {message}"
    return message


def _segment(value: str, label: str) -> str:
    if not value or value in {".", ".."} or "/" in value or "\x00" in value:
        raise AgencyError(
            ErrorCode.STORE_CORRUPT,
            f"invalid {label} for a store path: {value!r}",
            details={label: value},
        )
    return value


__all__ = ["Store", "append_error"]
