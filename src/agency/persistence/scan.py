"""Corruption-tolerant discovery of runs on disk.

Each run directory is classified on its own: a missing, unreadable, unparsable
or under-specified ``meta.json`` marks that run broken and the walk continues.
Listing order is stable: valid runs by ``created_at`` ascending (run id breaks
ties), broken runs last by ``(run_id, repo_id)``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from agency.constants import META_FILENAME
from agency.domain.models import RunMeta, RunRef
from agency.utils.fs import read_json_object

if TYPE_CHECKING:
    from pathlib import Path

    from agency.persistence.store import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RunRecord:
    """One discovered run directory."""

    repo_id: str
    run_id: str
    run_dir: Path
    broken: bool
    meta: RunMeta | None = None
    repo: dict[str, Any] | None = None
    error: str | None = None

    @property
    def name(self) -> str:
        return self.meta.name if self.meta is not None else ""

    @property
    def archived(self) -> bool:
        return self.meta is not None and self.meta.is_archived

    def to_ref(self) -> RunRef:
        return RunRef(
            repo_id=self.repo_id,
            run_id=self.run_id,
            name=self.name,
            broken=self.broken,
            archived=self.archived,
        )


def scan_all_runs(store: Store) -> list[RunRecord]:
    """Discover runs across every repo under the data dir."""

    repos_dir = store.repos_dir()
    records: list[RunRecord] = []
    for repo_dir in _child_dirs(repos_dir):
        records.extend(_scan_repo_dir(store, repo_dir.name))
    return sort_run_records(records)


def scan_repo_runs(store: Store, repo_id: str) -> list[RunRecord]:
    """Discover runs for a single repo; a missing repo yields an empty list."""

    return sort_run_records(_scan_repo_dir(store, repo_id))


def sort_run_records(records: list[RunRecord]) -> list[RunRecord]:
    valid: list[tuple[RunMeta, RunRecord]] = []
    broken: list[RunRecord] = []
    for record in records:
        if record.broken or record.meta is None:
            broken.append(record)
        else:
            valid.append((record.meta, record))
    valid.sort(key=_valid_sort_key)
    broken.sort(key=lambda record: (record.run_id, record.repo_id))
    return [*(record for _meta, record in valid), *broken]


def _valid_sort_key(entry: tuple[RunMeta, RunRecord]) -> tuple[datetime, str, str]:
    meta, record = entry
    return (meta.created_at_datetime, record.run_id, record.repo_id)


def _scan_repo_dir(store: Store, repo_id: str) -> list[RunRecord]:
    runs_dir = store.runs_dir(repo_id)
    repo_payload: dict[str, Any] | None = None
    repo_loaded = False
    records: list[RunRecord] = []

    for run_dir in _child_dirs(runs_dir):
        if not repo_loaded:
            repo_payload = store.read_repo_meta(repo_id)
            repo_loaded = True
        records.append(_classify(repo_id, run_dir, repo_payload))
    return records


def _classify(repo_id: str, run_dir: Path, repo_payload: dict[str, Any] | None) -> RunRecord:
    run_id = run_dir.name
    meta_path = run_dir / META_FILENAME
    try:
        meta = RunMeta.from_dict(read_json_object(meta_path))
    except FileNotFoundError:
        return _broken(repo_id, run_dir, repo_payload, "meta.json missing")
    except (OSError, ValueError) as exc:
        return _broken(repo_id, run_dir, repo_payload, str(exc))

    return RunRecord(
        repo_id=repo_id,
        run_id=run_id,
        run_dir=run_dir,
        broken=False,
        meta=meta,
        repo=repo_payload,
    )


def _broken(
    repo_id: str,
    run_dir: Path,
    repo_payload: dict[str, Any] | None,
    reason: str,
) -> RunRecord:
    logger.debug(
        "run classified as broken",
        extra={"repo_id": repo_id, "run_id": run_dir.name, "reason": reason},
    )
    return RunRecord(
        repo_id=repo_id,
        run_id=run_dir.name,
        run_dir=run_dir,
        broken=True,
        repo=repo_payload,
        error=reason,
    )


def _child_dirs(parent: Path) -> list[Path]:
    try:
        entries = sorted(parent.iterdir(), key=lambda item: item.name)
    except FileNotFoundError:
        return []
    except OSError as exc:
        logger.warning(
            "skipping unreadable directory",
            extra={"path": str(parent), "error": str(exc)},
        )
        return []
    return [entry for entry in entries if entry.is_dir() and not entry.name.startswith(".")]


__all__ = [
    "RunRecord",
    "scan_all_runs",
    "scan_repo_runs",
    "sort_run_records",
]
