"""Unit tests for the on-disk run store."""

from __future__ import annotations

import json
import os
from typing import TYPE_CHECKING

import pytest

from agency.domain.models import ExecutionRecord, RunMeta
from agency.errors import AgencyError, ErrorCode
from agency.persistence.store import Store, append_error

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

pytestmark = pytest.mark.unit

RUN_ID = "20260101120000-ab12"


def test_layout_paths(store: Store) -> None:
    run_dir = store.data_dir / "repos" / "repo-1" / "runs" / RUN_ID
    assert store.run_dir("repo-1", RUN_ID) == run_dir
    assert store.run_meta_path("repo-1", RUN_ID) == run_dir / "meta.json"
    assert store.events_path("repo-1", RUN_ID) == run_dir / "events.jsonl"
    assert store.verify_record_path("repo-1", RUN_ID) == run_dir / "verify_record.json"
    assert store.archive_record_path("repo-1", RUN_ID) == run_dir / "archive_record.json"
    assert store.verify_log_path("repo-1", RUN_ID) == run_dir / "logs" / "verify.log"
    assert store.archive_log_path("repo-1", RUN_ID) == run_dir / "logs" / "archive.log"
    assert store.worktrees_dir("repo-1") == store.data_dir / "repos" / "repo-1" / "worktrees"
    assert store.lock_path("repo-1") == store.data_dir / "repos" / "repo-1" / ".lock"


@pytest.mark.parametrize("bad", ["", ".", "..", "a/b"])
def test_path_segments_are_validated(store: Store, bad: str) -> None:
    with pytest.raises(AgencyError) as excinfo:
        store.run_dir("repo-1", bad)
    assert excinfo.value.code is ErrorCode.STORE_CORRUPT


def test_create_run_dir_is_exclusive(store: Store) -> None:
    run_dir = store.create_run_dir("repo-1", RUN_ID)
    assert (run_dir / "logs").is_dir()
    with pytest.raises(AgencyError) as excinfo:
        store.create_run_dir("repo-1", RUN_ID)
    assert excinfo.value.code is ErrorCode.RUN_DIR_EXISTS


def test_create_run_dir_failure_code(tmp_path: Path) -> None:
    blocker = tmp_path / "data"
    blocker.write_text("not a directory")
    with pytest.raises(AgencyError) as excinfo:
        Store(blocker).create_run_dir("repo-1", RUN_ID)
    assert excinfo.value.code is ErrorCode.RUN_DIR_CREATE_FAILED


def test_meta_write_read_update(store: Store, make_run: Callable[..., RunMeta]) -> None:
    meta = make_run(RUN_ID, repo_id="repo-1", name="fix-login")
    assert store.read_meta("repo-1", RUN_ID) == meta

    path = store.run_meta_path("repo-1", RUN_ID)
    raw = json.loads(path.read_text(encoding="utf-8"))
    raw["added_by_newer_writer"] = True
    path.write_text(json.dumps(raw), encoding="utf-8")

    def mutate(current: RunMeta) -> None:
        current.last_verify_at = "2026-01-01T13:00:00Z"

    updated = store.update_meta("repo-1", RUN_ID, mutate)
    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert updated.last_verify_at == "2026-01-01T13:00:00Z"
    assert on_disk["last_verify_at"] == "2026-01-01T13:00:00Z"
    assert on_disk["added_by_newer_writer"] is True
    assert path.read_text(encoding="utf-8").endswith("\n")
    assert not [item for item in path.parent.iterdir() if item.name.endswith(".tmp")]


def test_read_meta_missing_and_corrupt(store: Store) -> None:
    with pytest.raises(AgencyError) as missing:
        store.read_meta("repo-1", RUN_ID)
    assert missing.value.code is ErrorCode.RUN_NOT_FOUND

    store.create_run_dir("repo-1", RUN_ID)
    store.run_meta_path("repo-1", RUN_ID).write_text("{", encoding="utf-8")
    with pytest.raises(AgencyError) as corrupt:
        store.read_meta("repo-1", RUN_ID)
    assert corrupt.value.code is ErrorCode.STORE_CORRUPT


def test_write_meta_failure_code(store: Store) -> None:
    meta = RunMeta(run_id=RUN_ID, repo_id="repo-1", created_at="2026-01-01T12:00:00Z")
    store.create_run_dir("repo-1", RUN_ID)
    store.run_meta_path("repo-1", RUN_ID).mkdir()
    with pytest.raises(AgencyError) as excinfo:
        store.write_meta(meta)
    assert excinfo.value.code is ErrorCode.META_WRITE_FAILED



def test_failed_meta_rewrite_leaves_previous_meta_intact(
    store: Store, make_run: Callable[..., RunMeta], monkeypatch: pytest.MonkeyPatch
) -> None:
    make_run(RUN_ID, repo_id="repo-1", name="fix-login")
    path = store.run_meta_path("repo-1", RUN_ID)
    before = path.read_bytes()

    def _fail_replace(*_args: object) -> None:
        raise OSError("simulated crash before rename")

    monkeypatch.setattr(os, "replace", _fail_replace)
    with pytest.raises(AgencyError) as excinfo:
        store.update_meta(
            "repo-1", RUN_ID, lambda current: setattr(current, "name", "renamed")
        )
    monkeypatch.undo()

    assert excinfo.value.code is ErrorCode.META_WRITE_FAILED
    assert path.read_bytes() == before
    assert store.read_meta("repo-1", RUN_ID).name == "fix-login"
    assert not [item for item in path.parent.iterdir() if item.name.endswith(".tmp")]

def test_augment_record_error_appends(store: Store) -> None:
    path = store.verify_record_path("repo-1", RUN_ID)
    record = ExecutionRecord(repo_id="repo-1", run_id=RUN_ID, script_path="v", error="boom")
    store.write_execution_record(path, record)

    assert store.augment_record_error(path, "events append failed: a; b") is True
    reread = store.read_execution_record(path)
    assert reread is not None
    assert reread.error == "boom; events append failed: a; b"


def test_augment_record_error_is_best_effort(store: Store) -> None:
    path = store.verify_record_path("repo-1", RUN_ID)
    assert store.augment_record_error(path, "x") is False
    path.parent.mkdir(parents=True)
    path.write_text("garbage", encoding="utf-8")
    assert store.augment_record_error(path, "x") is False


def test_read_repo_meta_is_best_effort(store: Store) -> None:
    assert store.read_repo_meta("repo-1") is None
    path = store.repo_meta_path("repo-1")
    path.parent.mkdir(parents=True)
    path.write_text("[]", encoding="utf-8")
    assert store.read_repo_meta("repo-1") is None
    path.write_text('{"root_path": "/src/app"}', encoding="utf-8")
    assert store.read_repo_meta("repo-1") == {"root_path": "/src/app"}


def test_append_error() -> None:
    assert append_error(None, "b") == "b"
    assert append_error("", "b") == "b"
    assert append_error("a", "b") == "a; b"
