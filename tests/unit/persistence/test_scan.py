"""Unit tests for run discovery."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from agency.persistence.scan import RunRecord, scan_all_runs, scan_repo_runs, sort_run_records

if TYPE_CHECKING:
    from collections.abc import Callable

    from agency.domain.models import RunMeta
    from agency.persistence.store import Store

pytestmark = pytest.mark.unit


def test_empty_data_dir_yields_nothing(store: Store) -> None:
    assert scan_all_runs(store) == []
    assert scan_repo_runs(store, "missing") == []


def test_scan_orders_valid_by_created_at_then_broken_last(
    store: Store, make_run: Callable[..., RunMeta]
) -> None:
    make_run("20260103000000-cccc", repo_id="repo-b", created_at="2026-01-03T00:00:00Z")
    make_run("20260101000000-aaaa", repo_id="repo-a", created_at="2026-01-01T00:00:00Z")
    make_run("20260102000000-bbbb", repo_id="repo-a", created_at="2026-01-01T00:00:00Z")
    store.create_run_dir("repo-a", "20260105000000-zzzz")
    store.create_run_dir("repo-b", "20260104000000-yyyy")
    store.run_meta_path("repo-b", "20260104000000-yyyy").write_text("{nope", encoding="utf-8")

    records = scan_all_runs(store)

    assert [record.run_id for record in records] == [
        "20260101000000-aaaa",
        "20260102000000-bbbb",
        "20260103000000-cccc",
        "20260104000000-yyyy",
        "20260105000000-zzzz",
    ]
    broken = {record.run_id: record for record in records if record.broken}
    assert set(broken) == {"20260104000000-yyyy", "20260105000000-zzzz"}
    assert broken["20260105000000-zzzz"].error == "meta.json missing"
    assert broken["20260104000000-yyyy"].meta is None
    assert broken["20260104000000-yyyy"].to_ref().broken is True


def test_meta_below_minimal_schema_is_broken(
    store: Store, make_run: Callable[..., RunMeta]
) -> None:
    make_run("20260101000000-aaaa", repo_id="repo-a")
    store.run_meta_path("repo-a", "20260101000000-aaaa").write_text(
        '{"schema_version": "", "created_at": "2026-01-01T00:00:00Z"}', encoding="utf-8"
    )
    (record,) = scan_repo_runs(store, "repo-a")
    assert record.broken is True


def test_repo_json_is_joined_best_effort(store: Store, make_run: Callable[..., RunMeta]) -> None:
    make_run(
        "20260101000000-aaaa", repo_id="repo-a", name="alpha", archived_at="2026-01-02T00:00:00Z"
    )
    store.repo_meta_path("repo-a").write_text('{"root_path": "/src/a"}', encoding="utf-8")

    (record,) = scan_repo_runs(store, "repo-a")
    assert record.repo == {"root_path": "/src/a"}
    ref = record.to_ref()
    assert (ref.name, ref.archived, ref.broken) == ("alpha", True, False)


def test_hidden_and_plain_files_are_ignored(store: Store, make_run: Callable[..., RunMeta]) -> None:
    make_run("20260101000000-aaaa", repo_id="repo-a")
    runs_dir = store.runs_dir("repo-a")
    (runs_dir / ".staging").mkdir()
    (runs_dir / "notes.txt").write_text("x", encoding="utf-8")
    assert [record.run_id for record in scan_all_runs(store)] == ["20260101000000-aaaa"]


def test_sort_puts_records_without_meta_last_even_when_not_flagged_broken(
    store: Store, make_run: Callable[..., RunMeta]
) -> None:
    meta = make_run("20260102000000-bbbb", repo_id="repo-a")
    loaded = RunRecord(
        repo_id="repo-a",
        run_id=meta.run_id,
        run_dir=store.run_dir("repo-a", meta.run_id),
        broken=False,
        meta=meta,
    )
    partial = RunRecord(
        repo_id="repo-a",
        run_id="20260101000000-aaaa",
        run_dir=Path("/nonexistent"),
        broken=False,
    )

    ordered = sort_run_records([partial, loaded])

    assert [record.run_id for record in ordered] == [meta.run_id, "20260101000000-aaaa"]
