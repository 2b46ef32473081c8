"""Unit tests for the clean service and its archive pipeline (fake tmux and git)."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest

from agency.control_plane.archive_pipeline import NO_SCRIPT_REASON
from agency.control_plane.clean_service import CleanService
from agency.errors import AgencyError, ErrorCode
from agency.persistence.event_log import (
    EVENT_ARCHIVE_FAILED,
    EVENT_ARCHIVE_FINISHED,
    EVENT_ARCHIVE_STARTED,
    EVENT_CLEAN_FINISHED,
    EVENT_CLEAN_STARTED,
    read_events,
)
from agency.persistence.repo_lock import RepoLock, RepoLockedError

if TYPE_CHECKING:
    from collections.abc import Callable

    from agency.domain.models import RunMeta
    from agency.persistence.store import Store
    from tests.conftest import FakeCommandRunner, FakeSessions

pytestmark = pytest.mark.unit

GIT_REMOVE = ("git", "worktree", "remove")


def _service(
    store: Store,
    config: dict[str, Any],
    runner: FakeCommandRunner,
    sessions: FakeSessions,
) -> CleanService:
    return CleanService(
        store.data_dir,
        config=config,
        runner=runner,
        sessions=sessions,
        now=lambda: "2026-01-05T00:00:00Z",
    )


@pytest.mark.asyncio
async def test_clean_runs_every_step_and_marks_archived(
    store: Store,
    make_run: Callable[..., RunMeta],
    fast_config: dict[str, Any],
    fake_runner: FakeCommandRunner,
    fake_sessions: FakeSessions,
) -> None:
    meta = make_run(archive_script='echo "archiving $AGENCY_RUN_ID"')
    fake_sessions.live.add(meta.tmux_session_name)

    result = await _service(store, fast_config, fake_runner, fake_sessions).clean_run(
        meta.run_id
    )

    assert result.ok is True
    assert result.to_error() is None
    assert fake_sessions.killed == [meta.tmux_session_name]
    assert not Path(meta.worktree_path).exists()
    assert fake_runner.calls == []

    updated = store.read_meta(meta.repo_id, meta.run_id)
    assert updated.archive.archived_at == "2026-01-05T00:00:00Z"
    assert updated.flags.abandoned is True

    log = store.archive_log_path(meta.repo_id, meta.run_id).read_text(encoding="utf-8")
    assert f"archiving {meta.run_id}" in log

    events = read_events(store.events_path(meta.repo_id, meta.run_id))
    assert [event.event for event in events] == [
        EVENT_CLEAN_STARTED,
        EVENT_ARCHIVE_STARTED,
        EVENT_ARCHIVE_FINISHED,
        EVENT_CLEAN_FINISHED,
    ]
    assert events[-1].data == {"ok": True}


@pytest.mark.asyncio
async def test_failed_script_still_kills_and_deletes(
    store: Store,
    make_run: Callable[..., RunMeta],
    fast_config: dict[str, Any],
    fake_runner: FakeCommandRunner,
    fake_sessions: FakeSessions,
) -> None:
    meta = make_run(archive_script="exit 3")
    fake_sessions.live.add(meta.tmux_session_name)

    result = await _service(store, fast_config, fake_runner, fake_sessions).clean_run(
        meta.run_id
    )

    archive = result.archive
    assert (archive.script_ok, archive.tmux_ok, archive.delete_ok) == (False, True, True)
    assert archive.script_reason == "archive failed (exit 3)"
    assert not Path(meta.worktree_path).exists()
    assert result.ok is False

    error = result.to_error()
    assert error is not None
    assert error.code is ErrorCode.ARCHIVE_FAILED
    assert "script failed (archive failed (exit 3))" in error.message

    assert store.read_meta(meta.repo_id, meta.run_id).is_archived is False
    events = read_events(store.events_path(meta.repo_id, meta.run_id))
    assert [event.event for event in events][-2:] == [EVENT_ARCHIVE_FAILED, EVENT_CLEAN_FINISHED]
    assert events[-2].data["script_ok"] is False


@pytest.mark.asyncio
async def test_missing_archive_script_fails_but_tears_down(
    store: Store,
    make_run: Callable[..., RunMeta],
    fast_config: dict[str, Any],
    fake_runner: FakeCommandRunner,
    fake_sessions: FakeSessions,
) -> None:
    meta = make_run()

    result = await _service(store, fast_config, fake_runner, fake_sessions).clean_run(
        meta.run_id
    )

    assert result.archive.script_ok is False
    assert result.archive.script_reason == NO_SCRIPT_REASON
    assert result.archive.tmux_ok is True
    assert result.archive.delete_ok is True


@pytest.mark.asyncio
async def test_session_kill_failure_does_not_fail_clean(
    store: Store,
    make_run: Callable[..., RunMeta],
    fast_config: dict[str, Any],
    fake_runner: FakeCommandRunner,
    fake_sessions: FakeSessions,
) -> None:
    meta = make_run(archive_script="true")
    fake_sessions.failure = "tmux kill-session failed (exit=1): server exited"

    result = await _service(store, fast_config, fake_runner, fake_sessions).clean_run(
        meta.run_id
    )

    assert result.ok is True
    assert result.archive.tmux_ok is False
    assert "server exited" in result.archive.tmux_reason


@pytest.mark.asyncio
async def test_git_worktree_remove_is_tried_first(
    store: Store,
    make_run: Callable[..., RunMeta],
    fast_config: dict[str, Any],
    fake_runner: FakeCommandRunner,
    fake_sessions: FakeSessions,
    tmp_path: Path,
) -> None:
    meta = make_run(archive_script="true")

    def _git(argv: tuple[str, ...]) -> None:
        if argv[:3] == GIT_REMOVE:
            shutil.rmtree(argv[-1])

    fake_runner.on_run = _git
    result = await _service(store, fast_config, fake_runner, fake_sessions).clean_run(
        meta.run_id, repo_root=tmp_path / "repo"
    )

    assert result.ok is True
    assert fake_runner.calls == [GIT_REMOVE + ("--force", meta.worktree_path)]


@pytest.mark.asyncio
async def test_recorded_repo_root_and_guarded_fallback(
    store: Store,
    make_run: Callable[..., RunMeta],
    fast_config: dict[str, Any],
    fake_runner: FakeCommandRunner,
    fake_sessions: FakeSessions,
) -> None:
    meta = make_run(archive_script="true")
    store.repo_meta_path(meta.repo_id).write_text('{"root_path": "/src/repo"}', encoding="utf-8")

    # git reports success but leaves the directory behind
    result = await _service(store, fast_config, fake_runner, fake_sessions).clean_run(
        meta.run_id
    )

    assert [call[:3] for call in fake_runner.calls] == [GIT_REMOVE]
    assert result.archive.delete_ok is True
    assert not Path(meta.worktree_path).exists()


@pytest.mark.asyncio
async def test_worktree_outside_prefix_is_never_deleted(
    store: Store,
    make_run: Callable[..., RunMeta],
    fast_config: dict[str, Any],
    fake_runner: FakeCommandRunner,
    fake_sessions: FakeSessions,
    tmp_path: Path,
) -> None:
    outside = tmp_path / "elsewhere" / "wt"
    meta = make_run(worktree_path=str(outside), archive_script="true")

    result = await _service(store, fast_config, fake_runner, fake_sessions).clean_run(
        meta.run_id
    )

    assert result.archive.delete_ok is False
    assert "refusing to delete" in result.archive.delete_reason
    assert outside.is_dir()
    assert store.read_meta(meta.repo_id, meta.run_id).is_archived is False


@pytest.mark.asyncio
async def test_missing_worktree_and_broken_run_are_rejected(
    store: Store,
    make_run: Callable[..., RunMeta],
    fast_config: dict[str, Any],
    fake_runner: FakeCommandRunner,
    fake_sessions: FakeSessions,
) -> None:
    missing = make_run(with_worktree=False)
    store.create_run_dir("repo-b", "20260102120000-cd34")
    store.run_meta_path("repo-b", "20260102120000-cd34").write_text("{", encoding="utf-8")
    service = _service(store, fast_config, fake_runner, fake_sessions)

    with pytest.raises(AgencyError) as excinfo:
        await service.clean_run(missing.run_id)
    assert excinfo.value.code is ErrorCode.WORKTREE_MISSING

    with pytest.raises(AgencyError) as excinfo:
        await service.clean_run("20260102120000-cd34")
    assert excinfo.value.code is ErrorCode.RUN_BROKEN


@pytest.mark.asyncio
async def test_locked_repo_fails_before_any_step(
    store: Store,
    make_run: Callable[..., RunMeta],
    fast_config: dict[str, Any],
    fake_runner: FakeCommandRunner,
    fake_sessions: FakeSessions,
) -> None:
    meta = make_run(archive_script="true")
    with RepoLock(store.data_dir).held(meta.repo_id, "verify"):
        with pytest.raises(RepoLockedError):
            await _service(store, fast_config, fake_runner, fake_sessions).clean_run(
                meta.run_id
            )
    assert Path(meta.worktree_path).is_dir()
    assert not store.events_path(meta.repo_id, meta.run_id).exists()


@pytest.mark.asyncio
async def test_meta_write_failure_is_persist_failed(
    store: Store,
    make_run: Callable[..., RunMeta],
    fast_config: dict[str, Any],
    fake_runner: FakeCommandRunner,
    fake_sessions: FakeSessions,
) -> None:
    meta = make_run()
    meta_path = store.run_meta_path(meta.repo_id, meta.run_id)
    fast_config["scripts"]["archive"] = f"echo garbage > '{meta_path}'"

    result = await _service(store, fast_config, fake_runner, fake_sessions).clean_run(
        meta.run_id
    )

    assert result.archive.success() is True
    assert result.ok is False
    error = result.to_error()
    assert error is not None
    assert error.code is ErrorCode.PERSIST_FAILED


@pytest.mark.asyncio
async def test_cleaning_an_archived_run_again_is_a_no_op(
    store: Store,
    make_run: Callable[..., RunMeta],
    fast_config: dict[str, Any],
    fake_runner: FakeCommandRunner,
    fake_sessions: FakeSessions,
) -> None:
    meta = make_run(archive_script="exit 0")
    service = _service(store, fast_config, fake_runner, fake_sessions)

    first = await service.clean_run(meta.run_id)
    assert first.ok is True
    assert first.already_archived is False
    events_before = read_events(store.events_path(meta.repo_id, meta.run_id))
    archived_at = store.read_meta(meta.repo_id, meta.run_id).archive.archived_at
    log_path = store.archive_log_path(meta.repo_id, meta.run_id)
    log_before = log_path.read_bytes()
    kills_before = list(fake_sessions.killed)

    second = await service.clean_run(meta.run_id)

    assert second.already_archived is True
    assert second.ok is True
    assert second.to_error() is None
    assert store.read_meta(meta.repo_id, meta.run_id).archive.archived_at == archived_at
    assert read_events(store.events_path(meta.repo_id, meta.run_id)) == events_before
    assert log_path.read_bytes() == log_before
    assert fake_sessions.killed == kills_before


@pytest.mark.asyncio
async def test_active_run_wins_name_match_over_archived_namesake(
    store: Store,
    make_run: Callable[..., RunMeta],
    fast_config: dict[str, Any],
    fake_runner: FakeCommandRunner,
    fake_sessions: FakeSessions,
) -> None:
    make_run("20260101120000-ab12", name="alpha", archived_at="2026-01-02T00:00:00Z")
    active = make_run("20260103120000-cd34", name="alpha", archive_script="true")

    result = await _service(store, fast_config, fake_runner, fake_sessions).clean_run("alpha")

    assert (result.run_id, result.already_archived) == (active.run_id, False)
    assert result.ok is True
    assert not Path(active.worktree_path).exists()
