"""Unit tests for the per-repo non-blocking lock."""

from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
import textwrap
from typing import TYPE_CHECKING

import pytest

from agency.errors import AgencyError, ErrorCode
from agency.persistence.repo_lock import (
    LockHolder,
    RepoLock,
    RepoLockedError,
    holder_is_alive,
)
from agency.persistence.store import Store

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = pytest.mark.unit

FIXED_NOW = "2026-01-01T12:00:00Z"


def _lock(tmp_path: Path) -> RepoLock:
    return RepoLock(tmp_path / "data", now=lambda: FIXED_NOW)


def test_acquire_writes_holder_and_release_is_idempotent(tmp_path: Path) -> None:
    lock = _lock(tmp_path)
    release = lock.lock("repo-1", "verify")

    holder = json.loads(lock.lock_path("repo-1").read_text(encoding="utf-8"))
    assert holder["pid"] == os.getpid()
    assert holder["operation"] == "verify"
    assert holder["acquired_at"] == FIXED_NOW

    release()
    release()
    assert release.released is True
    lock.lock("repo-1", "clean")()


def test_contention_fails_immediately_with_holder(tmp_path: Path) -> None:
    lock = _lock(tmp_path)
    with lock.held("repo-1", "verify"):
        with pytest.raises(RepoLockedError) as excinfo:
            lock.lock("repo-1", "clean")

    error = excinfo.value
    assert error.code is ErrorCode.REPO_LOCKED
    assert error.holder is not None
    assert error.holder.operation == "verify"
    assert f"pid {os.getpid()}" in error.message
    lock.lock("repo-1", "clean")()


def test_repos_are_locked_independently(tmp_path: Path) -> None:
    lock = _lock(tmp_path)
    with lock.held("repo-1", "verify"), lock.held("repo-2", "verify"):
        pass


def test_held_releases_on_exception(tmp_path: Path) -> None:
    lock = _lock(tmp_path)
    with pytest.raises(RuntimeError, match="primary"):
        with lock.held("repo-1", "verify"):
            raise RuntimeError("primary")
    assert lock.inspect("repo-1").held is False


def test_release_failure_is_logged_not_raised(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    lock = _lock(tmp_path)
    caplog.set_level(logging.WARNING, logger="agency.persistence.repo_lock")
    with lock.held("repo-1", "verify") as release:
        os.close(release._fd)  # type: ignore[arg-type]
    assert release.released is True
    assert "repo lock release failed" in caplog.text


def test_inspect_reports_holder_and_liveness(tmp_path: Path) -> None:
    lock = _lock(tmp_path)
    assert lock.inspect("repo-1").held is False

    with lock.held("repo-1", "clean"):
        status = lock.inspect("repo-1")
        assert status.held is True
        assert status.holder is not None
        assert status.holder.operation == "clean"
        assert status.holder_alive is True

    status = lock.inspect("repo-1")
    assert status.held is False
    assert status.holder is None


@pytest.mark.parametrize("repo_id", ["", "..", "a/b"])
def test_invalid_repo_id_is_rejected_like_store_paths(tmp_path: Path, repo_id: str) -> None:
    lock = _lock(tmp_path)
    with pytest.raises(AgencyError) as excinfo:
        lock.lock(repo_id, "verify")
    assert excinfo.value.code is ErrorCode.STORE_CORRUPT
    with pytest.raises(AgencyError) as inspected:
        lock.inspect(repo_id)
    assert inspected.value.code is excinfo.value.code


def test_lock_path_matches_store_layout(tmp_path: Path) -> None:
    assert _lock(tmp_path).lock_path("repo-1") == Store(tmp_path / "data").lock_path("repo-1")


def test_holder_liveness_detects_dead_and_reused_pids() -> None:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    dead = LockHolder(pid=proc.pid, operation="verify", acquired_at="")
    assert holder_is_alive(dead) is False

    reused = LockHolder(
        pid=os.getpid(), operation="verify", acquired_at="", process_create_time=1.0
    )
    assert holder_is_alive(reused) is False

    remote = LockHolder(
        pid=os.getpid(), operation="verify", acquired_at="", hostname="elsewhere.invalid"
    )
    assert holder_is_alive(remote) is None


_HOLDER_SCRIPT = textwrap.dedent(
    """
    import sys
    from agency.persistence.repo_lock import RepoLock

    release = RepoLock(sys.argv[1]).lock("repo-1", "verify")
    print("locked", flush=True)
    sys.stdin.readline()
    """
)


def test_lock_is_exclusive_across_processes_and_dies_with_holder(tmp_path: Path) -> None:
    data_dir = tmp_path / "data"
    holder = subprocess.Popen(
        [sys.executable, "-c", _HOLDER_SCRIPT, str(data_dir)],
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        text=True,
    )
    try:
        assert holder.stdout is not None
        assert holder.stdout.readline().strip() == "locked"

        lock = RepoLock(data_dir)
        with pytest.raises(RepoLockedError) as excinfo:
            lock.lock("repo-1", "clean")
        assert excinfo.value.holder is not None
        assert excinfo.value.holder.pid == holder.pid
        assert lock.inspect("repo-1").holder_alive is True
    finally:
        holder.kill()
        holder.wait()

    # The killed holder leaves a stale record behind.
    release = RepoLock(data_dir).lock("repo-1", "clean")
    release()
