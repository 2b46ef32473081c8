"""Shared fixtures: seeded run stores and in-memory collaborator fakes."""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from agency.config.schema import default_config, merge_config
from agency.domain.models import RunMeta
from agency.integration_plane.command_runner import CommandResult
from agency.integration_plane.sessions import SessionError, SessionNotFoundError
from agency.persistence.store import Store

REPO_ID = "repo-a1b2c3"


@dataclass(slots=True)
class FakeCommandRunner:
    """Records argv and replays canned results keyed by the leading arguments."""

    results: dict[tuple[str, ...], CommandResult] = field(default_factory=dict)
    calls: list[tuple[str, ...]] = field(default_factory=list)
    on_run: Callable[[tuple[str, ...]], None] | None = None

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> CommandResult:
        command = tuple(argv)
        self.calls.append(command)
        if self.on_run is not None:
            self.on_run(command)
        for prefix, result in self.results.items():
            if command[: len(prefix)] == prefix:
                return result
        return CommandResult(argv=command, returncode=0, stdout="", stderr="")


@dataclass(slots=True)
class FakeSessions:
    live: set[str] = field(default_factory=set)
    failure: str | None = None
    killed: list[str] = field(default_factory=list)

    def has_session(self, name: str) -> bool:
        return name in self.live

    def kill_session(self, name: str) -> None:
        if self.failure is not None:
            raise SessionError(self.failure)
        if name not in self.live:
            raise SessionNotFoundError(name)
        self.live.discard(name)
        self.killed.append(name)


@pytest.fixture
def store(tmp_path: Path) -> Store:
    return Store(tmp_path / "data")


@pytest.fixture
def make_run(store: Store) -> Callable[..., RunMeta]:
    """Create ``meta.json`` (and by default a worktree under the allowed prefix)."""

    def _make(
        run_id: str = "20260101120000-ab12",
        *,
        repo_id: str = REPO_ID,
        name: str = "",
        created_at: str = "2026-01-01T12:00:00Z",
        with_worktree: bool = True,
        worktree_path: str | None = None,
        archived_at: str = "",
        verify_script: str | None = None,
        archive_script: str | None = None,
    ) -> RunMeta:
        worktree = Path(worktree_path) if worktree_path else store.worktrees_dir(repo_id) / run_id
        if with_worktree:
            worktree.mkdir(parents=True, exist_ok=True)
            write_repo_scripts(worktree, verify=verify_script, archive=archive_script)
        store.create_run_dir(repo_id, run_id)
        meta = RunMeta(
            run_id=run_id,
            repo_id=repo_id,
            created_at=created_at,
            name=name,
            branch=f"agency/{name or run_id}",
            parent_branch="main",
            worktree_path=str(worktree),
            tmux_session_name=f"agency_{run_id}",
        )
        meta.archive.archived_at = archived_at
        store.write_meta(meta)
        return meta

    return _make


def write_repo_scripts(
    worktree: Path,
    *,
    verify: str | None = None,
    archive: str | None = None,
) -> None:
    lines = ["[scripts]"]
    if verify is not None:
        lines.append(f"verify = {_toml_string(verify)}")
    if archive is not None:
        lines.append(f"archive = {_toml_string(archive)}")
    if len(lines) == 1:
        return
    (worktree / "agency.toml").write_text("\n".join(lines) + "\n", encoding="utf-8")


def _toml_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


@pytest.fixture
def host_env() -> dict[str, str]:
    return dict(os.environ)


@pytest.fixture
def fake_runner() -> FakeCommandRunner:
    return FakeCommandRunner()


@pytest.fixture
def fake_sessions() -> FakeSessions:
    return FakeSessions()


@pytest.fixture
def fast_config() -> dict[str, Any]:
    """Built-in defaults with a short kill grace period."""

    return merge_config(default_config(), {"scripts": {"grace_period_seconds": 0.2}})
