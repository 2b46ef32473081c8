"""Git worktree removal for run teardown."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Final

from agency.integration_plane.command_runner import CommandExecutionError

if TYPE_CHECKING:
    from agency.integration_plane.command_runner import CommandRunner

GIT_ENV: Final[dict[str, str]] = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_CONFIG_NOSYSTEM": "1",
}
DEFAULT_GIT_TIMEOUT_SECONDS: Final[float] = 60.0


class WorktreeRemovalError(RuntimeError):
    """``git worktree remove`` failed or could not be run."""

    def __init__(self, worktree_path: Path, detail: str) -> None:
        self.worktree_path = worktree_path
        self.detail = detail
        super().__init__(f"git worktree remove failed for {worktree_path}: {detail}")


def remove_worktree(
    runner: CommandRunner,
    repo_root: str | Path,
    worktree_path: str | Path,
    *,
    timeout_seconds: float = DEFAULT_GIT_TIMEOUT_SECONDS,
) -> None:
    """Run ``git worktree remove --force <path>`` from ``repo_root``."""

    target = Path(worktree_path)
    argv = ["git", "worktree", "remove", "--force", str(target)]
    try:
        result = runner.run(
            argv,
            cwd=Path(repo_root),
            env=GIT_ENV,
            timeout_seconds=timeout_seconds,
        )
    except CommandExecutionError as exc:
        raise WorktreeRemovalError(target, str(exc)) from exc
    if result.returncode != 0:
        detail = result.stderr.strip() or result.stdout.strip() or f"exit {result.returncode}"
        raise WorktreeRemovalError(target, detail)


__all__ = ["GIT_ENV", "WorktreeRemovalError", "remove_worktree"]
