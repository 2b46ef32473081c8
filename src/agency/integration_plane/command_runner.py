"""Injectable external-command seam shared by the tmux and git adapters."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


class CommandExecutionError(RuntimeError):
    """Raised when a command could not be started or did not finish in time."""

    def __init__(self, argv: Sequence[str], message: str) -> None:
        self.argv = tuple(argv)
        super().__init__(f"{message}: {' '.join(argv)}")


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Normalized subprocess result."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner(Protocol):
    """Injectable command runner used for deterministic/offline testing."""

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> CommandResult: ...


class SubprocessCommandRunner:
    """Default command runner backed by ``subprocess.run``.

    ``env`` entries are overlaid on the current process environment.
    """

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> CommandResult:
        run_env = os.environ.copy()
        if env:
            run_env.update(env)
        try:
            completed = subprocess.run(
                list(argv),
                cwd=cwd,
                env=run_env,
                stdin=subprocess.DEVNULL,
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandExecutionError(
                argv, f"command timed out after {timeout_seconds} seconds"
            ) from exc
        except OSError as exc:
            raise CommandExecutionError(argv, f"command could not be started ({exc})") from exc

        return CommandResult(
            argv=tuple(argv),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )


__all__ = [
    "CommandExecutionError",
    "CommandResult",
    "CommandRunner",
    "SubprocessCommandRunner",
]
