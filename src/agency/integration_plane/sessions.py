"""Terminal-session collaborator: one tmux session per run, named ``agency_<run_id>``."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Final, Protocol

from agency.constants import SESSION_NAME_PREFIX
from agency.integration_plane.command_runner import CommandExecutionError

if TYPE_CHECKING:
    from agency.integration_plane.command_runner import CommandResult, CommandRunner

logger = logging.getLogger(__name__)

TMUX_BINARY: Final[str] = "tmux"
MAX_STDERR_CHARS: Final[int] = 4096
DEFAULT_TMUX_TIMEOUT_SECONDS: Final[float] = 10.0


class SessionError(RuntimeError):
    """A session operation failed for a reason other than absence."""


class SessionNotFoundError(SessionError):
    """The named session does not exist."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"session {name!r} not found")


class SessionClient(Protocol):
    def has_session(self, name: str) -> bool: ...

    def kill_session(self, name: str) -> None: ...


def session_name(run_id: str) -> str:
    return f"{SESSION_NAME_PREFIX}{run_id}"


class TmuxSessionClient:
    """``SessionClient`` backed by the ``tmux`` binary.

    ``has-session`` exits 0 when the session exists and 1 when it does not;
    any other status is reported as ``SessionError``.
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        binary: str = TMUX_BINARY,
        timeout_seconds: float = DEFAULT_TMUX_TIMEOUT_SECONDS,
    ) -> None:
        self._runner = runner
        self._binary = binary
        self._timeout_seconds = timeout_seconds

    def has_session(self, name: str) -> bool:
        result = self._run("has-session", "-t", name)
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        raise SessionError(_failure("has-session", result))

    def kill_session(self, name: str) -> None:
        if not self.has_session(name):
            raise SessionNotFoundError(name)
        result = self._run("kill-session", "-t", name)
        if result.returncode != 0:
            raise SessionError(_failure("kill-session", result))
        logger.debug("tmux session killed", extra={"session": name})

    def _run(self, *args: str) -> CommandResult:
        argv = [self._binary, *args]
        try:
            return self._runner.run(argv, timeout_seconds=self._timeout_seconds)
        except CommandExecutionError as exc:
            raise SessionError(str(exc)) from exc


def _failure(subcommand: str, result: CommandResult) -> str:
    stderr = result.stderr.strip()[:MAX_STDERR_CHARS]
    message = f"tmux {subcommand} failed (exit={result.returncode})"
    if stderr:
        message = f"{message}: {stderr}"
    return message


__all__ = [
    "MAX_STDERR_CHARS",
    "SessionClient",
    "SessionError",
    "SessionNotFoundError",
    "TmuxSessionClient",
    "session_name",
]
