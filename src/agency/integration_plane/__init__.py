"""Integration plane: external process, tmux, and git worktree adapters."""

from agency.integration_plane.command_runner import (
    CommandExecutionError,
    CommandResult,
    CommandRunner,
    SubprocessCommandRunner,
)
from agency.integration_plane.sessions import (
    SessionClient,
    SessionError,
    SessionNotFoundError,
    TmuxSessionClient,
    session_name,
)
from agency.integration_plane.worktree import WorktreeRemovalError, remove_worktree

__all__ = [
    "CommandExecutionError",
    "CommandResult",
    "CommandRunner",
    "SessionClient",
    "SessionError",
    "SessionNotFoundError",
    "SubprocessCommandRunner",
    "TmuxSessionClient",
    "WorktreeRemovalError",
    "remove_worktree",
    "session_name",
]
