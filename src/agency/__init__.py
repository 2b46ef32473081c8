"""
agency — run orchestration engine

Package root. Runs are isolated coding-agent sessions bound to a git worktree
and a tmux session; this package resolves, locks, verifies and tears them down.

Import boundary: nothing here loads config or initializes logging at import time.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
