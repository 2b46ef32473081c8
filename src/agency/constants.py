"""Stable constants shared across orchestration planes."""

from __future__ import annotations

from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
META_SCHEMA_VERSION: Final[str] = "1.0"
RECORD_SCHEMA_VERSION: Final[str] = "1.0"
EVENT_SCHEMA_VERSION: Final[str] = "1.0"

# On-disk layout under the data dir.
DATA_DIR_ENV: Final[str] = "AGENCY_DATA_DIR"
DEFAULT_DATA_DIR: Final[str] = "~/.local/share/agency"
REPOS_DIR: Final[str] = "repos"
RUNS_DIR: Final[str] = "runs"
WORKTREES_DIR: Final[str] = "worktrees"
LOGS_DIR: Final[str] = "logs"
LOCK_FILENAME: Final[str] = ".lock"
REPO_META_FILENAME: Final[str] = "repo.json"
META_FILENAME: Final[str] = "meta.json"
EVENTS_FILENAME: Final[str] = "events.jsonl"
VERIFY_RECORD_FILENAME: Final[str] = "verify_record.json"
ARCHIVE_RECORD_FILENAME: Final[str] = "archive_record.json"
VERIFY_LOG_FILENAME: Final[str] = "verify.log"
ARCHIVE_LOG_FILENAME: Final[str] = "archive.log"
LOG_FILENAME: Final[str] = "agency.jsonl"

# Worktree-relative locations owned by the scripts.
DOTAGENCY_DIR: Final[str] = ".agency"
OUTPUT_SUBDIR: Final[str] = "out"
SELF_REPORT_FILENAME: Final[str] = "verify.json"
REPO_CONFIG_FILENAME: Final[str] = "agency.toml"

# Script execution defaults (seconds).
DEFAULT_VERIFY_TIMEOUT_SECONDS: Final[float] = 30 * 60.0
DEFAULT_ARCHIVE_TIMEOUT_SECONDS: Final[float] = 5 * 60.0
DEFAULT_GRACE_PERIOD_SECONDS: Final[float] = 3.0

# Terminal sessions.
SESSION_NAME_PREFIX: Final[str] = "agency_"

# Attention flag reason set by a failed verify.
NEEDS_ATTENTION_VERIFY_FAILED: Final[str] = "verify_failed"

__all__ = [
    "ARCHIVE_LOG_FILENAME",
    "ARCHIVE_RECORD_FILENAME",
    "CONFIG_SCHEMA_VERSION",
    "DATA_DIR_ENV",
    "DEFAULT_ARCHIVE_TIMEOUT_SECONDS",
    "DEFAULT_DATA_DIR",
    "DEFAULT_GRACE_PERIOD_SECONDS",
    "DEFAULT_VERIFY_TIMEOUT_SECONDS",
    "DOTAGENCY_DIR",
    "EVENTS_FILENAME",
    "EVENT_SCHEMA_VERSION",
    "LOCK_FILENAME",
    "LOG_FILENAME",
    "LOGS_DIR",
    "META_FILENAME",
    "META_SCHEMA_VERSION",
    "NEEDS_ATTENTION_VERIFY_FAILED",
    "OUTPUT_SUBDIR",
    "RECORD_SCHEMA_VERSION",
    "REPOS_DIR",
    "REPO_CONFIG_FILENAME",
    "REPO_META_FILENAME",
    "RUNS_DIR",
    "SELF_REPORT_FILENAME",
    "SESSION_NAME_PREFIX",
    "VERIFY_LOG_FILENAME",
    "VERIFY_RECORD_FILENAME",
    "WORKTREES_DIR",
]
