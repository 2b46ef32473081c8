"""On-disk run store: paths, atomic records, discovery, events, and repo locking."""

from agency.persistence.event_log import append_event, read_events
from agency.persistence.repo_lock import LockHolder, LockStatus, RepoLock, RepoLockedError
from agency.persistence.scan import RunRecord, scan_all_runs, scan_repo_runs
from agency.persistence.store import Store

__all__ = [
    "LockHolder",
    "LockStatus",
    "RepoLock",
    "RepoLockedError",
    "RunRecord",
    "Store",
    "append_event",
    "read_events",
    "scan_all_runs",
    "scan_repo_runs",
]
