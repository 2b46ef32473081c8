"""
agency — per-repo cross-process lock

File: src/agency/persistence/repo_lock.py

Purpose
- Serialize mutating operations on one repo's on-disk state across processes.

Functional requirements
- Non-blocking try-lock: contention raises ``RepoLockedError`` immediately; the
  caller never queues or retries.
- The returned release callable is idempotent and must run on every exit path;
  ``RepoLock.held`` guarantees that and logs release failures instead of letting
  them replace the primary outcome.

Staleness
- The lock is an ``flock`` on ``<data_dir>/repos/<repo_id>/.lock``. The kernel
  drops it when the holding process exits for any reason, so a crashed holder
  can never leave the repo locked. The holder record written into the file
  (pid, process start time, host, operation, acquired_at) is diagnostics only;
  ``inspect`` uses ``psutil`` to report whether that holder is still alive.
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import os
import socket
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import psutil

from agency.domain.models import utc_now_rfc3339
from agency.errors import AgencyError, ErrorCode
from agency.persistence.store import Store

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LockHolder:
    """Identity of the process that holds (or last held) a repo lock."""

    pid: int
    operation: str
    acquired_at: str
    hostname: str = ""
    process_create_time: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "operation": self.operation,
            "acquired_at": self.acquired_at,
            "hostname": self.hostname,
            "process_create_time": self.process_create_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LockHolder:
        pid = data.get("pid")
        if isinstance(pid, bool) or not isinstance(pid, int) or pid <= 0:
            raise ValueError("LockHolder.pid: expected positive integer")
        create_time = data.get("process_create_time")
        if create_time is not None and not isinstance(create_time, (int, float)):
            raise ValueError("LockHolder.process_create_time: expected number")
        return cls(
            pid=pid,
            operation=str(data.get("operation") or ""),
            acquired_at=str(data.get("acquired_at") or ""),
            hostname=str(data.get("hostname") or ""),
            process_create_time=float(create_time) if create_time is not None else None,
        )

    def describe(self) -> str:
        parts = [f"pid {self.pid}"]
        if self.operation:
            parts.append(f"operation {self.operation!r}")
        if self.acquired_at:
            parts.append(f"since {self.acquired_at}")
        return ", ".join(parts)


class RepoLockedError(AgencyError):
    """Another process holds the repo lock."""

    def __init__(self, repo_id: str, holder: LockHolder | None) -> None:
        self.repo_id = repo_id
        self.holder = holder
        suffix = f" ({holder.describe()})" if holder is not None else ""
        details: dict[str, object] = {"repo_id": repo_id}
        if holder is not None:
            details["holder"] = holder.to_dict()
        super().__init__(
            ErrorCode.REPO_LOCKED,
            f"repo {repo_id} is locked by another agency process{suffix}; retry when it finishes",
            details=details,
        )


@dataclass(frozen=True, slots=True)
class LockStatus:
    repo_id: str
    path: Path
    held: bool
    holder: LockHolder | None = None
    holder_alive: bool | None = None


class LockRelease:
    """Idempotent release handle returned by ``RepoLock.lock``."""

    def __init__(self, fd: int, path: Path, repo_id: str, operation: str) -> None:
        self._fd: int | None = fd
        self.path = path
        self.repo_id = repo_id
        self.operation = operation

    @property
    def released(self) -> bool:
        return self._fd is None

    def __call__(self) -> None:
        fd = self._fd
        if fd is None:
            return
        self._fd = None
        try:
            os.ftruncate(fd, 0)
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


class RepoLock:
    """Non-blocking per-repo lock manager rooted at ``data_dir``."""

    def __init__(
        self,
        data_dir: str | Path,
        *,
        now: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self._store = Store(data_dir)
        self._now = now

    def lock_path(self, repo_id: str) -> Path:
        return self._store.lock_path(repo_id)

    def lock(self, repo_id: str, operation: str) -> LockRelease:
        """Acquire the repo lock or raise ``RepoLockedError`` without waiting."""

        path = self.lock_path(repo_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT | os.O_CLOEXEC, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise RepoLockedError(repo_id, _read_holder(path)) from None
        except BaseException:
            os.close(fd)
            raise

        release = LockRelease(fd, path, repo_id, operation)
        try:
            _write_holder(fd, self._holder(operation))
        except OSError as exc:
            logger.warning(
                "lock acquired but holder record not written",
                extra={"repo_id": repo_id, "operation": operation, "error": str(exc)},
            )
        logger.debug("repo lock acquired", extra={"repo_id": repo_id, "operation": operation})
        return release

    @contextmanager
    def held(self, repo_id: str, operation: str) -> Iterator[LockRelease]:
        """Hold the repo lock for the ``with`` body; release failures are only logged."""

        release = self.lock(repo_id, operation)
        try:
            yield release
        finally:
            try:
                release()
            except OSError as exc:
                logger.warning(
                    "repo lock release failed",
                    extra={"repo_id": repo_id, "operation": operation, "error": str(exc)},
                )

    def inspect(self, repo_id: str) -> LockStatus:
        """Report whether the repo lock is held and whether its holder is alive."""

        path = self.lock_path(repo_id)
        if not path.exists():
            return LockStatus(repo_id=repo_id, path=path, held=False)

        fd = os.open(path, os.O_RDONLY | os.O_CLOEXEC)
        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_SH | fcntl.LOCK_NB)
            except BlockingIOError:
                held = True
            else:
                held = False
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

        holder = _read_holder(path)
        alive = holder_is_alive(holder) if holder is not None else None
        return LockStatus(repo_id=repo_id, path=path, held=held, holder=holder, holder_alive=alive)

    def _holder(self, operation: str) -> LockHolder:
        pid = os.getpid()
        return LockHolder(
            pid=pid,
            operation=operation,
            acquired_at=self._now(),
            hostname=socket.gethostname(),
            process_create_time=_process_create_time(pid),
        )


def holder_is_alive(holder: LockHolder) -> bool | None:
    """``True``/``False`` for a local holder; ``None`` when it ran on another host."""

    if holder.hostname and holder.hostname != socket.gethostname():
        return None
    if not psutil.pid_exists(holder.pid):
        return False
    if holder.process_create_time is None:
        return True
    current = _process_create_time(holder.pid)
    if current is None:
        return False
    # A different start time means the pid was reused by another process.
    return abs(current - holder.process_create_time) < 1.0


def _process_create_time(pid: int) -> float | None:
    try:
        return psutil.Process(pid).create_time()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return None


def _write_holder(fd: int, holder: LockHolder) -> None:
    payload = (json.dumps(holder.to_dict(), sort_keys=True) + "\n").encode("utf-8")
    os.ftruncate(fd, 0)
    os.pwrite(fd, payload, 0)
    with contextlib.suppress(OSError):
        os.fsync(fd)


def _read_holder(path: Path) -> LockHolder | None:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        return None
    if not raw.strip():
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    try:
        return LockHolder.from_dict(payload)
    except ValueError:
        return None


__all__ = [
    "LockHolder",
    "LockRelease",
    "LockStatus",
    "RepoLock",
    "RepoLockedError",
    "holder_is_alive",
]
