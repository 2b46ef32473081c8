"""Shared utilities: atomic filesystem helpers and async cancellation."""

from agency.utils.concurrency import CancellationToken, cancel_on_signals, cancel_task
from agency.utils.fs import (
    NotUnderPrefixError,
    atomic_write,
    is_subpath,
    read_json_object,
    safe_remove_all,
    write_json_atomic,
)

__all__ = [
    "CancellationToken",
    "NotUnderPrefixError",
    "atomic_write",
    "cancel_on_signals",
    "cancel_task",
    "is_subpath",
    "read_json_object",
    "safe_remove_all",
    "write_json_atomic",
]
