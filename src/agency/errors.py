"""
agency — stable error codes

Every aborting failure surfaced to an operator carries a machine-readable code
and a message. Script outcomes (non-zero exit, timeout, cancellation) are never
raised; they are recorded as data on the execution record.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Final


class ErrorCode(StrEnum):
    USAGE = "E_USAGE"
    INTERNAL = "E_INTERNAL"
    INVALID_CONFIG = "E_INVALID_CONFIG"
    STORE_CORRUPT = "E_STORE_CORRUPT"
    RUN_NOT_FOUND = "E_RUN_NOT_FOUND"
    RUN_ID_AMBIGUOUS = "E_RUN_ID_AMBIGUOUS"
    RUN_BROKEN = "E_RUN_BROKEN"
    REPO_LOCKED = "E_REPO_LOCKED"
    RUN_DIR_EXISTS = "E_RUN_DIR_EXISTS"
    RUN_DIR_CREATE_FAILED = "E_RUN_DIR_CREATE_FAILED"
    META_WRITE_FAILED = "E_META_WRITE_FAILED"
    PERSIST_FAILED = "E_PERSIST_FAILED"
    WORKSPACE_ARCHIVED = "E_WORKSPACE_ARCHIVED"
    WORKTREE_MISSING = "E_WORKTREE_MISSING"
    NAME_EXISTS = "E_NAME_EXISTS"
    INVALID_NAME = "E_INVALID_NAME"
    ARCHIVE_FAILED = "E_ARCHIVE_FAILED"
    SCRIPT_FAILED = "E_SCRIPT_FAILED"
    SCRIPT_TIMEOUT = "E_SCRIPT_TIMEOUT"


_USAGE_CODES: Final[frozenset[ErrorCode]] = frozenset(
    {ErrorCode.USAGE, ErrorCode.INVALID_CONFIG, ErrorCode.INVALID_NAME}
)


class AgencyError(RuntimeError):
    """Failure with a stable code, a human message, and structured details."""

    def __init__(
        self,
        code: ErrorCode | str,
        message: str,
        *,
        details: Mapping[str, object] | None = None,
    ) -> None:
        self.code = ErrorCode(code)
        self.message = message
        self.details: dict[str, object] = dict(details or {})
        super().__init__(f"{self.code.value}: {message}")


def error_code_of(exc: BaseException | None) -> ErrorCode | None:
    """Return the first stable code found on ``exc`` or its cause chain."""

    seen: set[int] = set()
    current = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, AgencyError):
            return current.code
        current = current.__cause__ or current.__context__
    return None


def format_error(exc: BaseException) -> str:
    """Render ``error_code: <CODE>`` followed by the message."""

    code = error_code_of(exc) or ErrorCode.INTERNAL
    message = exc.message if isinstance(exc, AgencyError) else (str(exc) or type(exc).__name__)
    return f"error_code: {code.value}\n{message}"


def exit_code_for(exc: BaseException | None) -> int:
    """Map an error to a process exit code: 0 none, 2 usage, 1 everything else."""

    if exc is None:
        return 0
    code = error_code_of(exc)
    if code in _USAGE_CODES:
        return 2
    return 1


__all__ = [
    "AgencyError",
    "ErrorCode",
    "error_code_of",
    "exit_code_for",
    "format_error",
]
