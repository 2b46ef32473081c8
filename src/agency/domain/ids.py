"""Run id generation and run name validation."""

from __future__ import annotations

import re
import secrets
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Final

from agency.errors import AgencyError, ErrorCode

RUN_ID_TIMESTAMP_FORMAT: Final[str] = "%Y%m%d%H%M%S"
RUN_ID_SUFFIX_BYTES: Final[int] = 2
NAME_MIN_LEN: Final[int] = 2
NAME_MAX_LEN: Final[int] = 40

_RUN_ID_RE: Final[re.Pattern[str]] = re.compile(r"^\d{14}-[0-9a-f]{4}$")
# Lowercase letter first; single hyphens between alphanumeric groups; no trailing hyphen.
_NAME_RE: Final[re.Pattern[str]] = re.compile(r"^[a-z][a-z0-9]*(-[a-z0-9]+)*$")

_RandBytes = Callable[[int], bytes]


def generate_run_id(
    *,
    now: datetime | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Return ``yyyymmddhhmmss-xxxx`` in UTC with a 4-hex random suffix."""

    moment = (now or datetime.now(tz=UTC)).astimezone(UTC)
    source = randbytes or secrets.token_bytes
    suffix = source(RUN_ID_SUFFIX_BYTES)
    if len(suffix) != RUN_ID_SUFFIX_BYTES:
        raise ValueError(f"randbytes must return exactly {RUN_ID_SUFFIX_BYTES} bytes")
    return f"{moment.strftime(RUN_ID_TIMESTAMP_FORMAT)}-{suffix.hex()}"


def is_run_id(value: str) -> bool:
    return bool(_RUN_ID_RE.fullmatch(value))


def validate_name(name: str) -> str:
    """Validate a run name; raise ``E_INVALID_NAME`` with details when rejected."""

    if len(name) < NAME_MIN_LEN:
        raise AgencyError(
            ErrorCode.INVALID_NAME,
            f"name must be at least {NAME_MIN_LEN} characters",
            details={"name": name, "min_length": NAME_MIN_LEN},
        )
    if len(name) > NAME_MAX_LEN:
        raise AgencyError(
            ErrorCode.INVALID_NAME,
            f"name must be at most {NAME_MAX_LEN} characters",
            details={"name": name, "max_length": NAME_MAX_LEN},
        )
    if not _NAME_RE.fullmatch(name):
        raise AgencyError(
            ErrorCode.INVALID_NAME,
            "name must contain only lowercase letters, digits, and hyphens; "
            "must start with a letter; no consecutive or trailing hyphens",
            details={"name": name},
        )
    return name


__all__ = [
    "NAME_MAX_LEN",
    "NAME_MIN_LEN",
    "RUN_ID_TIMESTAMP_FORMAT",
    "generate_run_id",
    "is_run_id",
    "validate_name",
]
