"""Domain records, run ids, and run reference resolution."""

from agency.domain.ids import generate_run_id, is_run_id, validate_name
from agency.domain.models import (
    ArchiveInfo,
    Event,
    ExecutionRecord,
    RunFlags,
    RunMeta,
    RunRef,
    SelfReport,
)
from agency.domain.resolve import (
    AmbiguousRunError,
    RunNotFoundError,
    check_name_unique,
    resolve_run_ref,
)

__all__ = [
    "AmbiguousRunError",
    "ArchiveInfo",
    "Event",
    "ExecutionRecord",
    "RunFlags",
    "RunMeta",
    "RunNotFoundError",
    "RunRef",
    "SelfReport",
    "check_name_unique",
    "generate_run_id",
    "is_run_id",
    "resolve_run_ref",
    "validate_name",
]
