"""Verification plane: script execution engine and evidence derivation."""

from agency.verification_plane.evidence import (
    SelfReportResult,
    derive_ok,
    derive_summary,
    read_self_report,
)
from agency.verification_plane.runner import (
    ScriptEngineError,
    ScriptRunConfig,
    ScriptRunOutcome,
    run_script,
    run_script_sync,
)

__all__ = [
    "ScriptEngineError",
    "ScriptRunConfig",
    "ScriptRunOutcome",
    "SelfReportResult",
    "derive_ok",
    "derive_summary",
    "read_self_report",
    "run_script",
    "run_script_sync",
]
