"""Control plane: run lookup, verify and clean services, the archive pipeline, and gating."""

from agency.control_plane.archive_pipeline import (
    ArchiveConfig,
    ArchiveDeps,
    ArchiveResult,
    archive,
)
from agency.control_plane.clean_service import CleanRunResult, CleanService
from agency.control_plane.promotion import PromotionDecision, evaluate_promotion
from agency.control_plane.run_lookup import lookup_run
from agency.control_plane.script_env import build_script_env, load_run_scripts, self_report_path
from agency.control_plane.verify_service import VerifyRunError, VerifyRunResult, VerifyService

__all__ = [
    "ArchiveConfig",
    "ArchiveDeps",
    "ArchiveResult",
    "CleanRunResult",
    "CleanService",
    "PromotionDecision",
    "VerifyRunError",
    "VerifyRunResult",
    "VerifyService",
    "archive",
    "build_script_env",
    "evaluate_promotion",
    "load_run_scripts",
    "lookup_run",
    "self_report_path",
]
