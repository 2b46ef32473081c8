"""Environment contract injected into every run script (verify, archive)."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

from agency.config.loader import ConfigLoadError, load_repo_config
from agency.config.schema import ConfigValidationError
from agency.constants import (
    DOTAGENCY_DIR,
    LOGS_DIR,
    OUTPUT_SUBDIR,
    REPOS_DIR,
    RUNS_DIR,
    SELF_REPORT_FILENAME,
)
from agency.domain.models import RunMeta
from agency.errors import AgencyError, ErrorCode

ORIGIN_NAME: Final[str] = "origin"


def build_script_env(
    meta: RunMeta,
    *,
    data_dir: str | Path,
    repo_root: str | Path | None = None,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Return ``base_env`` (default: the host environment) plus the ``AGENCY_*`` contract.

    ``repo_root`` defaults to the worktree, which is the repository root as
    far as a script running inside it is concerned.
    """

    env = dict(os.environ if base_env is None else base_env)
    worktree = meta.worktree_path
    run_dir = Path(data_dir).expanduser() / REPOS_DIR / meta.repo_id / RUNS_DIR / meta.run_id
    dotagency = Path(worktree) / DOTAGENCY_DIR

    env.update(
        {
            "AGENCY_RUN_ID": meta.run_id,
            "AGENCY_NAME": meta.name,
            "AGENCY_TITLE": meta.title,
            "AGENCY_REPO_ROOT": str(repo_root) if repo_root else worktree,
            "AGENCY_WORKSPACE_ROOT": worktree,
            "AGENCY_WORKTREE_ROOT": worktree,
            "AGENCY_BRANCH": meta.branch,
            "AGENCY_PARENT_BRANCH": meta.parent_branch,
            "AGENCY_ORIGIN_NAME": ORIGIN_NAME,
            "AGENCY_ORIGIN_URL": "",
            "AGENCY_RUNNER": meta.runner,
            "AGENCY_PR_URL": meta.pr_url,
            "AGENCY_PR_NUMBER": str(meta.pr_number) if meta.pr_number else "",
            "AGENCY_DOTAGENCY_DIR": str(dotagency),
            "AGENCY_OUTPUT_DIR": str(dotagency / OUTPUT_SUBDIR),
            "AGENCY_LOG_DIR": str(run_dir / LOGS_DIR),
            "AGENCY_NONINTERACTIVE": "1",
            "CI": "1",
        }
    )
    return env


def self_report_path(worktree_path: str | Path) -> Path:
    """``<worktree>/.agency/out/verify.json``."""

    return Path(worktree_path) / DOTAGENCY_DIR / OUTPUT_SUBDIR / SELF_REPORT_FILENAME


def load_run_scripts(meta: RunMeta, config: Mapping[str, Any]) -> dict[str, Any]:
    """Return the effective ``[scripts]`` table for a run's worktree.

    Invalid per-repo overrides surface as ``E_INVALID_CONFIG``.
    """

    try:
        merged = load_repo_config(meta.worktree_path, config)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise AgencyError(
            ErrorCode.INVALID_CONFIG,
            str(exc),
            details={"repo_id": meta.repo_id, "run_id": meta.run_id},
        ) from exc
    return dict(merged["scripts"])


__all__ = ["ORIGIN_NAME", "build_script_env", "load_run_scripts", "self_report_path"]
