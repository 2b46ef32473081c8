"""Pass/fail verdict and summary derivation from script execution signals.

``derive_ok`` and ``derive_summary`` are the single source of truth for every
consumer that gates promotion or sets the operator attention flag.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from agency.domain.models import SelfReport
from agency.utils.fs import read_json_object


@dataclass(frozen=True, slots=True)
class SelfReportResult:
    """Outcome of reading a script's self-report file.

    ``report`` is set only for a valid file; ``exists`` records whether the file
    was present at all; ``error`` carries a read/parse/shape problem.
    """

    report: SelfReport | None
    exists: bool
    error: str | None = None


def derive_ok(
    timed_out: bool,
    cancelled: bool,
    exit_code: int | None,
    self_report: SelfReport | None,
) -> bool:
    """Strict precedence: trigger, missing exit code, non-zero exit, self-report, pass."""

    if timed_out or cancelled:
        return False
    if exit_code is None:
        return False
    if exit_code != 0:
        return False
    if self_report is not None:
        return self_report.ok
    return True


def derive_summary(
    timed_out: bool,
    cancelled: bool,
    exit_code: int | None,
    self_report: SelfReport | None,
    *,
    label: str = "verify",
) -> str:
    if self_report is not None and self_report.summary.strip():
        return self_report.summary
    if timed_out:
        return f"{label} timed out"
    if cancelled:
        return f"{label} cancelled"
    if exit_code is None:
        return f"{label} failed (no exit code)"
    if exit_code == 0:
        return f"{label} succeeded"
    return f"{label} failed (exit {exit_code})"


def read_self_report(path: str | Path | None) -> SelfReportResult:
    if path is None:
        return SelfReportResult(report=None, exists=False)
    target = Path(path)
    try:
        payload = read_json_object(target)
    except FileNotFoundError:
        return SelfReportResult(report=None, exists=False)
    except (OSError, ValueError) as exc:
        return SelfReportResult(
            report=None,
            exists=target.exists(),
            error=f"self-report {target}: {exc}",
        )
    try:
        report = SelfReport.from_dict(payload)
    except ValueError as exc:
        return SelfReportResult(report=None, exists=True, error=f"self-report {target}: {exc}")
    return SelfReportResult(report=report, exists=True)


__all__ = [
    "SelfReportResult",
    "derive_ok",
    "derive_summary",
    "read_self_report",
]
