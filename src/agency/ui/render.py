"""Output rendering for the agency CLI.

File: src/agency/ui/render.py

Purpose
- Keep human-readable CLI output in one place so handlers only decide what
  to show, never how.
- Respect ``NO_COLOR`` and ``--no-color``.

Functional requirements
- Plain text only; output is deterministic for a given input.
- Run listings, execution records, and archive outcomes have dedicated
  renderers so ``ls``/``show``/``verify``/``clean`` print consistently.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from collections.abc import Sequence

    from agency.control_plane.archive_pipeline import ArchiveResult
    from agency.domain.models import ExecutionRecord
    from agency.persistence.scan import RunRecord


def _color_allowed(no_color_flag: bool, stream: TextIO) -> bool:
    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


def run_state(record: RunRecord) -> str:
    """One-word state used by ``agency ls``."""

    if record.broken or record.meta is None:
        return "broken"
    if record.meta.is_archived:
        return "archived"
    if record.meta.flags.needs_attention:
        return "attention"
    return "active"


class CLIRenderer:
    """Plain-text renderer bound to one output stream."""

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        stream: TextIO | None = None,
    ) -> None:
        self.verbose = verbose
        self._stream = stream if stream is not None else sys.stdout
        self._color = _color_allowed(no_color, self._stream)

    def _write(self, line: str = "") -> None:
        print(line, file=self._stream)

    def kv(self, key: str, value: object) -> None:
        self._write(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._write(line)

    def section(self, title: str) -> None:
        self._write(f"\n{title}")

    def warning(self, text: str) -> None:
        self._write(f"warning: {text}")

    def status(self, ok: bool, label: str) -> None:
        """Print a single pass/fail line."""

        tag = "OK" if ok else "FAIL"
        if self._color:
            tag = f"\033[32m{tag}\033[0m" if ok else f"\033[31m{tag}\033[0m"
        self._write(f"  {tag}  {label}")

    def table(self, headers: Sequence[str], rows: Sequence[Sequence[str]]) -> None:
        """Print a left-aligned column table; nothing for zero rows."""

        if not rows:
            return
        widths = [len(header) for header in headers]
        for row in rows:
            for index, cell in enumerate(row[: len(headers)]):
                widths[index] = max(widths[index], len(cell))

        def _line(cells: Sequence[str]) -> str:
            padded = [
                (cells[index] if index < len(cells) else "").ljust(widths[index])
                for index in range(len(headers))
            ]
            return "  ".join(padded).rstrip()

        self._write(_line(headers))
        for row in rows:
            self._write(_line(row))

    def runs(self, records: Sequence[RunRecord]) -> None:
        if not records:
            self._write("no runs found")
            return
        rows = [
            [
                record.run_id,
                record.name or "-",
                record.repo_id,
                run_state(record),
                record.meta.created_at if record.meta is not None else "-",
            ]
            for record in records
        ]
        self.table(["RUN_ID", "NAME", "REPO", "STATE", "CREATED"], rows)

    def execution_record(self, record: ExecutionRecord, *, title: str = "verify") -> None:
        self.status(record.ok, f"{title}: {record.summary}")
        self.kv("  exit_code", "-" if record.exit_code is None else record.exit_code)
        if record.signal:
            self.kv("  signal", record.signal)
        if record.timed_out:
            self.kv("  timed_out", "true")
        if record.cancelled:
            self.kv("  cancelled", "true")
        self.kv("  duration_ms", record.duration_ms)
        self.kv("  log", record.log_path)
        if record.verify_json_path:
            self.kv("  report", record.verify_json_path)
        if record.error:
            self.kv("  error", record.error)

    def archive_result(self, result: ArchiveResult) -> None:
        self.status(result.script_ok, _step("archive script", result.script_reason))
        self.status(result.tmux_ok, _step("kill session", result.tmux_reason))
        self.status(result.delete_ok, _step("delete worktree", result.delete_reason))
        if self.verbose and result.log_path:
            self.kv("  log", result.log_path)


def _step(label: str, reason: str) -> str:
    return f"{label} ({reason})" if reason else label


def create_renderer(
    *,
    no_color: bool = False,
    verbose: bool = False,
    stream: TextIO | None = None,
) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose, stream=stream)


__all__ = ["CLIRenderer", "create_renderer", "run_state"]
