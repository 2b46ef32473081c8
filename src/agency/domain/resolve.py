"""
agency — run reference resolution

File: src/agency/domain/resolve.py

Purpose
- Turn an operator-supplied string into exactly one ``RunRef`` from a scanned corpus.

Resolution order (each level short-circuits)
1. Exact name among eligible runs (not broken; not archived unless included).
2. Exact run id across every run, broken and archived included, so any run is
   always reachable by its canonical id.
3. Run-id prefix among eligible runs.

Ambiguous results list every candidate sorted by ``(run_id, repo_id)`` so the
outcome does not depend on corpus iteration order.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from agency.errors import AgencyError, ErrorCode

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from agency.domain.models import RunRef


class RunNotFoundError(AgencyError):
    """No run matches the supplied reference."""

    def __init__(self, raw_input: str) -> None:
        self.input = raw_input
        super().__init__(
            ErrorCode.RUN_NOT_FOUND,
            f"run not found: {raw_input!r}",
            details={"input": raw_input},
        )


class AmbiguousRunError(AgencyError):
    """More than one run matches the supplied reference."""

    def __init__(self, raw_input: str, candidates: Sequence[RunRef]) -> None:
        self.input = raw_input
        self.candidates = sort_candidates(candidates)
        rendered = ", ".join(_render_candidate(ref, self.candidates) for ref in self.candidates)
        super().__init__(
            ErrorCode.RUN_ID_AMBIGUOUS,
            f"ambiguous run reference {raw_input!r} matches: {rendered}",
            details={
                "input": raw_input,
                "candidates": [
                    {"run_id": ref.run_id, "repo_id": ref.repo_id} for ref in self.candidates
                ],
            },
        )


def sort_candidates(refs: Iterable[RunRef]) -> tuple[RunRef, ...]:
    return tuple(sorted(refs, key=lambda ref: (ref.run_id, ref.repo_id)))


def resolve_run_ref(
    raw: str,
    refs: Sequence[RunRef],
    *,
    include_archived: bool = False,
) -> RunRef:
    """Resolve ``raw`` against ``refs``; raise ``RunNotFoundError`` or ``AmbiguousRunError``."""

    needle = raw.strip()
    if not needle:
        raise RunNotFoundError(raw)

    eligible = [ref for ref in refs if _is_eligible(ref, include_archived=include_archived)]

    by_name = [ref for ref in eligible if ref.name and ref.name == needle]
    if by_name:
        return _single(needle, by_name)

    by_id = [ref for ref in refs if ref.run_id == needle]
    if by_id:
        return _single(needle, by_id)

    by_prefix = [ref for ref in eligible if ref.run_id.startswith(needle)]
    if not by_prefix:
        raise RunNotFoundError(needle)
    return _single(needle, by_prefix)


def check_name_unique(name: str, refs: Iterable[RunRef]) -> None:
    """Reject ``name`` when a non-archived run already uses it."""

    for ref in sort_candidates(refs):
        if ref.archived or ref.broken:
            continue
        if ref.name == name:
            raise AgencyError(
                ErrorCode.NAME_EXISTS,
                f"name {name!r} is already used by run {ref.run_id}",
                details={"name": name, "run_id": ref.run_id},
            )


def _is_eligible(ref: RunRef, *, include_archived: bool) -> bool:
    if ref.broken:
        return False
    return include_archived or not ref.archived


def _single(needle: str, matches: Sequence[RunRef]) -> RunRef:
    if len(matches) == 1:
        return matches[0]
    raise AmbiguousRunError(needle, matches)


def _render_candidate(ref: RunRef, candidates: Sequence[RunRef]) -> str:
    repos = {item.repo_id for item in candidates}
    if len(repos) > 1:
        return f"{ref.run_id} (repo {ref.repo_id})"
    return ref.run_id


__all__ = [
    "AmbiguousRunError",
    "RunNotFoundError",
    "check_name_unique",
    "resolve_run_ref",
    "sort_candidates",
]
