"""Global run lookup: scan every repo, resolve a user reference, return the record."""

from __future__ import annotations

from pathlib import Path

from agency.domain.resolve import resolve_run_ref
from agency.persistence.scan import RunRecord, scan_all_runs
from agency.persistence.store import Store


def lookup_run(
    data_dir: str | Path | Store,
    ref: str,
    *,
    include_archived: bool = False,
) -> RunRecord:
    """Resolve ``ref`` across all repos.

    Raises ``RunNotFoundError`` / ``AmbiguousRunError`` from the resolver
    unchanged.
    """

    store = data_dir if isinstance(data_dir, Store) else Store(data_dir)
    records = scan_all_runs(store)
    by_key = {(record.repo_id, record.run_id): record for record in records}
    resolved = resolve_run_ref(
        ref,
        [record.to_ref() for record in records],
        include_archived=include_archived,
    )
    return by_key[(resolved.repo_id, resolved.run_id)]


__all__ = ["lookup_run"]
