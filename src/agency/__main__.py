"""Module entrypoint for ``python -m agency``."""

from __future__ import annotations

from agency.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
