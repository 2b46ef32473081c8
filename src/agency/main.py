"""Process entrypoint for ``agency``: maps every outcome onto an exit status."""

from __future__ import annotations

import os
import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

from agency.errors import AgencyError, exit_code_for, format_error

if TYPE_CHECKING:
    from collections.abc import Sequence

DEBUG_ENV = "AGENCY_DEBUG"


class ExitCode(IntEnum):
    SUCCESS = 0
    FAILURE = 1
    USAGE = 2
    INTERRUPTED = 130


_KNOWN_CODES = frozenset(int(code) for code in ExitCode)


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Run one command; used by ``python -m agency`` and the console script."""

    from agency.ui.cli import run_cli

    try:
        status: object = run_cli(argv)
    except SystemExit as exc:
        # argparse exits with 2 on usage errors and 0 after --help.
        status = exc.code
    except AgencyError as exc:
        _emit(format_error(exc))
        return exit_code_for(exc)
    except KeyboardInterrupt:
        _emit("interrupted")
        return ExitCode.INTERRUPTED
    except Exception as exc:  # noqa: BLE001
        if os.environ.get(DEBUG_ENV):
            traceback.print_exc(file=sys.stderr)
        _emit(format_error(exc))
        return ExitCode.FAILURE
    return _as_exit_status(status)


def _as_exit_status(status: object) -> int:
    if status is None:
        return ExitCode.SUCCESS
    if isinstance(status, int) and not isinstance(status, bool) and status in _KNOWN_CODES:
        return int(status)
    if isinstance(status, str) and status.strip():
        _emit(status)
    return ExitCode.FAILURE


def _emit(message: str) -> None:
    print(message.strip("\n"), file=sys.stderr)


__all__ = ["DEBUG_ENV", "ExitCode", "cli_entrypoint"]
