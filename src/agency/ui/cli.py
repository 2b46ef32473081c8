"""Command-line interface router for agency."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import time
import uuid
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from agency.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    effective_config,
    load_config,
)
from agency.control_plane import (
    CleanService,
    VerifyService,
    evaluate_promotion,
    lookup_run,
)
from agency.domain.models import Event, utc_now_rfc3339
from agency.errors import AgencyError, ErrorCode, error_code_of, exit_code_for
from agency.observability import correlation_scope, setup_logging, shutdown_logging
from agency.persistence import RepoLock, Store, scan_all_runs
from agency.persistence.event_log import (
    EVENT_CMD_END,
    EVENT_CMD_START,
    append_event,
    cmd_end_data,
    cmd_start_data,
)
from agency.ui.render import CLIRenderer, create_renderer, run_state
from agency.utils.concurrency import CancellationToken, cancel_on_signals

CONFIRM_WORD = "clean"


class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    def __init__(self, message: str, exit_code: int = 2) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for every agency command."""

    parser = argparse.ArgumentParser(
        prog="agency",
        description=(
            "agency — run orchestration for isolated coding-agent runs.\n\n"
            "Common workflows:\n"
            "  agency ls                   List active runs\n"
            "  agency verify <run>         Run the repo's verify script\n"
            "  agency gate <run>           Check whether a run may be promoted\n"
            "  agency clean <run> --yes    Archive a run and remove its worktree\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to agency TOML config (default: ./agency.toml if present).",
    )
    common.add_argument(
        "--data-dir",
        default=None,
        help="Override the data directory (also AGENCY_DATA_DIR).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output and mirror logs to stderr.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument("--json", action="store_true", help="Emit JSON output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # ls ------------------------------------------------------------------
    ls_parser = subparsers.add_parser(
        "ls",
        parents=[common],
        help="List runs across all repos",
        description=(
            "List runs. Archived runs are hidden unless --all is given; broken runs\n"
            "are always listed last.\n\n"
            "Examples:\n"
            "  agency ls\n"
            "  agency ls --all --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    ls_parser.add_argument("--all", action="store_true", help="Include archived runs")
    ls_parser.set_defaults(handler=_cmd_ls)

    # show ----------------------------------------------------------------
    show_parser = subparsers.add_parser(
        "show",
        parents=[common],
        help="Show one run's metadata and last verify result",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    show_parser.add_argument("ref", help="Run name, run id, or unique run id prefix")
    show_parser.set_defaults(handler=_cmd_show)

    # verify --------------------------------------------------------------
    verify_parser = subparsers.add_parser(
        "verify",
        parents=[common],
        help="Run the verify script for a run",
        description=(
            "Run the configured verify script inside the run's worktree and record\n"
            "the verdict. Ctrl-C cancels the script and still writes the record.\n\n"
            "Examples:\n"
            "  agency verify fix-login\n"
            "  agency verify 20260101120000-ab12 --timeout 600\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    verify_parser.add_argument("ref", help="Run name, run id, or unique run id prefix")
    verify_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Timeout in seconds (default: [scripts] verify_timeout_seconds)",
    )
    verify_parser.set_defaults(handler=_cmd_verify)

    # clean ---------------------------------------------------------------
    clean_parser = subparsers.add_parser(
        "clean",
        parents=[common],
        help="Archive a run: archive script, kill session, delete worktree",
        description=(
            "Tear a run down. Every step runs even if an earlier one fails;\n"
            "run metadata is kept and marked archived.\n\n"
            "Examples:\n"
            "  agency clean fix-login\n"
            "  agency clean fix-login --yes --repo-root ~/src/app\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    clean_parser.add_argument("ref", help="Run name, run id, or unique run id prefix")
    clean_parser.add_argument(
        "--repo-root",
        default=None,
        help="Repository root used for `git worktree remove` (default: from repo.json)",
    )
    clean_parser.add_argument(
        "--yes",
        "-y",
        action="store_true",
        default=False,
        help="Skip the interactive confirmation",
    )
    clean_parser.set_defaults(handler=_cmd_clean)

    # gate ----------------------------------------------------------------
    gate_parser = subparsers.add_parser(
        "gate",
        parents=[common],
        help="Check the last verify result before promotion",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    gate_parser.add_argument("ref", help="Run name, run id, or unique run id prefix")
    gate_parser.add_argument(
        "--force",
        action="store_true",
        default=False,
        help="Allow promotion even though verify did not pass",
    )
    gate_parser.set_defaults(handler=_cmd_gate)

    # lock ----------------------------------------------------------------
    lock_parser = subparsers.add_parser(
        "lock",
        parents=[common],
        help="Show who holds a repo lock",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    lock_parser.add_argument("repo_id", help="Repository id")
    lock_parser.set_defaults(handler=_cmd_lock)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show effective configuration (redacted)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code.

    ``AgencyError`` propagates to the caller, which owns error formatting.
    """

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    config = _load_effective_config(namespace)
    setup_logging(
        config["observability"],
        invocation_id=uuid.uuid4().hex,
        log_to_stderr=True if _flag(namespace, "verbose") else None,
    )
    try:
        with correlation_scope(operation=namespace.command):
            result = handler(namespace, config)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    finally:
        shutdown_logging()
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_ls(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    records = scan_all_runs(_store(config))
    if not _flag(args, "all"):
        records = [record for record in records if not record.archived]

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "ls",
                "runs": [
                    {
                        "repo_id": record.repo_id,
                        "run_id": record.run_id,
                        "name": record.name,
                        "state": run_state(record),
                        "created_at": record.meta.created_at if record.meta else None,
                        "error": record.error,
                    }
                    for record in records
                ],
            }
        )
        return 0

    _get_renderer(args).runs(records)
    return 0


def _cmd_show(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    store = _store(config)
    record = lookup_run(store, _require_str(args.ref, "ref"), include_archived=True)
    verify = None
    if not record.broken:
        verify = store.read_execution_record(
            store.verify_record_path(record.repo_id, record.run_id)
        )

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "show",
                "repo_id": record.repo_id,
                "run_id": record.run_id,
                "broken": record.broken,
                "error": record.error,
                "meta": record.meta.to_dict() if record.meta else None,
                "repo": record.repo,
                "verify": verify.to_dict() if verify else None,
            }
        )
        return 0

    renderer = _get_renderer(args)
    renderer.kv("run_id", record.run_id)
    renderer.kv("repo_id", record.repo_id)
    renderer.kv("state", run_state(record))
    if record.meta is None:
        renderer.kv("error", record.error or "meta.json unreadable")
        return 0
    meta = record.meta
    renderer.kv("name", meta.name or "-")
    renderer.kv("branch", meta.branch or "-")
    renderer.kv("worktree", meta.worktree_path or "-")
    renderer.kv("created_at", meta.created_at)
    renderer.kv("last_verify_at", meta.last_verify_at or "-")
    if meta.flags.needs_attention:
        renderer.kv("needs_attention", meta.flags.needs_attention_reason or "yes")
    if meta.archive.archived_at:
        renderer.kv("archived_at", meta.archive.archived_at)
    if verify is not None:
        renderer.section("Last verify:")
        renderer.execution_record(verify)
    return 0


def _cmd_verify(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    service = VerifyService(_data_dir(config), config=config)
    ref = _require_str(args.ref, "ref")

    async def _run() -> Any:
        token = CancellationToken()
        with cancel_on_signals(token):
            return await service.verify_run(ref, timeout_seconds=args.timeout, cancel_token=token)

    result = asyncio.run(_run())
    record = result.record

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "verify",
                "record": record.to_dict(),
                "record_path": str(result.record_path),
                "event_append_errors": list(result.event_append_errors),
            }
        )
    else:
        _get_renderer(args).execution_record(record)

    if record.ok:
        return 0
    code = ErrorCode.SCRIPT_TIMEOUT if record.timed_out else ErrorCode.SCRIPT_FAILED
    raise AgencyError(
        code,
        f"verify failed: {record.summary}",
        details={"repo_id": result.repo_id, "run_id": result.run_id, "log": record.log_path},
    )


def _cmd_clean(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    ref = _require_str(args.ref, "ref")
    if not _flag(args, "yes"):
        _confirm_clean(ref)

    service = CleanService(_data_dir(config), config=config)
    repo_root = _optional_path(args.repo_root)

    async def _run() -> Any:
        token = CancellationToken()
        with cancel_on_signals(token):
            return await service.clean_run(ref, repo_root=repo_root, cancel_token=token)

    result = asyncio.run(_run())

    if _flag(args, "json"):
        outcome = result.archive
        _emit_json(
            {
                "command": "clean",
                "repo_id": result.repo_id,
                "run_id": result.run_id,
                "ok": result.ok,
                "already_archived": result.already_archived,
                "script_ok": outcome.script_ok,
                "script_reason": outcome.script_reason,
                "tmux_ok": outcome.tmux_ok,
                "tmux_reason": outcome.tmux_reason,
                "delete_ok": outcome.delete_ok,
                "delete_reason": outcome.delete_reason,
                "log_path": outcome.log_path,
                "event_append_errors": list(result.event_append_errors),
            }
        )
    else:
        renderer = _get_renderer(args)
        if result.already_archived:
            renderer.text("already archived")
            return 0
        renderer.archive_result(result.archive)
        for message in result.event_append_errors:
            renderer.warning(f"event append failed: {message}")

    error = result.to_error()
    if error is not None:
        raise error
    return 0


def _cmd_gate(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    store = _store(config)
    record = lookup_run(store, _require_str(args.ref, "ref"))
    if record.broken:
        raise AgencyError(
            ErrorCode.RUN_BROKEN,
            "run exists but meta.json is unreadable or invalid",
            details={"repo_id": record.repo_id, "run_id": record.run_id},
        )
    repo_id, run_id = record.repo_id, record.run_id
    events_path = store.events_path(repo_id, run_id)
    started = time.monotonic()
    args_list = ["--force"] if _flag(args, "force") else []
    _append_best_effort(
        events_path,
        Event(
            repo_id=repo_id,
            run_id=run_id,
            event=EVENT_CMD_START,
            data=cmd_start_data("gate", args_list),
            timestamp=utc_now_rfc3339(),
        ),
    )

    error: AgencyError | None = None
    decision = None
    try:
        verify = store.read_execution_record(store.verify_record_path(repo_id, run_id))
        decision = evaluate_promotion(verify, force=_flag(args, "force"))
        if not decision.allowed and decision.code is not None:
            error = AgencyError(
                decision.code,
                f"promotion blocked: {decision.reason}",
                details={"repo_id": repo_id, "run_id": run_id},
            )
    except AgencyError as exc:
        error = exc

    extra: dict[str, object] = {}
    if decision is not None:
        extra = {"allowed": decision.allowed, "forced": decision.forced}
    blocking_code = decision.code if decision is not None else error_code_of(error)
    _append_best_effort(
        events_path,
        Event(
            repo_id=repo_id,
            run_id=run_id,
            event=EVENT_CMD_END,
            data=cmd_end_data(
                "gate",
                exit_code=exit_code_for(error),
                duration_ms=int((time.monotonic() - started) * 1000),
                error_code=blocking_code.value if blocking_code is not None else None,
                extra=extra,
            ),
            timestamp=utc_now_rfc3339(),
        ),
    )
    if error is not None:
        raise error

    if decision is None:
        raise AgencyError(ErrorCode.INTERNAL, "promotion gate produced no decision")
    if _flag(args, "json"):
        _emit_json(
            {
                "command": "gate",
                "repo_id": repo_id,
                "run_id": run_id,
                "allowed": decision.allowed,
                "forced": decision.forced,
                "code": decision.code.value if decision.code else None,
                "reason": decision.reason,
            }
        )
        return 0

    renderer = _get_renderer(args)
    if decision.forced and decision.code is not None:
        renderer.warning(f"forcing promotion past {decision.code.value}: {decision.reason}")
    renderer.status(True, f"promotion allowed for {run_id}")
    return 0


def _cmd_lock(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    status = RepoLock(_data_dir(config)).inspect(_require_str(args.repo_id, "repo_id"))
    holder = status.holder

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "lock",
                "repo_id": status.repo_id,
                "path": str(status.path),
                "held": status.held,
                "holder": holder.to_dict() if holder is not None else None,
                "holder_alive": status.holder_alive,
            }
        )
        return 0

    renderer = _get_renderer(args)
    renderer.kv("repo_id", status.repo_id)
    renderer.kv("held", "yes" if status.held else "no")
    if holder is not None and status.held:
        renderer.kv("holder", holder.describe())
        if status.holder_alive is False:
            renderer.warning("holder process is gone; the lock will be free on next attempt")
    return 0


def _cmd_config(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    if _flag(args, "json"):
        print(dump_effective_config(config))
        return 0
    _get_renderer(args).text(json.dumps(effective_config(config), indent=2, sort_keys=True))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, object] = {}
    data_dir = _optional_str(getattr(args, "data_dir", None))
    if data_dir is not None:
        overrides["paths.data_dir"] = data_dir
    try:
        return load_config(
            _optional_str(getattr(args, "config_path", None)),
            cli_overrides=overrides,
        )
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise AgencyError(ErrorCode.INVALID_CONFIG, str(exc)) from exc


def _data_dir(config: Mapping[str, Any]) -> Path:
    return Path(str(config["paths"]["data_dir"])).expanduser()


def _store(config: Mapping[str, Any]) -> Store:
    return Store(_data_dir(config))


def _confirm_clean(ref: str) -> None:
    if not (sys.stdin.isatty() and sys.stderr.isatty()):
        raise AgencyError(
            ErrorCode.USAGE,
            "clean needs confirmation; pass --yes when not running interactively",
        )
    sys.stderr.write(f"This archives run {ref!r} and deletes its worktree.\n")
    sys.stderr.write(f"Type {CONFIRM_WORD!r} to continue: ")
    sys.stderr.flush()
    answer = sys.stdin.readline().strip()
    if answer != CONFIRM_WORD:
        raise CLIError("clean aborted", exit_code=1)


def _append_best_effort(path: Path, event: Event) -> None:
    try:
        append_event(path, event)
    except OSError as exc:
        print(f"warning: event append failed: {exc}", file=sys.stderr)


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise CLIError(f"invalid {name}: expected string")
    cleaned = value.strip()
    if not cleaned:
        raise CLIError(f"invalid {name}: value cannot be empty")
    return cleaned


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise CLIError("invalid optional string argument")
    cleaned = value.strip()
    return cleaned or None


def _optional_path(value: object) -> Path | None:
    cleaned = _optional_str(value)
    return Path(cleaned).expanduser().resolve() if cleaned else None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "run_cli"]
