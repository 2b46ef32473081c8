"""
agency — unit tests for config loader

File: tests/unit/config/test_loader.py

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- ``AGENCY_DATA_DIR`` short form and type coercion of env values.
- Path normalization relative to the config file (file values) or cwd (env and CLI).
- Per-repo ``[scripts]`` overlay.
- Redacted effective config dumping.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from agency.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    load_config,
    load_repo_config,
)
from agency.config.schema import ConfigValidationError, default_config
from agency.constants import DEFAULT_VERIFY_TIMEOUT_SECONDS

pytestmark = pytest.mark.unit


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "agency.toml"
    default_path = tmp_path / "default.toml"
    _write_config(default_path, "")
    _write_config(
        config_path,
        """
[scripts]
verify_timeout_seconds = 60
""".strip(),
    )

    env = {"AGENCY_SCRIPTS_VERIFY_TIMEOUT_SECONDS": "90"}
    default_loaded = load_config(default_path, environ={})
    file_loaded = load_config(config_path, environ={})
    env_loaded = load_config(config_path, environ=env)
    cli_loaded = load_config(
        config_path,
        environ=env,
        cli_overrides={"scripts.verify_timeout_seconds": 120.0},
    )

    assert default_loaded["scripts"]["verify_timeout_seconds"] == DEFAULT_VERIFY_TIMEOUT_SECONDS
    assert file_loaded["scripts"]["verify_timeout_seconds"] == 60.0
    assert env_loaded["scripts"]["verify_timeout_seconds"] == 90.0
    assert cli_loaded["scripts"]["verify_timeout_seconds"] == 120.0


def test_data_dir_env_short_form_and_relative_paths(tmp_path: Path) -> None:
    config_path = tmp_path / "conf" / "agency.toml"
    _write_config(
        config_path,
        """
[paths]
data_dir = "state"
""".strip(),
    )

    from_file = load_config(config_path, environ={})
    assert from_file["paths"]["data_dir"] == (tmp_path / "conf" / "state").as_posix()

    from_env = load_config(config_path, environ={"AGENCY_DATA_DIR": "/srv/agency"})
    assert from_env["paths"]["data_dir"] == "/srv/agency"

    long_form = load_config(config_path, environ={"AGENCY_PATHS_DATA_DIR": "/ignored"})
    assert long_form["paths"]["data_dir"] == from_file["paths"]["data_dir"]



def test_relative_env_and_cli_paths_resolve_against_cwd(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config_path = tmp_path / "conf" / "agency.toml"
    _write_config(config_path, '[observability]\nlog_dir = "logs"\n')
    workdir = tmp_path / "work"
    workdir.mkdir()
    monkeypatch.chdir(workdir)

    from_env = load_config(config_path, environ={"AGENCY_DATA_DIR": "env-state"})
    assert from_env["paths"]["data_dir"] == (workdir / "env-state").as_posix()
    assert from_env["observability"]["log_dir"] == (tmp_path / "conf" / "logs").as_posix()

    from_cli = load_config(
        config_path,
        environ={"AGENCY_DATA_DIR": "env-state"},
        cli_overrides={"paths.data_dir": "./cli-state"},
    )
    assert from_cli["paths"]["data_dir"] == (workdir / "cli-state").as_posix()


def test_env_booleans_are_coerced(tmp_path: Path) -> None:
    config_path = tmp_path / "agency.toml"
    _write_config(config_path, "")

    loaded = load_config(config_path, environ={"AGENCY_OBSERVABILITY_LOG_TO_STDERR": "yes"})
    assert loaded["observability"]["log_to_stderr"] is True

    with pytest.raises(ConfigLoadError, match="must be a boolean"):
        load_config(config_path, environ={"AGENCY_OBSERVABILITY_LOG_TO_STDERR": "maybe"})
    with pytest.raises(ConfigLoadError, match="must be a number"):
        load_config(config_path, environ={"AGENCY_SCRIPTS_GRACE_PERIOD_SECONDS": "soon"})


def test_explicit_missing_file_and_bad_toml_fail(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})

    broken = tmp_path / "broken.toml"
    _write_config(broken, "[scripts\nverify = ")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})


def test_unknown_and_secret_fields_are_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "agency.toml"
    _write_config(
        config_path,
        """
[scripts]
verfy = "make test"
api_token = "abc"
""".strip(),
    )

    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(config_path, environ={})
    paths = {issue.path: issue.message for issue in excinfo.value.issues}
    assert paths["scripts.verfy"] == "unknown field"
    assert "secret" in paths["scripts.api_token"]


def test_repo_overlay_sets_scripts_only(tmp_path: Path) -> None:
    base = default_config()
    worktree = tmp_path / "wt"
    worktree.mkdir()

    assert load_repo_config(worktree, base) == base

    _write_config(
        worktree / "agency.toml",
        """
[scripts]
verify = "make check"
verify_timeout_seconds = 5
""".strip(),
    )
    merged = load_repo_config(worktree, base)
    assert merged["scripts"]["verify"] == "make check"
    assert merged["scripts"]["verify_timeout_seconds"] == 5.0
    assert merged["paths"] == base["paths"]

    _write_config(worktree / "agency.toml", '[paths]\ndata_dir = "/elsewhere"\n')
    with pytest.raises(ConfigValidationError) as excinfo:
        load_repo_config(worktree, base)
    assert [issue.path for issue in excinfo.value.issues] == ["paths"]


def test_dump_effective_config_is_stable_json(tmp_path: Path) -> None:
    config_path = tmp_path / "agency.toml"
    _write_config(config_path, '[scripts]\nverify = "pytest -q"\n')

    first = dump_effective_config(load_config(config_path, environ={}))
    second = dump_effective_config(load_config(config_path, environ={}))

    assert first == second
    parsed = json.loads(first)
    assert parsed["scripts"]["verify"] == "pytest -q"
    assert list(parsed) == sorted(parsed)
