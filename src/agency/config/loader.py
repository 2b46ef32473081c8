"""
agency — runtime config loader

File: src/agency/config/loader.py

Purpose
- Produce the effective runtime config for one invocation.

Functional requirements
- Layers, lowest first: built-in defaults, ``agency.toml`` (cwd or ``--config``),
  ``AGENCY_<SECTION>_<KEY>`` environment variables, CLI overrides.
- ``AGENCY_DATA_DIR`` is the only environment name for ``paths.data_dir``.
- Relative paths from the file resolve against the config file's directory;
  relative env and CLI paths resolve against the working directory.
- ``load_repo_config`` overlays a worktree's ``agency.toml`` ``[scripts]`` table.
- The result is validated after every layer that can introduce bad values.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from agency.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_repo_overlay,
)
from agency.constants import DATA_DIR_ENV, REPO_CONFIG_FILENAME

DEFAULT_CONFIG_FILE: Final[str] = REPO_CONFIG_FILENAME
ENV_PREFIX: Final[str] = "AGENCY_"

_TRUE_WORDS: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSE_WORDS: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

ConfigPath = tuple[str, ...]


class ConfigLoadError(ValueError):
    """The config file is missing or unreadable, or an override has the wrong type."""


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Merge every config layer; ``cli_overrides`` keys are dotted (``"paths.data_dir"``).

    An explicit ``config_path`` must exist; the implicit ``./agency.toml`` is optional.
    """

    if config_path is None:
        source = Path.cwd() / DEFAULT_CONFIG_FILE
    else:
        source = Path(config_path).expanduser()
    source = source.resolve()

    file_layer = assert_valid_config(
        merge_config(default_config(), _read_toml(source, required=config_path is not None))
    )
    config = normalize_paths(file_layer, base_dir=source.parent)
    cwd = Path.cwd()
    for layer in (
        env_overrides(os.environ if environ is None else environ),
        _nest_dotted(cli_overrides or {}),
    ):
        config = merge_config(config, normalize_paths(layer, base_dir=cwd))
    return assert_valid_config(config)


def load_repo_config(
    worktree_path: str | Path,
    base_config: Mapping[str, object],
) -> dict[str, Any]:
    """Return ``base_config`` with ``<worktree>/agency.toml`` ``[scripts]`` applied.

    Without that file the result equals ``base_config``.
    """

    payload = _read_toml(Path(worktree_path) / REPO_CONFIG_FILENAME, required=False)
    if not payload:
        return merge_config({}, base_config)
    return assert_valid_config(merge_config(base_config, validate_repo_overlay(payload)))


def env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect typed overrides for every scalar default present in ``environ``."""

    overrides: dict[str, Any] = {}
    for name, path, default in sorted(_env_bindings()):
        raw = environ.get(name)
        if raw is None:
            continue
        coerce = _COERCERS[type(default)]
        try:
            value = coerce(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {'.'.join(path)} {exc}") from None
        _put(overrides, path, value)
    return overrides


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Expand ``~``/``$VARS`` in path fields and anchor relative ones at ``base_dir``."""

    normalized = merge_config({}, config)
    for path in PATH_FIELDS:
        section = normalized.get(path[0])
        if not isinstance(section, dict):
            continue
        raw = section.get(path[1])
        if isinstance(raw, str) and raw:
            section[path[1]] = _anchor(raw, base_dir)
    return normalized


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    return redact_config(config)


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Compact, key-sorted JSON of the redacted config."""

    return json.dumps(
        effective_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError:
        if required:
            raise ConfigLoadError(f"config file not found: {path}") from None
        return {}
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _env_bindings() -> Iterator[tuple[str, ConfigPath, object]]:
    for path, default in _leaves(default_config()):
        if type(default) not in _COERCERS:
            continue
        if path == ("paths", "data_dir"):
            yield DATA_DIR_ENV, path, default
        else:
            yield ENV_PREFIX + "_".join(part.upper() for part in path), path, default


def _leaves(
    table: Mapping[str, object], prefix: ConfigPath = ()
) -> Iterator[tuple[ConfigPath, object]]:
    for key, value in table.items():
        if isinstance(value, Mapping):
            yield from _leaves(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _to_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUE_WORDS:
        return True
    if lowered in _FALSE_WORDS:
        return False
    raise ValueError("must be a boolean (true/false/1/0/yes/no/on/off)")


def _to_int(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ValueError("must be an integer") from None


def _to_float(raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ValueError("must be a number") from None


_COERCERS: Final[dict[type, Callable[[str], object]]] = {
    bool: _to_bool,
    int: _to_int,
    float: _to_float,
    str: str,
}


def _nest_dotted(flat: Mapping[str, object]) -> dict[str, Any]:
    nested: dict[str, Any] = {}
    for key in sorted(flat):
        value = flat[key]
        if value is None:
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _put(nested, path, value)
    return nested


def _put(target: dict[str, Any], path: ConfigPath, value: object) -> None:
    for part in path[:-1]:
        target = target.setdefault(part, {})
    target[path[-1]] = value


def _anchor(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw.strip())).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "effective_config",
    "env_overrides",
    "load_config",
    "load_repo_config",
    "normalize_paths",
]
