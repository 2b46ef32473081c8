"""
agency — configuration schema

File: src/agency/config/schema.py

Purpose
- Built-in defaults and strict validation for ``agency.toml``.

Functional requirements
- Every field is declared once in ``_SCHEMA`` with its kind and bounds; the
  validator walks that table and reports every problem as a
  ``ConfigValidationIssue(path, message)`` instead of stopping at the first.
- Unknown keys are rejected. Keys that look like credentials get a pointed
  message: secrets reach scripts through the environment, never the file.
- A ``meta.schema_version`` mismatch carries migration guidance.
- Per-repo overlays (``<worktree>/agency.toml``) may only set ``[scripts]``
  and may set any subset of it.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from agency.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_ARCHIVE_TIMEOUT_SECONDS,
    DEFAULT_DATA_DIR,
    DEFAULT_GRACE_PERIOD_SECONDS,
    DEFAULT_VERIFY_TIMEOUT_SECONDS,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
REDACTED_CONFIG_VALUE: Final[str] = "<redacted>"

# Relative values are anchored at the config file's directory by the loader.
PATH_FIELDS: Final[tuple[tuple[str, str], ...]] = (
    ("paths", "data_dir"),
    ("observability", "log_dir"),
)

REPO_OVERLAY_SECTIONS: Final[frozenset[str]] = frozenset({"scripts"})

_SECRET_WORDS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "private", "credential", "auth"}
)
_SECRET_PHRASES: Final[tuple[str, ...]] = ("api_key", "access_token", "private_key")
_WORD_SPLIT: Final[re.Pattern[str]] = re.compile(r"[^a-z0-9]+")
_CAMEL_HUMP: Final[re.Pattern[str]] = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


class MetaConfig(TypedDict):
    schema_version: int


class PathsConfig(TypedDict):
    data_dir: str


class ScriptsConfig(TypedDict):
    verify: str
    archive: str
    verify_timeout_seconds: float
    archive_timeout_seconds: float
    grace_period_seconds: float


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stderr: bool
    redact_secrets: bool


class AgencyConfig(TypedDict):
    meta: MetaConfig
    paths: PathsConfig
    scripts: ScriptsConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[AgencyConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "paths": {"data_dir": DEFAULT_DATA_DIR},
    "scripts": {
        "verify": "",
        "archive": "",
        "verify_timeout_seconds": DEFAULT_VERIFY_TIMEOUT_SECONDS,
        "archive_timeout_seconds": DEFAULT_ARCHIVE_TIMEOUT_SECONDS,
        "grace_period_seconds": DEFAULT_GRACE_PERIOD_SECONDS,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "",
        "log_to_stderr": False,
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """``config`` is the normalized payload, or ``None`` when ``issues`` is non-empty."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


# ---------------------------------------------------------------------------
# Field table
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class _Field:
    kind: Literal["script", "path", "optional_path", "float", "int", "bool", "level"]
    minimum: float | None = None
    exclusive_minimum: float | None = None


_SCHEMA: Final[dict[str, dict[str, _Field]]] = {
    "meta": {"schema_version": _Field("int", minimum=1)},
    "paths": {"data_dir": _Field("path")},
    "scripts": {
        "verify": _Field("script"),
        "archive": _Field("script"),
        "verify_timeout_seconds": _Field("float", exclusive_minimum=0.0),
        "archive_timeout_seconds": _Field("float", exclusive_minimum=0.0),
        "grace_period_seconds": _Field("float", minimum=0.0),
    },
    "observability": {
        "log_level": _Field("level"),
        "log_dir": _Field("optional_path"),
        "log_to_stderr": _Field("bool"),
        "redact_secrets": _Field("bool"),
    },
}


_FIELD_NAMES: Final[frozenset[str]] = frozenset(
    key for fields in _SCHEMA.values() for key in fields
)


class _Invalid(Exception):
    """One field failed; carries the message for its issue."""


def _check(value: object, field: _Field) -> object:
    kind = field.kind
    if kind in ("script", "path", "optional_path", "level"):
        if not isinstance(value, str):
            raise _Invalid(f"expected string, got {type(value).__name__}")
        if "\x00" in value:
            raise _Invalid("must not contain NUL bytes")
        if kind == "script":
            # Empty means "not configured"; anything else is kept verbatim.
            return value if value.strip() else ""
        text = value.strip()
        if kind == "optional_path":
            return text
        if not text:
            raise _Invalid("must not be empty")
        if kind == "level" and text not in LOG_LEVELS:
            raise _Invalid(f"invalid value {text!r}; expected one of: {', '.join(LOG_LEVELS)}")
        return text

    if kind == "bool":
        if not isinstance(value, bool):
            raise _Invalid(f"expected boolean, got {type(value).__name__}")
        return value

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        expected = "integer" if kind == "int" else "number"
        raise _Invalid(f"expected {expected}, got {type(value).__name__}")
    if kind == "int" and not isinstance(value, int):
        raise _Invalid(f"expected integer, got {type(value).__name__}")
    number = value if kind == "int" else float(value)
    if not math.isfinite(number):
        raise _Invalid("must be finite")
    if field.minimum is not None and number < field.minimum:
        raise _Invalid(f"must be >= {field.minimum}")
    if field.exclusive_minimum is not None and number <= field.exclusive_minimum:
        raise _Invalid(f"must be > {field.exclusive_minimum}")
    return number


def _validate_tables(
    payload: object,
    sections: Mapping[str, Mapping[str, _Field]],
    *,
    partial: bool,
) -> tuple[dict[str, Any], list[ConfigValidationIssue]]:
    issues: list[ConfigValidationIssue] = []
    if not isinstance(payload, Mapping):
        issues.append(
            ConfigValidationIssue("<root>", f"expected object, got {type(payload).__name__}")
        )
        return {}, issues

    out: dict[str, Any] = {}
    _unknown_keys(payload, sections, "", issues)
    for name in sorted(sections):
        if name not in payload:
            if not partial:
                issues.append(ConfigValidationIssue(name, "missing required field"))
            continue
        table = payload[name]
        if not isinstance(table, Mapping):
            issues.append(
                ConfigValidationIssue(name, f"expected object, got {type(table).__name__}")
            )
            continue
        fields = sections[name]
        _unknown_keys(table, fields, name, issues)
        parsed: dict[str, Any] = {}
        for key in sorted(fields):
            path = f"{name}.{key}"
            if key not in table:
                if not partial:
                    issues.append(ConfigValidationIssue(path, "missing required field"))
                continue
            try:
                parsed[key] = _check(table[key], fields[key])
            except _Invalid as exc:
                issues.append(ConfigValidationIssue(path, str(exc)))
        out[name] = parsed

    version = out.get("meta", {}).get("schema_version")
    if version is not None and version != ConfigSchemaVersion:
        issues.append(ConfigValidationIssue("meta.schema_version", migration_guidance(version)))
    return out, issues


def _unknown_keys(
    payload: Mapping[Any, object],
    known: Mapping[str, object],
    prefix: str,
    issues: list[ConfigValidationIssue],
) -> None:
    for key in sorted(payload, key=str):
        if key in known:
            continue
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(key, str) and looks_sensitive(key):
            issues.append(
                ConfigValidationIssue(
                    path,
                    "embedded secret values are forbidden; export them to scripts via the "
                    "environment",
                )
            )
        else:
            issues.append(ConfigValidationIssue(path, "unknown field"))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def default_config() -> AgencyConfig:
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade agency.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the agency runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; neither input is modified."""

    merged: dict[str, Any] = {}
    for source in (base, overlay):
        for key, value in source.items():
            current = merged.get(key)
            if isinstance(value, Mapping):
                merged[key] = merge_config(current if isinstance(current, dict) else {}, value)
            else:
                merged[key] = copy.deepcopy(value)
    return {key: merged[key] for key in sorted(merged)}


def validate_config(config: object) -> ConfigValidationResult:
    normalized, issues = _validate_tables(config, _SCHEMA, partial=False)
    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: object) -> dict[str, Any]:
    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def validate_repo_overlay(payload: object) -> dict[str, Any]:
    """Return the validated ``[scripts]`` subset of a worktree's ``agency.toml``."""

    sections = {name: _SCHEMA[name] for name in REPO_OVERLAY_SECTIONS}
    overlay, issues = _validate_tables(payload, sections, partial=True)
    if issues:
        raise ConfigValidationError(issues)
    return overlay


def looks_sensitive(key: str) -> bool:
    """``apiToken``, ``client_secret``, ``db-password`` and the like."""

    words = _WORD_SPLIT.sub("_", _CAMEL_HUMP.sub("_", key.strip()).lower()).strip("_")
    if any(phrase in words for phrase in _SECRET_PHRASES):
        return True
    return any(word in _SECRET_WORDS for word in words.split("_"))


def redact_config(config: object) -> dict[str, Any]:
    """Copy of ``config`` with credential-looking keys masked, for dumps and logs."""

    if not isinstance(config, Mapping):
        return {}
    return {
        key: REDACTED_CONFIG_VALUE
        if key not in _FIELD_NAMES and looks_sensitive(str(key))
        else redact_config(value)
        if isinstance(value, Mapping)
        else copy.deepcopy(value)
        for key, value in sorted(config.items())
    }


__all__ = [
    "AgencyConfig",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "REDACTED_CONFIG_VALUE",
    "REPO_OVERLAY_SECTIONS",
    "assert_valid_config",
    "default_config",
    "looks_sensitive",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
    "validate_repo_overlay",
]
