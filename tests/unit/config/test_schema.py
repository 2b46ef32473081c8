"""
agency — unit tests for config schema validation

File: tests/unit/config/test_schema.py

Purpose
- Validate strict config schema behavior, structured errors, and redaction.

What this test file should cover
- Defaults validate successfully.
- Rejects unknown keys, invalid types, and out-of-range values with actionable paths.
- Schema version mismatch carries migration guidance.
- Redaction is recursive and non-destructive.
"""

from __future__ import annotations

import pytest

from agency.config.schema import (
    ConfigSchemaVersion,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
    validate_repo_overlay,
)

pytestmark = pytest.mark.unit


def _issue_paths(config: object) -> dict[str, str]:
    result = validate_config(config)
    assert result.is_valid is False
    return {issue.path: issue.message for issue in result.issues}


def test_defaults_validate_successfully() -> None:
    result = validate_config(default_config())
    assert result.is_valid is True
    assert result.config == default_config()


def test_default_config_returns_independent_copies() -> None:
    first = default_config()
    first["scripts"]["verify"] = "mutated"
    assert default_config()["scripts"]["verify"] == ""


def test_unknown_key_rejection_is_explicit() -> None:
    config = merge_config(default_config(), {"scripts": {"lint": "ruff ."}, "extra": {}})
    paths = _issue_paths(config)
    assert paths == {"extra": "unknown field", "scripts.lint": "unknown field"}


def test_type_validation_reports_structured_paths() -> None:
    config = merge_config(
        default_config(),
        {"scripts": {"verify": 3}, "observability": {"log_to_stderr": "yes"}},
    )
    paths = _issue_paths(config)
    assert paths["scripts.verify"] == "expected string, got int"
    assert paths["observability.log_to_stderr"] == "expected boolean, got str"


@pytest.mark.parametrize(
    ("section", "key", "value", "message"),
    [
        ("scripts", "verify_timeout_seconds", 0, "must be > 0.0"),
        ("scripts", "archive_timeout_seconds", -1.5, "must be > 0.0"),
        ("scripts", "grace_period_seconds", -1, "must be >= 0.0"),
        ("scripts", "verify_timeout_seconds", float("inf"), "must be finite"),
        ("observability", "log_level", "TRACE", "invalid value 'TRACE'"),
    ],
)
def test_range_violation_reports_exact_path(
    section: str, key: str, value: object, message: str
) -> None:
    config = merge_config(default_config(), {section: {key: value}})
    paths = _issue_paths(config)
    assert paths[f"{section}.{key}"].startswith(message)


def test_missing_section_is_reported() -> None:
    config = default_config()
    del config["scripts"]  # type: ignore[misc]
    assert _issue_paths(config) == {"scripts": "missing required field"}


def test_schema_version_mismatch_carries_migration_guidance() -> None:
    config = merge_config(default_config(), {"meta": {"schema_version": ConfigSchemaVersion + 1}})
    assert "upgrade the agency runtime" in _issue_paths(config)["meta.schema_version"]


def test_repo_overlay_accepts_partial_scripts() -> None:
    assert validate_repo_overlay({"scripts": {"archive": "make clean"}}) == {
        "scripts": {"archive": "make clean"}
    }
    assert validate_repo_overlay({}) == {}


def test_assert_valid_config_raises_with_rendered_issues() -> None:
    with pytest.raises(ValueError, match=r"- scripts\.verify: must not contain NUL bytes"):
        assert_valid_config(merge_config(default_config(), {"scripts": {"verify": "a\x00b"}}))


def test_redaction_is_recursive_and_preserves_shape() -> None:
    payload = {"scripts": {"verify": "make"}, "nested": {"apiToken": "x", "deep": {"password": 1}}}
    redacted = redact_config(payload)
    assert redacted == {
        "nested": {"apiToken": "<redacted>", "deep": {"password": "<redacted>"}},
        "scripts": {"verify": "make"},
    }
    assert payload["nested"]["apiToken"] == "x"
    assert redact_config(["not", "a", "mapping"]) == {}
