"""
agency config package public API.

File: src/agency/config/__init__.py

Purpose
- Export config loading/validation entrypoints and public error types.

Functional requirements
- Support loading from ``agency.toml`` + ``AGENCY_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from agency.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    env_overrides,
    effective_config,
    load_config,
    load_repo_config,
    normalize_paths,
)
from agency.config.schema import (
    DEFAULT_CONFIG,
    PATH_FIELDS,
    AgencyConfig,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
    validate_repo_overlay,
)

__all__ = [
    "AgencyConfig",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PATH_FIELDS",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "env_overrides",
    "effective_config",
    "load_config",
    "load_repo_config",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "redact_config",
    "validate_config",
    "validate_repo_overlay",
]
