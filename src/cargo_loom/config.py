"""Configuration for the loom test runner.

Options come from command-line flags, environment variables (optionally
loaded from a .env file) and an optional YAML settings file. The settings
file only supplies defaults; flags and environment variables win.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import jsonschema
import yaml

from cargo_loom.constants import (
    DEFAULT_CHECKPOINT_INTERVAL,
    DEFAULT_LOOM_LOG,
    DEFAULT_MAX_BRANCHES,
    DEFAULT_MAX_THREADS,
    DEFAULT_SETTINGS_FILE,
    CHECKPOINT_LAYOUTS,
    ENV_CHECKPOINT_FILE,
    ENV_CHECKPOINT_INTERVAL,
    ENV_LOOM_LOCATION,
    ENV_LOOM_LOG,
    ENV_MAX_BRANCHES,
    ENV_MAX_DURATION,
    ENV_MAX_PERMUTATIONS,
    ENV_MAX_THREADS,
    MAX_THREADS_LIMIT,
)
from cargo_loom.errors import LoomError


class ConfigError(LoomError):
    """Raised when configuration is missing or invalid."""
    pass


@dataclass(frozen=True)
class LoomOptions:
    """Options forwarded to loom through the test binary's environment."""

    max_branches: int = DEFAULT_MAX_BRANCHES
    max_permutations: Optional[int] = None
    max_threads: int = DEFAULT_MAX_THREADS
    checkpoint_interval: int = DEFAULT_CHECKPOINT_INTERVAL
    max_duration_secs: Optional[int] = None
    loom_log: str = DEFAULT_LOOM_LOG
    test_args: Tuple[str, ...] = ()

    def validate(self) -> "LoomOptions":
        """Check value ranges, raising ConfigError on the first bad value."""
        if self.max_branches < 1:
            raise ConfigError(f"max_branches must be at least 1, got {self.max_branches}")
        if self.max_permutations is not None and self.max_permutations < 1:
            raise ConfigError(
                f"max_permutations must be at least 1, got {self.max_permutations}"
            )
        if not 1 <= self.max_threads <= MAX_THREADS_LIMIT:
            raise ConfigError(
                f"max_threads must be between 1 and {MAX_THREADS_LIMIT}, got {self.max_threads}"
            )
        if self.checkpoint_interval < 1:
            raise ConfigError(
                f"checkpoint_interval must be at least 1, got {self.checkpoint_interval}"
            )
        if self.max_duration_secs is not None and self.max_duration_secs < 1:
            raise ConfigError(
                f"max_duration_secs must be at least 1, got {self.max_duration_secs}"
            )
        return self

    def base_env(self) -> Dict[str, str]:
        """Environment shared by every loom invocation."""
        env = {ENV_MAX_BRANCHES: str(self.max_branches)}
        if self.max_permutations is not None:
            env[ENV_MAX_PERMUTATIONS] = str(self.max_permutations)
        env[ENV_MAX_THREADS] = str(self.max_threads)
        return env

    def discovery_env(self) -> Dict[str, str]:
        """
        Environment for the discovery pass.

        No checkpoints, logging, or location capture. The duration limit is
        only applied here; diagnostic re-runs are slower and unbounded.
        """
        env = self.base_env()
        if self.max_duration_secs is not None:
            env[ENV_MAX_DURATION] = str(self.max_duration_secs)
        env[ENV_LOOM_LOG] = "off"
        return env

    def checkpoint_env(self, checkpoint: Path) -> Dict[str, str]:
        """Environment for generating the checkpoint of one failing case."""
        env = self.base_env()
        env[ENV_CHECKPOINT_INTERVAL] = str(self.checkpoint_interval)
        env[ENV_CHECKPOINT_FILE] = str(checkpoint)
        return env

    def diagnostic_env(self, checkpoint: Path) -> Dict[str, str]:
        """Environment for re-running one failing case from its checkpoint."""
        env = self.checkpoint_env(checkpoint)
        env[ENV_LOOM_LOG] = self.loom_log
        env[ENV_LOOM_LOCATION] = "1"
        return env


@dataclass(frozen=True)
class CargoOptions:
    """Options that shape the underlying `cargo test --no-run` invocation."""

    manifest_path: Optional[Path] = None
    packages: Tuple[str, ...] = ()
    workspace: bool = False
    exclude: Tuple[str, ...] = ()
    features: Tuple[str, ...] = ()
    all_features: bool = False
    no_default_features: bool = False
    lib: bool = False
    tests: bool = False
    release: bool = True
    extra_rustflags: str = field(default_factory=lambda: os.environ.get("RUSTFLAGS", ""))


# =============================================================================
# SETTINGS FILE
# =============================================================================

_POSITIVE_INT = {"type": "integer", "minimum": 1}
_STRING_LIST = {"type": "array", "items": {"type": "string"}}

SETTINGS_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "max_branches": _POSITIVE_INT,
        "max_permutations": {"oneOf": [_POSITIVE_INT, {"type": "null"}]},
        "max_threads": {"type": "integer", "minimum": 1, "maximum": MAX_THREADS_LIMIT},
        "checkpoint_interval": _POSITIVE_INT,
        "max_duration_secs": {"oneOf": [_POSITIVE_INT, {"type": "null"}]},
        "loom_log": {"type": "string"},
        "manifest_path": {"type": "string"},
        "package": _STRING_LIST,
        "workspace": {"type": "boolean"},
        "exclude": _STRING_LIST,
        "features": _STRING_LIST,
        "all_features": {"type": "boolean"},
        "no_default_features": {"type": "boolean"},
        "lib": {"type": "boolean"},
        "tests": {"type": "boolean"},
        "color": {"enum": ["auto", "always", "never"]},
        "message_format": {"enum": ["human", "json"]},
        "log_level": {"enum": ["debug", "info", "warning", "error"]},
        "run_id": {"type": "string", "minLength": 1},
        "checkpoint_layout": {"enum": CHECKPOINT_LAYOUTS},
    },
}


def _validate_settings(data: dict, filename: str) -> List[str]:
    """Validate settings against SETTINGS_SCHEMA, returning every error."""
    errors = []
    validator = jsonschema.Draft7Validator(SETTINGS_SCHEMA)
    for error in validator.iter_errors(data):
        path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "(root)"
        errors.append(f"{filename}: {error.message} at {path}")
    return errors


def load_settings(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load option defaults from a YAML settings file.

    Args:
        path: Explicit settings file. If None, `cargo-loom.yaml` in the
              current directory is used when it exists.

    Returns:
        Mapping of option name to default value (empty if no file).

    Raises:
        ConfigError: If an explicit file is missing, the YAML does not parse,
                     or the contents do not match the settings schema.
    """
    if path is None:
        path = Path(DEFAULT_SETTINGS_FILE)
        if not path.is_file():
            return {}
    elif not path.is_file():
        raise ConfigError(f"Settings file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        if hasattr(e, "problem_mark") and e.problem_mark:
            mark = e.problem_mark
            raise ConfigError(
                f"{path}: YAML parse error at line {mark.line + 1}, column {mark.column + 1}"
            ) from e
        raise ConfigError(f"{path}: YAML parse error: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping, got {type(data).__name__}")

    errors = _validate_settings(data, path.name)
    if errors:
        raise ConfigError("Invalid settings file:\n  " + "\n  ".join(errors))

    return data
