"""YAML configuration loader with env var interpolation."""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import ValidationError

from mitiscan.config.defaults import CONFIG_FILE_NAMES, CONFIG_SEARCH_PATHS
from mitiscan.config.models import MitiscanConfig
from mitiscan.errors import ConfigurationError

_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)(?::([^}]*))?\}")


def _interpolate_env(value: str) -> str:
    """Replace ${VAR} or ${VAR:default} with environment variable values."""

    def _replace(match: re.Match[str]) -> str:
        var_name = match.group(1)
        default = match.group(2)
        return os.environ.get(var_name, default if default is not None else "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _walk_and_interpolate(obj: object) -> object:
    if isinstance(obj, str):
        return _interpolate_env(obj)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(item) for item in obj]
    return obj


def find_config_file(explicit_path: str | Path | None = None) -> Path | None:
    """Locate a mitiscan config file; an explicit path must exist."""
    if explicit_path is not None:
        p = Path(explicit_path)
        if not p.is_file():
            raise ConfigurationError(f"config file not found: {p}")
        return p

    for search_dir in CONFIG_SEARCH_PATHS:
        for name in CONFIG_FILE_NAMES:
            candidate = search_dir / name
            if candidate.is_file():
                return candidate
    return None


def parse_config(raw: object, source: str = "<config>") -> MitiscanConfig:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{source}: top level must be a mapping")
    try:
        return MitiscanConfig.model_validate(_walk_and_interpolate(raw))
    except ValidationError as exc:
        raise ConfigurationError(f"{source}: {exc}") from exc


def load_config(path: str | Path | None = None) -> MitiscanConfig:
    """Load and validate configuration, falling back to defaults."""
    config_path = find_config_file(path)
    if config_path is None:
        return MitiscanConfig()

    try:
        raw = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"{config_path}: invalid YAML: {exc}") from exc
    return parse_config(raw, str(config_path))
