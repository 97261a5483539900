"""Default configuration values and paths."""

from __future__ import annotations

from pathlib import Path

CONFIG_FILE_NAMES = [
    "mitiscan.yaml",
    "mitiscan.yml",
    ".mitiscan.yaml",
    ".mitiscan.yml",
]

CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "mitiscan",
    Path.home(),
]

DEFAULT_MAX_WORKERS = 4
DEFAULT_RULE_WORKERS = 1
DEFAULT_MAX_FILE_SIZE = 512 * 1024 * 1024
DEFAULT_LOG_LEVEL = "WARNING"
