"""Pydantic configuration models."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from mitiscan.config.defaults import (
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_FILE_SIZE,
    DEFAULT_MAX_WORKERS,
    DEFAULT_RULE_WORKERS,
)


class RuleConfig(BaseModel):
    """Per-rule overrides; unset fields keep the rule's own defaults."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool | None = None
    severity: Literal["error", "warning", "note"] | None = None
    options: dict[str, Any] = Field(default_factory=dict)


class EngineConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_workers: int = Field(default=DEFAULT_MAX_WORKERS, ge=1)
    rule_workers: int = Field(default=DEFAULT_RULE_WORKERS, ge=1)
    timeout_seconds: float | None = Field(default=None, gt=0)


class LoaderConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_file_size: int = Field(default=DEFAULT_MAX_FILE_SIZE, ge=1)
    spectre_opt_out: list[str] = Field(default_factory=list)


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: str = DEFAULT_LOG_LEVEL
    json_output: bool = False


class MitiscanConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rules: dict[str, RuleConfig] = Field(default_factory=dict)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    loader: LoaderConfig = Field(default_factory=LoaderConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
