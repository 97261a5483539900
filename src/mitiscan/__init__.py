"""mitiscan - binary exploit-mitigation scanner for PE, ELF and Mach-O."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from mitiscan.version import __version__

if TYPE_CHECKING:
    from mitiscan.config.models import MitiscanConfig
    from mitiscan.engine.engine import AnalysisEngine
    from mitiscan.rules.registry import RuleRegistry


@dataclass
class MitiscanContext:
    """Dependency-injection container shared across CLI commands."""

    config: MitiscanConfig | None = None
    registry: RuleRegistry | None = None
    engine: AnalysisEngine | None = None

    def ensure_config(self) -> MitiscanConfig:
        if self.config is None:
            from mitiscan.config.loader import load_config

            self.config = load_config()
        return self.config

    def ensure_registry(self) -> RuleRegistry:
        if self.registry is None:
            from mitiscan.rules.registry import RuleRegistry

            self.registry = RuleRegistry.default()
        return self.registry

    def ensure_engine(self) -> AnalysisEngine:
        if self.engine is None:
            from mitiscan.engine.engine import AnalysisEngine

            self.engine = AnalysisEngine(self.ensure_registry(), self.ensure_config())
        return self.engine

    def reset(self) -> None:
        self.config = None
        self.registry = None
        self.engine = None


__all__ = ["MitiscanContext", "__version__"]
