"""Base class and result types for mitigation rules."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from mitiscan.binary.artifact import BinaryArtifact, BinaryFormat
from mitiscan.symbols.resolver import ResolvedBinary


class Verdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    NOT_APPLICABLE = "not_applicable"
    ERROR = "error"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    NOTE = "note"


@dataclass(frozen=True)
class Evidence:
    """One cited fact backing a verdict (a symbol, a section, a flag)."""

    detail: str
    symbol: str | None = None
    address: int | None = None
    section: str | None = None
    verdict: Verdict | None = None

    def sort_key(self) -> tuple:
        return (
            self.address if self.address is not None else -1,
            self.symbol or "",
            self.section or "",
            self.detail,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"detail": self.detail}
        if self.symbol is not None:
            data["symbol"] = self.symbol
        if self.address is not None:
            data["address"] = f"{self.address:#x}"
        if self.section is not None:
            data["section"] = self.section
        if self.verdict is not None:
            data["verdict"] = self.verdict.value
        return data


@dataclass(frozen=True)
class Outcome:
    """What a rule returns; the engine stamps identity onto it."""

    verdict: Verdict
    message: str
    evidence: tuple[Evidence, ...] = ()

    @classmethod
    def passed(cls, message: str, *evidence: Evidence) -> Outcome:
        return cls(Verdict.PASS, message, tuple(evidence))

    @classmethod
    def failed(cls, message: str, *evidence: Evidence) -> Outcome:
        return cls(Verdict.FAIL, message, tuple(evidence))

    @classmethod
    def not_applicable(cls, message: str, *evidence: Evidence) -> Outcome:
        return cls(Verdict.NOT_APPLICABLE, message, tuple(evidence))


@dataclass(frozen=True)
class RuleResult:
    binary_id: str
    rule_id: str
    rule_name: str
    verdict: Verdict
    severity: Severity
    message: str
    evidence: tuple[Evidence, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "binary": self.binary_id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "verdict": self.verdict.value,
            "severity": self.severity.value,
            "message": self.message,
            "evidence": [e.to_dict() for e in self.evidence],
        }


@dataclass(frozen=True)
class RuleContext:
    binary: ResolvedBinary
    options: Mapping[str, Any] = field(default_factory=dict)

    @property
    def artifact(self) -> BinaryArtifact:
        return self.binary.artifact


class MitigationRule(ABC):
    """A single check over one resolved binary.

    ``evaluate`` must be pure: no I/O and no mutation of the context. A rule
    that cannot decide raises ``RuleEvaluationError``.
    """

    id: ClassVar[str] = ""
    name: ClassVar[str] = ""
    mitigation: ClassVar[str] = ""
    formats: ClassVar[frozenset[BinaryFormat]] = frozenset(BinaryFormat)
    default_severity: ClassVar[Severity] = Severity.ERROR
    default_options: ClassVar[Mapping[str, Any]] = {}

    def can_analyze(self, ctx: RuleContext) -> str | None:
        """Return a reason the binary is out of scope, or None to evaluate."""
        return None

    @abstractmethod
    def evaluate(self, ctx: RuleContext) -> Outcome: ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id}>"
