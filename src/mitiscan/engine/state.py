"""Per-binary lifecycle state and the report that carries it."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from mitiscan.errors import LoadError, StateTransitionError
from mitiscan.rules.base import RuleResult, Verdict


class BinaryState(str, Enum):
    LOADED = "loaded"
    RESOLVED = "resolved"
    EVALUATED = "evaluated"
    REPORTED = "reported"
    FAILED = "failed"


_TRANSITIONS: dict[BinaryState | None, frozenset[BinaryState]] = {
    None: frozenset({BinaryState.LOADED, BinaryState.FAILED}),
    BinaryState.LOADED: frozenset({BinaryState.RESOLVED, BinaryState.FAILED}),
    BinaryState.RESOLVED: frozenset({BinaryState.EVALUATED}),
    BinaryState.EVALUATED: frozenset({BinaryState.REPORTED}),
    BinaryState.REPORTED: frozenset(),
    BinaryState.FAILED: frozenset(),
}


@dataclass
class BinaryReport:
    binary_id: str
    path: str
    sha256: str | None = None
    format: str | None = None
    architecture: str | None = None
    state: BinaryState | None = None
    load_error: LoadError | None = None
    results: tuple[RuleResult, ...] = ()

    def advance(self, new_state: BinaryState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            current = self.state.value if self.state else "new"
            raise StateTransitionError(
                f"{self.binary_id}: illegal transition {current} -> {new_state.value}"
            )
        self.state = new_state

    def count(self, verdict: Verdict) -> int:
        return sum(1 for r in self.results if r.verdict == verdict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "binary": self.binary_id,
            "path": self.path,
            "sha256": self.sha256,
            "format": self.format,
            "architecture": self.architecture,
            "state": self.state.value if self.state else None,
            "load_error": self.load_error.to_dict() if self.load_error else None,
            "results": [r.to_dict() for r in self.results],
        }
