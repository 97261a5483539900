"""Thread-safe sink for rule results."""

from __future__ import annotations

import threading
from collections.abc import Sequence

from mitiscan.rules.base import RuleResult


class ResultCollector:
    """Accepts one result per rule from any thread; reads back in rule order.

    The first result recorded for a rule wins, so a rule that finishes after
    being marked as timed out cannot replace its timeout result.
    """

    def __init__(self, rule_ids: Sequence[str]) -> None:
        self._order = {rule_id: i for i, rule_id in enumerate(rule_ids)}
        self._results: dict[str, RuleResult] = {}
        self._lock = threading.Lock()

    def add(self, result: RuleResult) -> bool:
        if result.rule_id not in self._order:
            raise KeyError(f"rule {result.rule_id} is not enabled")
        with self._lock:
            if result.rule_id in self._results:
                return False
            self._results[result.rule_id] = result
            return True

    def has(self, rule_id: str) -> bool:
        with self._lock:
            return rule_id in self._results

    def results(self) -> tuple[RuleResult, ...]:
        with self._lock:
            return tuple(sorted(self._results.values(), key=lambda r: self._order[r.rule_id]))
