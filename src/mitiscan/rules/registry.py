"""Registry of mitigation rules, keyed by id."""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from mitiscan.errors import ConfigurationError
from mitiscan.rules.base import MitigationRule


class RuleRegistry:
    """Rules in deterministic (sorted id) order."""

    def __init__(self, rules: Iterable[MitigationRule] = ()) -> None:
        self._rules: dict[str, MitigationRule] = {}
        for rule in rules:
            self.register(rule)

    @classmethod
    def default(cls) -> RuleRegistry:
        from mitiscan.rules.elf_hardening import ELF_RULES
        from mitiscan.rules.macho_hardening import MACHO_RULES
        from mitiscan.rules.pe_hardening import PE_RULES
        from mitiscan.rules.sections import (
            DoNotMarkWritableSectionsAsShared,
            WritableExecutableSections,
        )
        from mitiscan.rules.spectre import EnableSpectreMitigations
        from mitiscan.rules.stack_cookie import DoNotModifyStackProtectionCookie

        rules: list[MitigationRule] = [
            DoNotModifyStackProtectionCookie(),
            EnableSpectreMitigations(),
            DoNotMarkWritableSectionsAsShared(),
            WritableExecutableSections(),
        ]
        rules.extend(rule_cls() for rule_cls in (*PE_RULES, *ELF_RULES, *MACHO_RULES))
        return cls(rules)

    def register(self, rule: MitigationRule) -> None:
        if not rule.id:
            raise ConfigurationError(f"rule {type(rule).__name__} has no id")
        if rule.id in self._rules:
            raise ConfigurationError(f"duplicate rule id {rule.id}")
        self._rules[rule.id] = rule
        self._rules = dict(sorted(self._rules.items()))

    def get(self, key: str) -> MitigationRule | None:
        """Find a rule by id or name, case-insensitively."""
        folded = key.casefold()
        for rule in self._rules.values():
            if rule.id.casefold() == folded:
                return rule
        for rule in self._rules.values():
            if rule.name.casefold() == folded:
                return rule
        return None

    def list_rules(self) -> list[MitigationRule]:
        return list(self._rules.values())

    def __iter__(self) -> Iterator[MitigationRule]:
        return iter(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None
