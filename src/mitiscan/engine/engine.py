"""Run enabled mitigation rules over loaded binaries."""

from __future__ import annotations

import hashlib
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any

from mitiscan.binary.artifact import BinaryArtifact
from mitiscan.binary.loader import load_binary, load_path
from mitiscan.config.models import MitiscanConfig, RuleConfig
from mitiscan.engine.collector import ResultCollector
from mitiscan.engine.state import BinaryReport, BinaryState
from mitiscan.errors import ConfigurationError, LoadError, RuleEvaluationError
from mitiscan.rules.base import (
    MitigationRule,
    Outcome,
    RuleContext,
    RuleResult,
    Severity,
    Verdict,
)
from mitiscan.rules.registry import RuleRegistry
from mitiscan.symbols.resolver import ResolvedBinary, SymbolResolver
from mitiscan.utils.logging import bind_binary, get_logger

log = get_logger(__name__)

TIMEOUT_MESSAGE = "Timeout"


@dataclass(frozen=True)
class EnabledRule:
    rule: MitigationRule
    severity: Severity
    options: Mapping[str, Any]


class AnalysisEngine:
    """Evaluates every enabled rule against each binary.

    Rule configuration is validated once, here, so a bad key aborts the run
    before any binary is read.
    """

    def __init__(
        self,
        registry: RuleRegistry | None = None,
        config: MitiscanConfig | None = None,
        resolver: SymbolResolver | None = None,
    ) -> None:
        self.registry = registry if registry is not None else RuleRegistry.default()
        self.config = config or MitiscanConfig()
        self.resolver = resolver or SymbolResolver()
        self._enabled = self._build_enabled()

    @property
    def enabled_rules(self) -> tuple[EnabledRule, ...]:
        return self._enabled

    def _build_enabled(self) -> tuple[EnabledRule, ...]:
        overrides: dict[str, tuple[str, RuleConfig]] = {}
        for key, rule_config in self.config.rules.items():
            rule = self.registry.get(key)
            if rule is None:
                raise ConfigurationError(f"unknown rule {key!r} in configuration")
            if rule.id in overrides:
                previous_key, previous = overrides[rule.id]
                if previous != rule_config:
                    raise ConfigurationError(
                        f"rule {rule.id} configured twice with conflicting settings "
                        f"({previous_key!r} and {key!r})"
                    )
            overrides[rule.id] = (key, rule_config)

        enabled = []
        for rule in self.registry:
            rule_config = overrides.get(rule.id, ("", RuleConfig()))[1]
            if rule_config.enabled is False:
                continue
            unknown = set(rule_config.options) - set(rule.default_options)
            if unknown:
                raise ConfigurationError(
                    f"rule {rule.id} has no option(s) {', '.join(sorted(unknown))}"
                )
            severity = Severity(rule_config.severity) if rule_config.severity else rule.default_severity
            options = MappingProxyType({**rule.default_options, **rule_config.options})
            enabled.append(EnabledRule(rule=rule, severity=severity, options=options))
        return tuple(enabled)

    # -- evaluation ---------------------------------------------------------

    def evaluate(self, resolved: ResolvedBinary) -> tuple[RuleResult, ...]:
        """One result per enabled rule, in registry order."""
        collector = ResultCollector([entry.rule.id for entry in self._enabled])
        timeout = self.config.engine.timeout_seconds
        # a deadline needs a pool even for one worker so a hung rule can be abandoned
        if timeout or (self.config.engine.rule_workers > 1 and len(self._enabled) > 1):
            self._evaluate_in_pool(resolved, collector, timeout)
        else:
            for entry in self._enabled:
                collector.add(self._run_rule(entry, resolved))
        return collector.results()

    def _evaluate_in_pool(
        self,
        resolved: ResolvedBinary,
        collector: ResultCollector,
        timeout: float | None,
    ) -> None:
        executor = ThreadPoolExecutor(
            max_workers=self.config.engine.rule_workers,
            thread_name_prefix="mitiscan-rule",
        )
        try:
            futures = [
                executor.submit(lambda e=entry: collector.add(self._run_rule(e, resolved)))
                for entry in self._enabled
            ]
            wait(futures, timeout=timeout)
            for entry in self._enabled:
                if not collector.has(entry.rule.id):
                    collector.add(self._timeout_result(entry, resolved.binary_id))
        finally:
            # Abandon stragglers; their late results are rejected by the collector.
            executor.shutdown(wait=False, cancel_futures=True)

    def _run_rule(self, entry: EnabledRule, resolved: ResolvedBinary) -> RuleResult:
        rule = entry.rule
        artifact = resolved.artifact
        if artifact.format not in rule.formats:
            return self._stamp(
                entry,
                resolved.binary_id,
                Outcome.not_applicable(f"rule does not apply to {artifact.format.value} binaries"),
            )

        ctx = RuleContext(binary=resolved, options=entry.options)
        try:
            reason = rule.can_analyze(ctx)
            if reason is not None:
                log.debug("rule_not_applicable", rule=rule.id, reason=reason)
                return self._stamp(entry, resolved.binary_id, Outcome.not_applicable(reason))
            outcome = rule.evaluate(ctx)
        except RuleEvaluationError as exc:
            log.warning("rule_evaluation_failed", rule=rule.id, error=str(exc))
            return self._error_result(entry, resolved.binary_id, str(exc))
        except Exception as exc:
            log.error("rule_crashed", rule=rule.id, error=repr(exc), exc_info=True)
            return self._error_result(entry, resolved.binary_id, f"{type(exc).__name__}: {exc}")
        return self._stamp(entry, resolved.binary_id, outcome)

    @staticmethod
    def _stamp(entry: EnabledRule, binary_id: str, outcome: Outcome) -> RuleResult:
        return RuleResult(
            binary_id=binary_id,
            rule_id=entry.rule.id,
            rule_name=entry.rule.name,
            verdict=outcome.verdict,
            severity=entry.severity,
            message=outcome.message,
            evidence=outcome.evidence,
        )

    def _error_result(self, entry: EnabledRule, binary_id: str, message: str) -> RuleResult:
        return self._stamp(entry, binary_id, Outcome(Verdict.ERROR, message))

    def _timeout_result(self, entry: EnabledRule, binary_id: str) -> RuleResult:
        log.warning("rule_timeout", rule=entry.rule.id, timeout=self.config.engine.timeout_seconds)
        return self._error_result(entry, binary_id, TIMEOUT_MESSAGE)

    # -- binaries -----------------------------------------------------------

    def analyze_artifact(self, artifact: BinaryArtifact, path: str | None = None) -> BinaryReport:
        report = BinaryReport(
            binary_id=artifact.binary_id,
            path=path or artifact.name,
            sha256=artifact.sha256,
            format=artifact.format.value,
            architecture=artifact.architecture,
        )
        report.advance(BinaryState.LOADED)
        with bind_binary(report.binary_id):
            resolved = self.resolver.resolve(artifact)
            report.advance(BinaryState.RESOLVED)
            report.results = self.evaluate(resolved)
            report.advance(BinaryState.EVALUATED)
            log.info(
                "analysis_complete",
                passed=report.count(Verdict.PASS),
                failed=report.count(Verdict.FAIL),
                errors=report.count(Verdict.ERROR),
            )
        report.advance(BinaryState.REPORTED)
        return report

    def failed_report(self, name: str, error: LoadError, sha256: str | None = None) -> BinaryReport:
        """Report for a binary that never loaded: every enabled rule is NotApplicable."""
        log.warning("binary_load_failed", binary=name, kind=error.kind.value, error=error.message)
        report = BinaryReport(binary_id=name, path=name, sha256=sha256, load_error=error)
        message = f"binary failed to load ({error.kind.value}): {error.message}"
        report.results = tuple(
            self._stamp(entry, name, Outcome.not_applicable(message)) for entry in self._enabled
        )
        report.advance(BinaryState.FAILED)
        return report

    def analyze_bytes(self, data: bytes, name: str) -> tuple[BinaryReport, ...]:
        try:
            artifacts = load_binary(data, name, self.config.loader)
        except LoadError as exc:
            return (self.failed_report(name, exc, hashlib.sha256(data).hexdigest()),)
        return tuple(self.analyze_artifact(artifact, path=name) for artifact in artifacts)

    def analyze_path(self, path: str | Path) -> tuple[BinaryReport, ...]:
        """Analyze one file; unreadable or unparsable files yield a failed report."""
        name = str(path)
        try:
            artifacts = load_path(path, self.config.loader)
        except LoadError as exc:
            return (self.failed_report(name, exc),)
        return tuple(self.analyze_artifact(artifact, path=name) for artifact in artifacts)

    def analyze_paths(
        self,
        paths: Iterable[str | Path],
        on_complete: Callable[[str], None] | None = None,
    ) -> list[BinaryReport]:
        """Analyze files in parallel; reports come back in input order."""
        paths = list(paths)

        def _one(path: str | Path) -> tuple[BinaryReport, ...]:
            reports = self.analyze_path(path)
            if on_complete is not None:
                on_complete(str(path))
            return reports

        workers = max(1, min(self.config.engine.max_workers, len(paths)))
        if workers == 1:
            nested = [_one(p) for p in paths]
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mitiscan-binary") as pool:
                nested = list(pool.map(_one, paths))
        return [report for reports in nested for report in reports]
