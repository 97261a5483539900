"""Tests for the analysis engine: isolation, concurrency, timeouts, config."""

import threading
import time

import pytest

from mitiscan.binary.artifact import BinaryArtifact, BinaryFormat
from mitiscan.config.models import EngineConfig, MitiscanConfig, RuleConfig
from mitiscan.engine.engine import TIMEOUT_MESSAGE, AnalysisEngine
from mitiscan.engine.state import BinaryState
from mitiscan.engine.summary import ExitStatus, summarize_exit_status
from mitiscan.errors import ConfigurationError, RuleEvaluationError
from mitiscan.rules.base import MitigationRule, Outcome, Verdict
from mitiscan.rules.registry import RuleRegistry


class PassRule(MitigationRule):
    id = "TS0001"
    name = "Passes"
    default_options = {"label": "x"}

    def evaluate(self, ctx):
        return Outcome.passed(f"label={ctx.options['label']}")


class CrashRule(MitigationRule):
    id = "TS0002"
    name = "Crashes"

    def evaluate(self, ctx):
        raise ZeroDivisionError("boom")


class UndecidedRule(MitigationRule):
    id = "TS0003"
    name = "Undecided"

    def evaluate(self, ctx):
        raise RuleEvaluationError("cannot tell")


class ElfOnlyRule(MitigationRule):
    id = "TS0004"
    name = "ElfOnly"
    formats = frozenset({BinaryFormat.ELF})

    def evaluate(self, ctx):
        return Outcome.failed("elf")


class BlockingRule(MitigationRule):
    id = "TS0005"
    name = "Blocks"

    def __init__(self, release: threading.Event, delay: float = 5.0) -> None:
        self.release = release
        self.delay = delay

    def evaluate(self, ctx):
        self.release.wait(self.delay)
        return Outcome.passed("finished late")


def _artifact(fmt=BinaryFormat.PE):
    return BinaryArtifact(name="bin", sha256="0" * 64, format=fmt, architecture="x86_64")


def _engine(*rules, **config):
    return AnalysisEngine(RuleRegistry(rules), MitiscanConfig(**config))


def test_one_result_per_enabled_rule_in_order():
    report = _engine(PassRule(), CrashRule(), UndecidedRule(), ElfOnlyRule()).analyze_artifact(
        _artifact()
    )
    assert [r.rule_id for r in report.results] == ["TS0001", "TS0002", "TS0003", "TS0004"]
    assert report.state == BinaryState.REPORTED


def test_crashing_rule_is_isolated():
    results = {r.rule_id: r for r in _engine(PassRule(), CrashRule()).analyze_artifact(_artifact()).results}
    assert results["TS0001"].verdict == Verdict.PASS
    assert results["TS0002"].verdict == Verdict.ERROR
    assert "ZeroDivisionError" in results["TS0002"].message


def test_rule_evaluation_error_becomes_error_verdict():
    (result,) = _engine(UndecidedRule()).analyze_artifact(_artifact()).results
    assert result.verdict == Verdict.ERROR
    assert result.message == "cannot tell"


def test_format_mismatch_is_not_applicable():
    (result,) = _engine(ElfOnlyRule()).analyze_artifact(_artifact(BinaryFormat.PE)).results
    assert result.verdict == Verdict.NOT_APPLICABLE
    (result,) = _engine(ElfOnlyRule()).analyze_artifact(_artifact(BinaryFormat.ELF)).results
    assert result.verdict == Verdict.FAIL


def test_results_are_stamped_with_identity():
    (result,) = _engine(PassRule()).analyze_artifact(_artifact()).results
    assert result.binary_id == "bin"
    assert result.rule_name == "Passes"
    assert result.severity.value == "error"


def test_evaluation_is_idempotent(engine, make_elf):
    image = make_elf(symbols=[{"name": "main", "value": 0x1000, "size": 1}])
    first = engine.analyze_bytes(image, "a")[0].results
    second = engine.analyze_bytes(image, "a")[0].results
    assert first == second


def test_concurrent_matches_sequential(make_elf, make_pe):
    images = [make_elf(dynamic=[(24, 0)]), make_pe(), make_pe(cookie_value=7)]
    sequential = AnalysisEngine(RuleRegistry.default(), MitiscanConfig())
    concurrent = AnalysisEngine(
        RuleRegistry.default(), MitiscanConfig(engine=EngineConfig(rule_workers=8))
    )
    for image in images:
        a = sequential.analyze_bytes(image, "x")[0].results
        b = concurrent.analyze_bytes(image, "x")[0].results
        assert a == b


def test_concurrent_timeout_marks_only_slow_rule():
    release = threading.Event()
    engine = _engine(
        PassRule(),
        BlockingRule(release),
        engine=EngineConfig(rule_workers=2, timeout_seconds=0.2),
    )
    try:
        results = {r.rule_id: r for r in engine.analyze_artifact(_artifact()).results}
    finally:
        release.set()
    assert results["TS0001"].verdict == Verdict.PASS
    assert results["TS0005"].verdict == Verdict.ERROR
    assert results["TS0005"].message == TIMEOUT_MESSAGE


def test_single_worker_deadline_abandons_hung_rule():
    release = threading.Event()
    engine = _engine(BlockingRule(release, delay=1.0), engine=EngineConfig(timeout_seconds=0.1))
    start = time.monotonic()
    try:
        (result,) = engine.analyze_artifact(_artifact()).results
    finally:
        release.set()
    assert result.verdict == Verdict.ERROR
    assert result.message == TIMEOUT_MESSAGE
    assert time.monotonic() - start < 0.9


def test_single_worker_deadline_times_out_queued_rules():
    release = threading.Event()

    class Slow(BlockingRule):
        id = "TS0000"

    engine = _engine(Slow(release, delay=1.0), PassRule(), engine=EngineConfig(timeout_seconds=0.1))
    try:
        results = {r.rule_id: r for r in engine.analyze_artifact(_artifact()).results}
    finally:
        release.set()
    assert results["TS0000"].message == TIMEOUT_MESSAGE
    assert results["TS0001"].verdict == Verdict.ERROR
    assert results["TS0001"].message == TIMEOUT_MESSAGE


def test_generous_deadline_keeps_real_verdicts():
    engine = _engine(PassRule(), CrashRule(), engine=EngineConfig(timeout_seconds=30))
    results = {r.rule_id: r for r in engine.analyze_artifact(_artifact()).results}
    assert results["TS0001"].verdict == Verdict.PASS
    assert "ZeroDivisionError" in results["TS0002"].message


def test_rule_options_and_severity_overrides():
    engine = _engine(
        PassRule(),
        rules={"passes": RuleConfig(severity="note", options={"label": "y"})},
    )
    (result,) = engine.analyze_artifact(_artifact()).results
    assert result.message == "label=y"
    assert result.severity.value == "note"


def test_disabled_rule_is_skipped():
    engine = _engine(PassRule(), CrashRule(), rules={"TS0002": RuleConfig(enabled=False)})
    assert [r.rule_id for r in engine.analyze_artifact(_artifact()).results] == ["TS0001"]


@pytest.mark.parametrize("disabled", [rule.id for rule in RuleRegistry.default()])
def test_disabling_a_rule_leaves_other_verdicts_unchanged(disabled, make_pe, make_elf, make_macho):
    images = [
        make_pe(cookie_value=7, shared_data=True, dll_characteristics=0x0160),
        make_elf(dynamic=[(24, 0)], symbols=[{"name": "__stack_chk_fail", "section": None}]),
        make_macho(flags=0x85),
    ]
    full = AnalysisEngine(RuleRegistry.default(), MitiscanConfig())
    reduced = AnalysisEngine(
        RuleRegistry.default(), MitiscanConfig(rules={disabled: RuleConfig(enabled=False)})
    )
    for image in images:
        baseline = {r.rule_id: r for r in full.analyze_bytes(image, "x")[0].results}
        remaining = {r.rule_id: r for r in reduced.analyze_bytes(image, "x")[0].results}
        assert disabled in baseline
        assert remaining == {k: v for k, v in baseline.items() if k != disabled}


@pytest.mark.parametrize(
    "rules",
    [
        {"NOPE": RuleConfig()},
        {"TS0001": RuleConfig(options={"unknown": 1})},
        {"TS0001": RuleConfig(enabled=False), "passes": RuleConfig(enabled=True)},
    ],
)
def test_bad_rule_configuration_raises(rules):
    with pytest.raises(ConfigurationError):
        _engine(PassRule(), rules=rules)


def test_load_failure_yields_not_applicable_results():
    engine = _engine(PassRule(), CrashRule())
    (report,) = engine.analyze_bytes(b"\x7fELF\x02", "broken")
    assert report.state == BinaryState.FAILED
    assert report.load_error.kind.value == "truncated"
    assert {r.verdict for r in report.results} == {Verdict.NOT_APPLICABLE}
    assert len(report.results) == 2


def test_analyze_paths_keeps_input_order(tmp_path, make_elf, make_pe, make_macho, make_fat):
    (tmp_path / "a").write_bytes(make_pe())
    (tmp_path / "b").write_bytes(b"not a binary")
    (tmp_path / "c").write_bytes(
        make_fat([(0x01000007, make_macho()), (0x0100000C, make_macho(cputype=0x0100000C))])
    )
    (tmp_path / "d").write_bytes(make_elf())
    seen = []
    engine = AnalysisEngine(
        RuleRegistry.default(), MitiscanConfig(engine=EngineConfig(max_workers=4))
    )
    reports = engine.analyze_paths(
        [tmp_path / name for name in "abcd"], on_complete=seen.append
    )
    ids = [r.binary_id for r in reports]
    assert ids == [
        str(tmp_path / "a"),
        str(tmp_path / "b"),
        f"{tmp_path / 'c'}[x86_64]",
        f"{tmp_path / 'c'}[arm64]",
        str(tmp_path / "d"),
    ]
    assert reports[1].load_error.kind.value == "unsupported_format"
    assert sorted(seen) == sorted(str(tmp_path / name) for name in "abcd")


def test_unreadable_file_does_not_abort_the_run(engine, tmp_path, make_elf):
    good = tmp_path / "good.so"
    good.write_bytes(make_elf())
    reports = engine.analyze_paths([good, tmp_path / "vanished.so"])
    assert [r.path for r in reports] == [str(good), str(tmp_path / "vanished.so")]
    assert reports[0].state == BinaryState.REPORTED
    assert reports[1].state == BinaryState.FAILED
    assert reports[1].load_error.kind.value == "unreadable"
    assert summarize_exit_status(reports) == ExitStatus.ERRORS


def test_oversized_file_is_unsupported(tmp_path, make_elf):
    path = tmp_path / "big"
    path.write_bytes(make_elf())
    engine = AnalysisEngine(
        RuleRegistry.default(), MitiscanConfig(loader={"max_file_size": 16})
    )
    (report,) = engine.analyze_path(path)
    assert report.load_error.kind.value == "unsupported_format"


def test_timeout_does_not_wait_for_stragglers():
    release = threading.Event()
    engine = _engine(
        PassRule(), BlockingRule(release), engine=EngineConfig(rule_workers=2, timeout_seconds=0.1)
    )
    start = time.monotonic()
    try:
        engine.analyze_artifact(_artifact())
    finally:
        release.set()
    assert time.monotonic() - start < 2.0
