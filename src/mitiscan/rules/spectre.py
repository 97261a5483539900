"""Spectre variant 1/2 mitigation check over per-function machine code."""

from __future__ import annotations

import re
from collections import deque

import capstone
from capstone import CS_ARCH_X86, CS_MODE_32, CS_MODE_64, CS_MODE_ARM, Cs
from capstone.x86 import X86_OP_IMM

from mitiscan.binary.artifact import RUNTIME_THUNK, SPECTRE_OPT_OUT
from mitiscan.errors import RuleEvaluationError
from mitiscan.rules.base import Evidence, MitigationRule, Outcome, RuleContext, Severity, Verdict
from mitiscan.symbols.resolver import FunctionRange
from mitiscan.utils.logging import get_logger

log = get_logger(__name__)

# capstone 6 renamed ARM64 to AARCH64.
CS_ARCH_AARCH64 = getattr(capstone, "CS_ARCH_AARCH64", None) or capstone.CS_ARCH_ARM64

_MODES = {
    "x86": (CS_ARCH_X86, CS_MODE_32),
    "x86_64": (CS_ARCH_X86, CS_MODE_64),
    "arm64": (CS_ARCH_AARCH64, CS_MODE_ARM),
}

_X86_BRANCHES = ("jmp", "call")
_ARM64_BRANCHES = re.compile(r"^(br|blr)(a[ab]z?)?$")
_ARM64_BARRIERS = ("csdb", "sb")


class EnableSpectreMitigations(MitigationRule):
    id = "BA2024"
    name = "EnableSpectreMitigations"
    mitigation = "Spectre (speculation barriers / retpolines)"
    default_severity = Severity.WARNING
    default_options = {"barrier_window": 4}

    def can_analyze(self, ctx: RuleContext) -> str | None:
        artifact = ctx.artifact
        if artifact.architecture not in _MODES:
            return f"no Spectre mitigation model for {artifact.architecture}"
        if artifact.pe is not None and artifact.pe.is_il_only:
            return "image is an IL-only (managed) assembly"
        return None

    def evaluate(self, ctx: RuleContext) -> Outcome:
        artifact = ctx.artifact
        if artifact.debug_info_error:
            raise RuleEvaluationError(f"debug information is unreadable: {artifact.debug_info_error}")
        window = ctx.options.get("barrier_window", 4)
        if not isinstance(window, int) or isinstance(window, bool) or window < 0:
            raise RuleEvaluationError(f"barrier_window must be a non-negative integer, got {window!r}")

        arch, mode = _MODES[artifact.architecture]
        md = Cs(arch, mode)
        md.detail = arch == CS_ARCH_X86
        functions = ctx.binary.symbols.functions()
        thunks = frozenset(f.start for f in functions if RUNTIME_THUNK in f.record.markers)

        evidence = []
        for fn in functions:
            record = fn.record
            if SPECTRE_OPT_OUT in record.markers:
                detail = (
                    "retpoline thunk implements the mitigation"
                    if RUNTIME_THUNK in record.markers
                    else "function opted out of Spectre mitigations"
                )
                evidence.append(_cite(fn, Verdict.NOT_APPLICABLE, detail))
                continue
            code = artifact.read(fn.start, fn.end - fn.start)
            if not code:
                continue
            unmitigated, mitigated = _scan(md, arch, code, fn.start, window, thunks)
            if unmitigated:
                where = ", ".join(f"{a:#x}" for a in unmitigated)
                evidence.append(_cite(fn, Verdict.FAIL, f"unmitigated indirect branch at {where}"))
            elif mitigated:
                evidence.append(_cite(fn, Verdict.PASS, f"{mitigated} indirect branch(es) mitigated"))
            else:
                evidence.append(_cite(fn, Verdict.PASS, "no indirect branches"))

        evidence.sort(key=Evidence.sort_key)
        failing = [e.symbol for e in evidence if e.verdict == Verdict.FAIL]
        if failing:
            return Outcome.failed(
                f"{len(failing)} function(s) contain unmitigated indirect branches: "
                + ", ".join(failing),
                *evidence,
            )
        if any(e.verdict == Verdict.PASS for e in evidence):
            return Outcome.passed("every analyzed function mitigates its indirect branches", *evidence)
        return Outcome.not_applicable("no function code to analyze", *evidence)


def _cite(fn: FunctionRange, verdict: Verdict, detail: str) -> Evidence:
    return Evidence(
        detail=detail,
        symbol=fn.record.name,
        address=fn.start,
        section=fn.record.section,
        verdict=verdict,
    )


def _scan(
    md: Cs,
    arch: int,
    code: bytes,
    base: int,
    window: int,
    thunks: frozenset[int],
) -> tuple[list[int], int]:
    """Linear sweep returning (unmitigated branch addresses, mitigated count)."""
    recent: deque[str] = deque(maxlen=window)
    unmitigated: list[int] = []
    mitigated = 0
    offset = 0
    while offset < len(code):
        for insn in md.disasm(code[offset:], base + offset):
            offset = insn.address + insn.size - base
            mnemonic = insn.mnemonic.split()[-1]  # drop "notrack"/"bnd" prefixes
            if arch == CS_ARCH_X86:
                if mnemonic in _X86_BRANCHES:
                    ops = insn.operands
                    if ops and ops[0].type == X86_OP_IMM:
                        if ops[0].imm in thunks:
                            mitigated += 1
                    elif "lfence" in recent:
                        mitigated += 1
                    else:
                        unmitigated.append(insn.address)
            elif _ARM64_BRANCHES.match(mnemonic):
                if _arm64_barrier(recent):
                    mitigated += 1
                else:
                    unmitigated.append(insn.address)
            recent.append(mnemonic)
        if offset < len(code):
            # Undecodable bytes: resynchronize past them.
            recent.clear()
            offset += 1 if arch == CS_ARCH_X86 else 4
    return unmitigated, mitigated


def _arm64_barrier(recent: deque[str]) -> bool:
    if any(m in _ARM64_BARRIERS for m in recent):
        return True
    seq = list(recent)
    return any(a == "dsb" and b == "isb" for a, b in zip(seq, seq[1:]))
