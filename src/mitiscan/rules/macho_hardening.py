"""Mach-O header flag rules."""

from __future__ import annotations

from mitiscan.binary.artifact import BinaryFormat, MachOInfo
from mitiscan.binary.macho_loader import MH_ALLOW_STACK_EXECUTION, MH_PIE
from mitiscan.errors import RuleEvaluationError
from mitiscan.rules.base import Evidence, MitigationRule, Outcome, RuleContext

MH_EXECUTE = 0x2
MH_DYLIB = 0x6


def _macho(ctx: RuleContext) -> MachOInfo:
    if ctx.artifact.macho is None:
        raise RuleEvaluationError("Mach-O header information is missing")
    return ctx.artifact.macho


class EnablePositionIndependentExecutableMachO(MitigationRule):
    id = "BA5001"
    name = "EnablePositionIndependentExecutableMachO"
    mitigation = "PIE / ASLR"
    formats = frozenset({BinaryFormat.MACHO})

    def can_analyze(self, ctx: RuleContext) -> str | None:
        if _macho(ctx).filetype != MH_EXECUTE:
            return "Mach-O is not an executable"
        return None

    def evaluate(self, ctx: RuleContext) -> Outcome:
        macho = _macho(ctx)
        flags = Evidence(detail=f"header flags={macho.flags:#x}")
        if macho.flags & MH_PIE:
            return Outcome.passed("executable is marked MH_PIE", flags)
        return Outcome.failed("executable is not marked MH_PIE", flags)


class DoNotAllowExecutableStack(MitigationRule):
    id = "BA5002"
    name = "DoNotAllowExecutableStack"
    mitigation = "Non-executable stack"
    formats = frozenset({BinaryFormat.MACHO})

    def can_analyze(self, ctx: RuleContext) -> str | None:
        if _macho(ctx).filetype not in (MH_EXECUTE, MH_DYLIB):
            return "Mach-O is not an executable or dynamic library"
        return None

    def evaluate(self, ctx: RuleContext) -> Outcome:
        macho = _macho(ctx)
        flags = Evidence(detail=f"header flags={macho.flags:#x}")
        if macho.flags & MH_ALLOW_STACK_EXECUTION:
            return Outcome.failed("header sets MH_ALLOW_STACK_EXECUTION", flags)
        return Outcome.passed("stack execution is not allowed", flags)


MACHO_RULES = (EnablePositionIndependentExecutableMachO, DoNotAllowExecutableStack)
