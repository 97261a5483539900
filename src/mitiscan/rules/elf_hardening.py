"""ELF hardening rules over program headers, dynamic tags and symbols."""

from __future__ import annotations

from mitiscan.binary.artifact import BinaryFormat, ELFInfo
from mitiscan.errors import RuleEvaluationError
from mitiscan.rules.base import Evidence, MitigationRule, Outcome, RuleContext, Severity

PF_X = 0x1
DF_BIND_NOW = 0x8
DF_1_NOW = 0x1

STACK_PROTECTOR_SYMBOLS = ("__stack_chk_fail", "__stack_chk_guard", "__intel_security_cookie")

_NOT_LINKED_TYPES = ("ET_REL", "ET_CORE", "ET_NONE")


def _elf(ctx: RuleContext) -> ELFInfo:
    if ctx.artifact.elf is None:
        raise RuleEvaluationError("ELF header information is missing")
    return ctx.artifact.elf


class _ELFRule(MitigationRule):
    formats = frozenset({BinaryFormat.ELF})

    def can_analyze(self, ctx: RuleContext) -> str | None:
        elf_type = _elf(ctx).elf_type
        if elf_type in _NOT_LINKED_TYPES:
            return f"ELF is a core, none or relocatable object ({elf_type})"
        return None


class EnablePositionIndependentExecutable(_ELFRule):
    id = "BA3001"
    name = "EnablePositionIndependentExecutable"
    mitigation = "PIE / ASLR"

    def evaluate(self, ctx: RuleContext) -> Outcome:
        elf = _elf(ctx)
        if elf.elf_type == "ET_EXEC":
            return Outcome.failed("executable is not position independent (ET_EXEC)")
        if elf.segments("PT_PHDR"):
            return Outcome.passed("executable is position independent (ET_DYN with PT_PHDR)")
        return Outcome.passed("shared library is position independent")


class DoNotMarkStackAsExecutable(_ELFRule):
    id = "BA3002"
    name = "DoNotMarkStackAsExecutable"
    mitigation = "Non-executable stack"

    def evaluate(self, ctx: RuleContext) -> Outcome:
        stacks = _elf(ctx).segments("PT_GNU_STACK")
        if not stacks:
            return Outcome.failed("no PT_GNU_STACK segment; the loader defaults to an executable stack")
        stack = stacks[0]
        flags = Evidence(detail=f"PT_GNU_STACK p_flags={stack.flags:#x}")
        if stack.flags & PF_X:
            return Outcome.failed("PT_GNU_STACK marks the stack executable", flags)
        return Outcome.passed("stack is not executable", flags)


class EnableStackProtector(_ELFRule):
    id = "BA3003"
    name = "EnableStackProtector"
    mitigation = "Stack protector"

    def evaluate(self, ctx: RuleContext) -> Outcome:
        index = ctx.binary.symbols
        for name in STACK_PROTECTOR_SYMBOLS:
            records = index.lookup(name)
            if records:
                return Outcome.passed(
                    f"binary references {name}",
                    Evidence(detail="stack protector symbol", symbol=name, address=records[0].address or None),
                )
        return Outcome.failed("no stack protector symbol found; compile with -fstack-protector-strong")


class EnableReadOnlyRelocations(_ELFRule):
    id = "BA3010"
    name = "EnableReadOnlyRelocations"
    mitigation = "RELRO"

    def evaluate(self, ctx: RuleContext) -> Outcome:
        if _elf(ctx).segments("PT_GNU_RELRO"):
            return Outcome.passed("PT_GNU_RELRO segment present")
        return Outcome.failed("no PT_GNU_RELRO segment; link with -z relro")


class EnableBindNow(_ELFRule):
    id = "BA3011"
    name = "EnableBindNow"
    mitigation = "Full RELRO (immediate binding)"
    default_severity = Severity.WARNING

    def can_analyze(self, ctx: RuleContext) -> str | None:
        reason = super().can_analyze(ctx)
        if reason:
            return reason
        if not _elf(ctx).segments("PT_DYNAMIC"):
            return "ELF is statically linked"
        return None

    def evaluate(self, ctx: RuleContext) -> Outcome:
        elf = _elf(ctx)
        if elf.dynamic_values("DT_BIND_NOW"):
            return Outcome.passed("DT_BIND_NOW is set")
        if any(v & DF_BIND_NOW for v in elf.dynamic_values("DT_FLAGS")):
            return Outcome.passed("DT_FLAGS has DF_BIND_NOW")
        if any(v & DF_1_NOW for v in elf.dynamic_values("DT_FLAGS_1")):
            return Outcome.passed("DT_FLAGS_1 has DF_1_NOW")
        return Outcome.failed("lazy binding is enabled; link with -z now")


ELF_RULES = (
    EnablePositionIndependentExecutable,
    DoNotMarkStackAsExecutable,
    EnableStackProtector,
    EnableReadOnlyRelocations,
    EnableBindNow,
)
