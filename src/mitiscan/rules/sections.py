"""Section permission rules."""

from __future__ import annotations

from mitiscan.binary.artifact import BinaryFormat
from mitiscan.rules.base import Evidence, MitigationRule, Outcome, RuleContext


class DoNotMarkWritableSectionsAsShared(MitigationRule):
    """Writable shared sections are visible to every process that maps the image."""

    id = "BA2019"
    name = "DoNotMarkWritableSectionsAsShared"
    mitigation = "Private writable data"
    formats = frozenset({BinaryFormat.PE})

    def can_analyze(self, ctx: RuleContext) -> str | None:
        pe = ctx.artifact.pe
        if pe is not None and pe.is_xbox:
            return "image is an Xbox binary"
        return None

    def evaluate(self, ctx: RuleContext) -> Outcome:
        bad = [s for s in ctx.artifact.sections if s.writable and s.shared]
        if not bad:
            return Outcome.passed("no section is both writable and shared")
        names = ";".join(s.name for s in bad)
        return Outcome.failed(
            f"section(s) {names} are both writable and shared",
            *(Evidence(detail="writable and shared", section=s.name, address=s.address) for s in bad),
        )


class WritableExecutableSections(MitigationRule):
    id = "BA2021"
    name = "DoNotMarkWritableSectionsAsExecutable"
    mitigation = "W^X memory"

    def can_analyze(self, ctx: RuleContext) -> str | None:
        artifact = ctx.artifact
        if artifact.format == BinaryFormat.PE and artifact.pe and artifact.pe.is_kernel_mode:
            return "image is a kernel-mode binary"
        if not artifact.sections:
            return "binary has no sections"
        return None

    def evaluate(self, ctx: RuleContext) -> Outcome:
        bad = [s for s in ctx.artifact.sections if s.writable and s.executable]
        if not bad:
            return Outcome.passed("no section is both writable and executable")
        names = ";".join(s.name for s in bad)
        return Outcome.failed(
            f"section(s) {names} are both writable and executable",
            *(Evidence(detail="writable and executable", section=s.name, address=s.address) for s in bad),
        )
