"""Detect user code that defines or overrides the stack-protection cookie."""

from __future__ import annotations

from mitiscan.binary.artifact import BinaryFormat
from mitiscan.errors import RuleEvaluationError
from mitiscan.rules.base import Evidence, MitigationRule, Outcome, RuleContext, Verdict
from mitiscan.symbols.conventions import ToolchainConventions
from mitiscan.symbols.resolver import SymbolOrigin, SymbolRecord

# glibc/musl on these keep the guard in thread-local storage (%fs:0x28 / %gs:0x14).
TLS_GUARD_ARCHITECTURES = ("x86", "x86_64")


class DoNotModifyStackProtectionCookie(MitigationRule):
    """Fail when the cookie is defined by user code rather than the runtime.

    A cookie with a fixed, user-chosen initializer (or two competing
    definitions) defeats the randomization the runtime performs at startup.
    """

    id = "BA2012"
    name = "DoNotModifyStackProtectionCookie"
    mitigation = "Stack cookie (/GS, -fstack-protector)"

    def __init__(self, conventions: ToolchainConventions | None = None) -> None:
        self.conventions = conventions or ToolchainConventions()

    def _records(self, ctx: RuleContext) -> tuple[list[SymbolRecord], list[SymbolRecord]]:
        index = ctx.binary.symbols
        cookies = [r for name in self.conventions.cookie_symbols for r in index.lookup(name)]
        checks = [r for name in self.conventions.check_functions for r in index.lookup(name)]
        return cookies, checks

    def can_analyze(self, ctx: RuleContext) -> str | None:
        artifact = ctx.artifact
        pe = artifact.pe
        if pe is not None:
            if pe.is_il_only:
                return "image is an IL-only (managed) assembly"
            if pe.is_boot:
                return "image is a boot binary"
        cookies, checks = self._records(ctx)
        declared = pe is not None and pe.load_config is not None and pe.load_config.security_cookie_va
        if not cookies and not checks and not declared:
            return "binary does not use stack protection"
        return None

    def evaluate(self, ctx: RuleContext) -> Outcome:
        artifact = ctx.artifact
        cookies, checks = self._records(ctx)

        pe = artifact.pe
        if pe is not None and pe.load_config is not None:
            va = pe.load_config.security_cookie_va
            if va and artifact.section_at(va) is None:
                raise RuleEvaluationError(
                    f"load config security cookie address {va:#x} is outside every section"
                )

        # a local definition cannot replace the guard the runtime links against
        definitions = sorted(
            (r for r in cookies if r.defined and r.external), key=lambda r: (r.address, r.name)
        )
        overridden = [
            r for r in definitions if r.origin in (SymbolOrigin.USER, SymbolOrigin.AMBIGUOUS)
        ]
        if overridden:
            return Outcome.failed(
                "stack protection cookie is defined outside the runtime: "
                + ", ".join(f"{r.raw_name}@{r.address:#x}" for r in overridden),
                *(_cite(r, Verdict.FAIL) for r in overridden),
            )
        if definitions:
            return Outcome.passed(
                "stack protection cookie is defined by the runtime with its default initializer",
                *(_cite(r, Verdict.PASS) for r in definitions),
            )

        imported = [r for r in cookies if r.origin == SymbolOrigin.IMPORTED]
        if imported:
            source = imported[0].library or "the runtime"
            return Outcome.passed(
                f"stack protection cookie is imported from {source}",
                *(_cite(r, Verdict.PASS) for r in imported),
            )

        if artifact.format == BinaryFormat.PE:
            return Outcome.passed("image declares no security cookie in its load config")
        if artifact.format == BinaryFormat.ELF and artifact.architecture in TLS_GUARD_ARCHITECTURES:
            return Outcome.passed(
                f"stack guard lives in thread-local storage on {artifact.architecture}"
            )
        names = ", ".join(sorted({r.name for r in checks}))
        raise RuleEvaluationError(f"binary references {names} but defines or imports no stack guard")


def _cite(record: SymbolRecord, verdict: Verdict) -> Evidence:
    if record.initial_value is None:
        value = "unreadable"
    else:
        value = f"{record.initial_value:#x}"
    return Evidence(
        detail=f"{record.origin.value} definition, initial value {value}"
        if record.defined
        else f"imported from {record.library or 'runtime'}",
        symbol=record.raw_name,
        address=record.address if record.defined else None,
        section=record.section,
        verdict=verdict,
    )
