"""PE image hardening rules driven by header flags and the load config."""

from __future__ import annotations

from mitiscan.binary.artifact import BinaryArtifact, BinaryFormat, PEInfo
from mitiscan.errors import RuleEvaluationError
from mitiscan.rules.base import Evidence, MitigationRule, Outcome, RuleContext, Severity

IMAGE_GUARD_CF_INSTRUMENTED = 0x100
IMAGE_GUARD_CF_FUNCTION_TABLE_PRESENT = 0x400
IMAGE_GUARD_CF_CHECKS = IMAGE_GUARD_CF_INSTRUMENTED | IMAGE_GUARD_CF_FUNCTION_TABLE_PRESENT

IMAGE_LOAD_CONFIG_MINIMUM_SIZE_32 = 0x5C
IMAGE_LOAD_CONFIG_MINIMUM_SIZE_64 = 0x90


def _pe(artifact: BinaryArtifact) -> PEInfo:
    if artifact.pe is None:
        raise RuleEvaluationError("PE header information is missing")
    return artifact.pe


def is_resource_only(artifact: BinaryArtifact) -> bool:
    return not artifact.entry_point and not any(s.executable for s in artifact.sections)


def native_code_reason(artifact: BinaryArtifact) -> str | None:
    """Reason a PE image carries no native code to judge, if any."""
    pe = _pe(artifact)
    if pe.is_il_only:
        return "image is an IL-only (managed) assembly"
    if is_resource_only(artifact):
        return "image is a resource-only binary"
    return None


class _PERule(MitigationRule):
    formats = frozenset({BinaryFormat.PE})


class LoadImageAboveFourGigabyteAddress(_PERule):
    id = "BA2001"
    name = "LoadImageAboveFourGigabyteAddress"
    mitigation = "High-address image base"

    def can_analyze(self, ctx: RuleContext) -> str | None:
        artifact = ctx.artifact
        pe = _pe(artifact)
        if artifact.word_size != 64:
            return "image is not a 64-bit binary"
        if pe.is_kernel_mode:
            return "image is a kernel-mode binary"
        return native_code_reason(artifact)

    def evaluate(self, ctx: RuleContext) -> Outcome:
        pe = _pe(ctx.artifact)
        detail = Evidence(detail=f"ImageBase={pe.image_base:#x}")
        if pe.image_base <= 0xFFFFFFFF:
            return Outcome.failed("image prefers a base address below 4GB", detail)
        return Outcome.passed("image prefers a base address above 4GB", detail)


class EnableControlFlowGuard(_PERule):
    id = "BA2008"
    name = "EnableControlFlowGuard"
    mitigation = "Control Flow Guard"
    default_options = {"minimum_linker_version": "14.0"}

    def can_analyze(self, ctx: RuleContext) -> str | None:
        artifact = ctx.artifact
        pe = _pe(artifact)
        reason = native_code_reason(artifact)
        if reason:
            return reason
        if pe.is_kernel_mode and artifact.word_size != 64:
            return "image is a 32-bit kernel-mode binary"
        if pe.is_boot:
            return "image is a boot binary"
        minimum = _parse_version(str(ctx.options.get("minimum_linker_version", "14.0")))
        if pe.linker_version < minimum:
            return (
                f"image was linked with linker {pe.linker_version[0]}.{pe.linker_version[1]}, "
                f"older than {minimum[0]}.{minimum[1]}"
            )
        return None

    def evaluate(self, ctx: RuleContext) -> Outcome:
        artifact = ctx.artifact
        pe = _pe(artifact)
        if not pe.guard_cf:
            return Outcome.failed(
                "image does not set the GUARD_CF DllCharacteristics bit",
                Evidence(detail=f"DllCharacteristics={pe.dll_characteristics:#06x}"),
            )
        lc = pe.load_config
        if lc is None:
            return Outcome.failed("GUARD_CF is set but the image has no load config directory")

        minimum = (
            IMAGE_LOAD_CONFIG_MINIMUM_SIZE_64
            if artifact.word_size == 64
            else IMAGE_LOAD_CONFIG_MINIMUM_SIZE_32
        )
        detail = Evidence(
            detail=(
                f"load config size={lc.size:#x} GuardFlags={lc.guard_flags:#x} "
                f"check_pointer={lc.guard_cf_check_function_pointer:#x} "
                f"function_table={lc.guard_cf_function_table:#x}"
            )
        )
        if (
            lc.size >= minimum
            and lc.guard_cf_check_function_pointer
            and lc.guard_cf_function_table
            and (lc.guard_flags & IMAGE_GUARD_CF_CHECKS) == IMAGE_GUARD_CF_CHECKS
        ):
            return Outcome.passed("image enables Control Flow Guard", detail)
        return Outcome.failed("load config does not describe an instrumented CFG image", detail)


class EnableAddressSpaceLayoutRandomization(_PERule):
    id = "BA2009"
    name = "EnableAddressSpaceLayoutRandomization"
    mitigation = "ASLR"

    def can_analyze(self, ctx: RuleContext) -> str | None:
        pe = _pe(ctx.artifact)
        if pe.is_kernel_mode:
            return "image is a kernel-mode binary"
        if pe.is_boot:
            return "image is a boot binary"
        return None

    def evaluate(self, ctx: RuleContext) -> Outcome:
        pe = _pe(ctx.artifact)
        if not pe.dynamic_base:
            return Outcome.failed(
                "image is not marked DYNAMIC_BASE",
                Evidence(detail=f"DllCharacteristics={pe.dll_characteristics:#06x}"),
            )
        if pe.relocs_stripped:
            return Outcome.failed(
                "image is marked DYNAMIC_BASE but its relocations are stripped",
                Evidence(detail=f"Characteristics={pe.characteristics:#06x}"),
            )
        return Outcome.passed("image is relocatable and marked DYNAMIC_BASE")


class EnableHighEntropyVirtualAddresses(_PERule):
    id = "BA2015"
    name = "EnableHighEntropyVirtualAddresses"
    mitigation = "High-entropy ASLR"
    default_severity = Severity.WARNING

    def can_analyze(self, ctx: RuleContext) -> str | None:
        artifact = ctx.artifact
        pe = _pe(artifact)
        if pe.is_kernel_mode:
            return "image is a kernel-mode binary"
        if artifact.word_size != 64:
            return "image likely loads as a 32-bit process"
        if pe.is_dll:
            return "image is not an executable"
        return None

    def evaluate(self, ctx: RuleContext) -> Outcome:
        pe = _pe(ctx.artifact)
        flags = Evidence(detail=f"DllCharacteristics={pe.dll_characteristics:#06x}")
        if not pe.high_entropy_va:
            return Outcome.failed("image does not set HIGH_ENTROPY_VA", flags)
        if not pe.dynamic_base:
            return Outcome.failed("image sets HIGH_ENTROPY_VA but not DYNAMIC_BASE", flags)
        return Outcome.passed("image is compatible with 64-bit high-entropy ASLR", flags)


class MarkImageAsNXCompatible(_PERule):
    id = "BA2016"
    name = "MarkImageAsNXCompatible"
    mitigation = "DEP / NX"

    def can_analyze(self, ctx: RuleContext) -> str | None:
        artifact = ctx.artifact
        pe = _pe(artifact)
        if artifact.word_size == 64:
            return "64-bit images always run with NX enforced"
        if pe.is_kernel_mode:
            return "image is a kernel-mode binary"
        if is_resource_only(artifact):
            return "image is a resource-only binary"
        if pe.is_boot:
            return "image is a boot binary"
        return None

    def evaluate(self, ctx: RuleContext) -> Outcome:
        pe = _pe(ctx.artifact)
        if pe.nx_compat:
            return Outcome.passed("image is marked NX_COMPAT")
        return Outcome.failed(
            "image is not marked NX_COMPAT",
            Evidence(detail=f"DllCharacteristics={pe.dll_characteristics:#06x}"),
        )


def _parse_version(text: str) -> tuple[int, int]:
    major, _, minor = text.partition(".")
    try:
        return int(major), int(minor or 0)
    except ValueError as exc:
        raise RuleEvaluationError(f"invalid minimum_linker_version {text!r}") from exc


PE_RULES = (
    LoadImageAboveFourGigabyteAddress,
    EnableControlFlowGuard,
    EnableAddressSpaceLayoutRandomization,
    EnableHighEntropyVirtualAddresses,
    MarkImageAsNXCompatible,
)
