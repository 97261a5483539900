"""Toolchain naming conventions used to classify symbol origins."""

from __future__ import annotations

import re
from dataclasses import dataclass

from mitiscan.binary.artifact import BinaryFormat

# Data symbols holding the stack-protection cookie / guard value.
COOKIE_SYMBOLS = (
    "__security_cookie",
    "__security_cookie_complement",
    "__stack_chk_guard",
    "__intel_security_cookie",
)

# Functions called when a cookie check fails (or that perform the check).
CHECK_FUNCTIONS = (
    "__stack_chk_fail",
    "__stack_chk_fail_local",
    "__security_check_cookie",
    "__report_gsfailure",
    "__GSHandlerCheck",
)

# Toolchain default cookie initializers, by word size.
DEFAULT_COOKIE_VALUES = {
    64: frozenset({0x00002B992DDFA232}),
    32: frozenset({0xBB40E64E, 0x0000BB40}),
}

# Definitions that only exist when the C runtime is linked statically.
STATIC_RUNTIME_MARKERS = (
    "__libc_start_main",
    "__libc_csu_init",
    "__libc_setup_tls",
    "_dl_relocate_static_pie",
    "__uClibc_main",
)

_STDCALL_SUFFIX = re.compile(r"@\d+$")


@dataclass(frozen=True)
class ToolchainConventions:
    cookie_symbols: tuple[str, ...] = COOKIE_SYMBOLS
    check_functions: tuple[str, ...] = CHECK_FUNCTIONS
    static_runtime_markers: tuple[str, ...] = STATIC_RUNTIME_MARKERS

    def normalize(self, name: str, fmt: BinaryFormat, architecture: str, source: str) -> str:
        """Strip platform decoration so one name matches across formats."""
        if fmt == BinaryFormat.MACHO:
            return name[1:] if name.startswith("_") else name
        if fmt == BinaryFormat.ELF:
            return name.split("@", 1)[0]
        if fmt == BinaryFormat.PE and architecture == "x86" and source == "coff":
            name = _STDCALL_SUFFIX.sub("", name)
            return name[1:] if name.startswith("_") else name
        return name

    def is_cookie(self, name: str) -> bool:
        return name in self.cookie_symbols

    def is_check_function(self, name: str) -> bool:
        return name in self.check_functions

    def is_default_cookie(self, value: int | None, word_size: int) -> bool:
        if value is None:
            return False
        return value in DEFAULT_COOKIE_VALUES.get(word_size, frozenset())

    @staticmethod
    def is_reserved(name: str) -> bool:
        """Names in the implementation namespace or made up by assemblers."""
        if name.startswith(("__", ".L", "$", "L_", "ltmp")):
            return True
        return len(name) > 1 and name[0] == "_" and name[1].isupper()
