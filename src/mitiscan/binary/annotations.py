"""Per-function metadata markers attached at load time.

Rules only see the abstract markers on each symbol; where the marker came
from (DWARF producer switches, configured opt-out patterns, known runtime
thunks) is resolved here.
"""

from __future__ import annotations

import fnmatch
import re
from collections.abc import Iterable, Sequence
from dataclasses import replace

from mitiscan.binary.artifact import (
    RUNTIME_THUNK,
    SPECTRE_OPT_OUT,
    RawSymbol,
    SymbolKind,
)

# Compiler switches that turn Spectre branch mitigation off for a whole
# compilation unit.
SPECTRE_OPT_OUT_SWITCHES = (
    "-mindirect-branch=keep",
    "-mno-indirect-branch-register",
    "-mretpoline=no",
    "-mno-retpoline",
    "-mno-speculative-load-hardening",
    "/Qspectre-",
)

_THUNK_PATTERNS = (
    re.compile(r"^_{0,2}x86_indirect_thunk(_\w+)?$"),
    re.compile(r"^_{0,2}x86_indirect_call_thunk(_\w+)?$"),
    re.compile(r"^_{0,2}x86_indirect_jump_thunk(_\w+)?$"),
    re.compile(r"^_{0,2}x86_return_thunk$"),
    re.compile(r"^_{0,2}llvm_retpoline_\w+$"),
    re.compile(r"^_{0,2}llvm_external_retpoline_\w+$"),
)


def is_retpoline_thunk(name: str) -> bool:
    bare = name.split("@", 1)[0].lstrip("_")
    return any(p.match(bare) or p.match(name) for p in _THUNK_PATTERNS)


def producer_disables_spectre(producer: str) -> bool:
    tokens = producer.split()
    return any(tok in SPECTRE_OPT_OUT_SWITCHES for tok in tokens)


def _matches_any(name: str, patterns: Sequence[str]) -> bool:
    bare = name.split("@", 1)[0]
    return any(fnmatch.fnmatchcase(bare, p) or fnmatch.fnmatchcase(name, p) for p in patterns)


def annotate_symbols(
    symbols: Iterable[RawSymbol],
    *,
    opt_out_addresses: frozenset[int] = frozenset(),
    opt_out_patterns: Sequence[str] = (),
) -> tuple[RawSymbol, ...]:
    """Return symbols with Spectre opt-out and runtime-thunk markers attached."""
    annotated: list[RawSymbol] = []
    for sym in symbols:
        markers = set(sym.markers)
        if sym.defined and sym.kind == SymbolKind.FUNCTION:
            if is_retpoline_thunk(sym.name):
                markers.update((RUNTIME_THUNK, SPECTRE_OPT_OUT))
            if sym.address in opt_out_addresses:
                markers.add(SPECTRE_OPT_OUT)
            if opt_out_patterns and _matches_any(sym.name, opt_out_patterns):
                markers.add(SPECTRE_OPT_OUT)
        if markers != sym.markers:
            sym = replace(sym, markers=frozenset(markers))
        annotated.append(sym)
    return tuple(annotated)
