"""Resolve raw loader symbols into origin-classified, indexed records."""

from __future__ import annotations

import bisect
from collections import defaultdict
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from enum import Enum

from mitiscan.binary.artifact import (
    BinaryArtifact,
    BinaryFormat,
    RawSymbol,
    SymbolBinding,
    SymbolKind,
)
from mitiscan.symbols.conventions import ToolchainConventions
from mitiscan.utils.logging import get_logger

log = get_logger(__name__)


class SymbolOrigin(str, Enum):
    COMPILER = "compiler"
    USER = "user"
    IMPORTED = "imported"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class SymbolRecord:
    name: str
    raw_name: str
    address: int
    size: int
    binding: SymbolBinding
    kind: SymbolKind
    section: str | None
    defined: bool
    external: bool
    library: str
    source: str
    markers: frozenset[str]
    origin: SymbolOrigin
    initial_value: int | None = None

    @property
    def is_function(self) -> bool:
        return self.kind == SymbolKind.FUNCTION and self.defined

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "raw_name": self.raw_name,
            "address": self.address,
            "section": self.section,
            "origin": self.origin.value,
            "initial_value": self.initial_value,
        }


@dataclass(frozen=True)
class FunctionRange:
    record: SymbolRecord
    start: int
    end: int

    def contains(self, address: int) -> bool:
        return self.start <= address < self.end


class SymbolIndex:
    """Read-only lookup structure over resolved symbols.

    Records sharing a name are all kept, in loader order.
    """

    def __init__(self, records: Sequence[SymbolRecord], functions: Sequence[FunctionRange]) -> None:
        self._records = tuple(records)
        by_name: dict[str, list[SymbolRecord]] = defaultdict(list)
        for record in self._records:
            by_name[record.name].append(record)
        self._by_name = {name: tuple(recs) for name, recs in by_name.items()}
        self._functions = tuple(sorted(functions, key=lambda f: (f.start, f.record.name)))
        self._starts = [f.start for f in self._functions]
        # Running maximum of range ends lets function_at stop scanning early.
        self._max_ends: list[int] = []
        for f in self._functions:
            self._max_ends.append(max(f.end, self._max_ends[-1] if self._max_ends else 0))
        self._defined = sorted(
            (r for r in self._records if r.defined and r.kind != SymbolKind.FILE),
            key=lambda r: (r.address, r.name),
        )
        self._defined_addrs = [r.address for r in self._defined]

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[SymbolRecord]:
        return iter(self._records)

    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self._by_name))

    def lookup(self, name: str) -> tuple[SymbolRecord, ...]:
        return self._by_name.get(name, ())

    def definitions(self, name: str) -> tuple[SymbolRecord, ...]:
        return tuple(r for r in self.lookup(name) if r.defined)

    def functions(self) -> tuple[FunctionRange, ...]:
        return self._functions

    def function_at(self, address: int) -> FunctionRange | None:
        i = bisect.bisect_right(self._starts, address) - 1
        while i >= 0 and self._max_ends[i] > address:
            candidate = self._functions[i]
            if candidate.contains(address):
                return candidate
            i -= 1
        return None

    def symbol_at(self, address: int) -> SymbolRecord | None:
        i = bisect.bisect_left(self._defined_addrs, address)
        if i < len(self._defined) and self._defined[i].address == address:
            return self._defined[i]
        return None

    def ambiguous(self) -> tuple[str, ...]:
        return tuple(
            sorted(
                name
                for name, recs in self._by_name.items()
                if any(r.origin == SymbolOrigin.AMBIGUOUS for r in recs)
            )
        )


@dataclass(frozen=True)
class ResolvedBinary:
    artifact: BinaryArtifact
    symbols: SymbolIndex

    @property
    def binary_id(self) -> str:
        return self.artifact.binary_id


class SymbolResolver:
    """Classify every raw symbol of an artifact by origin."""

    def __init__(self, conventions: ToolchainConventions | None = None) -> None:
        self.conventions = conventions or ToolchainConventions()

    def resolve(self, artifact: BinaryArtifact) -> ResolvedBinary:
        conv = self.conventions
        names = [
            conv.normalize(sym.name, artifact.format, artifact.architecture, sym.source)
            for sym in artifact.symbols
        ]
        ambiguous = self._ambiguous_names(artifact.symbols, names)
        static_runtime = artifact.format != BinaryFormat.PE and any(
            sym.defined and not sym.imported and name in conv.static_runtime_markers
            for sym, name in zip(artifact.symbols, names)
        )

        records = []
        for sym, name in zip(artifact.symbols, names):
            external = sym.binding != SymbolBinding.LOCAL
            initial_value = self._initial_value(artifact, sym)
            origin = self._classify(
                artifact, sym, name, external, initial_value, ambiguous, static_runtime
            )
            records.append(
                SymbolRecord(
                    name=name,
                    raw_name=sym.name,
                    address=sym.address,
                    size=sym.size,
                    binding=sym.binding,
                    kind=sym.kind,
                    section=sym.section,
                    defined=sym.defined and not sym.imported,
                    external=external,
                    library=sym.library,
                    source=sym.source,
                    markers=sym.markers,
                    origin=origin,
                    initial_value=initial_value,
                )
            )

        if ambiguous:
            log.info("ambiguous_symbols", binary=artifact.binary_id, names=sorted(ambiguous))
        index = SymbolIndex(records, _function_ranges(artifact, records))
        return ResolvedBinary(artifact=artifact, symbols=index)

    @staticmethod
    def _ambiguous_names(symbols: Sequence[RawSymbol], names: Sequence[str]) -> frozenset[str]:
        addresses: dict[str, set[int]] = defaultdict(set)
        for sym, name in zip(symbols, names):
            if sym.defined and not sym.imported and sym.binding != SymbolBinding.LOCAL:
                addresses[name].add(sym.address)
        return frozenset(name for name, addrs in addresses.items() if len(addrs) > 1)

    def _classify(
        self,
        artifact: BinaryArtifact,
        sym: RawSymbol,
        name: str,
        external: bool,
        initial_value: int | None,
        ambiguous: frozenset[str],
        static_runtime: bool,
    ) -> SymbolOrigin:
        conv = self.conventions
        if not sym.defined or sym.imported:
            return SymbolOrigin.IMPORTED
        if external and name in ambiguous:
            return SymbolOrigin.AMBIGUOUS
        if external and conv.is_cookie(name):
            if conv.is_default_cookie(initial_value, artifact.word_size):
                return SymbolOrigin.COMPILER
            if static_runtime:
                return SymbolOrigin.COMPILER
            return SymbolOrigin.USER
        if sym.kind in (SymbolKind.SECTION, SymbolKind.FILE) or conv.is_reserved(name):
            return SymbolOrigin.COMPILER
        return SymbolOrigin.USER

    @staticmethod
    def _initial_value(artifact: BinaryArtifact, sym: RawSymbol) -> int | None:
        if not sym.defined or sym.imported:
            return None
        if sym.kind not in (SymbolKind.OBJECT, SymbolKind.OTHER):
            return None
        width = artifact.word_size // 8
        if 0 < sym.size < width:
            width = sym.size
        raw = artifact.read(sym.address, width)
        if raw is None:
            return None
        return int.from_bytes(raw, "big" if artifact.endianness == "big" else "little")


def _function_ranges(artifact: BinaryArtifact, records: Sequence[SymbolRecord]) -> list[FunctionRange]:
    """Give every defined function an extent; zero-sized ones run to the next start."""
    seen: set[tuple[int, str]] = set()
    functions = []
    for record in records:
        if not record.is_function or (record.address, record.name) in seen:
            continue
        if artifact.section_at(record.address) is None:
            continue
        seen.add((record.address, record.name))
        functions.append(record)

    starts = sorted({f.address for f in functions})
    ranges = []
    for record in functions:
        section = artifact.section_at(record.address)
        limit = section.end
        if record.size:
            end = min(record.address + record.size, limit)
        else:
            i = bisect.bisect_right(starts, record.address)
            end = min(starts[i], limit) if i < len(starts) else limit
        ranges.append(FunctionRange(record=record, start=record.address, end=end))
    return ranges
