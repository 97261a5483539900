"""Frozen dataclasses describing a parsed binary."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class BinaryFormat(str, Enum):
    PE = "pe"
    ELF = "elf"
    MACHO = "macho"


class SymbolBinding(str, Enum):
    LOCAL = "local"
    GLOBAL = "global"
    WEAK = "weak"


class SymbolKind(str, Enum):
    FUNCTION = "function"
    OBJECT = "object"
    SECTION = "section"
    FILE = "file"
    OTHER = "other"


# Metadata markers attached to raw symbols at load time.
SPECTRE_OPT_OUT = "spectre-opt-out"
RUNTIME_THUNK = "runtime-thunk"


@dataclass(frozen=True)
class Relocation:
    offset: int
    type: str
    symbol: str = ""


@dataclass(frozen=True)
class Section:
    name: str
    address: int
    size: int  # virtual size
    offset: int = 0
    raw_size: int = 0
    readable: bool = True
    writable: bool = False
    executable: bool = False
    shared: bool = False
    data: bytes = field(default=b"", repr=False)
    relocations: tuple[Relocation, ...] = ()

    @property
    def end(self) -> int:
        return self.address + self.size

    def contains(self, address: int) -> bool:
        return self.address <= address < self.end

    def read(self, address: int, length: int) -> bytes | None:
        """Read ``length`` bytes at a virtual address, or None if out of range.

        Bytes inside the virtual size but past the raw data read as zero
        (zero-fill / uninitialized tail).
        """
        if length < 0 or address < self.address or address + length > self.end:
            return None
        start = address - self.address
        chunk = self.data[start : start + length]
        return chunk + b"\x00" * (length - len(chunk))


@dataclass(frozen=True)
class RawSymbol:
    name: str
    address: int
    size: int = 0
    binding: SymbolBinding = SymbolBinding.GLOBAL
    kind: SymbolKind = SymbolKind.OTHER
    section: str | None = None
    defined: bool = True
    imported: bool = False
    exported: bool = False
    library: str = ""
    source: str = "symtab"
    markers: frozenset[str] = frozenset()


@dataclass(frozen=True)
class LoadConfigInfo:
    size: int
    security_cookie_va: int = 0
    guard_cf_check_function_pointer: int = 0
    guard_cf_function_table: int = 0
    guard_flags: int = 0


@dataclass(frozen=True)
class PEInfo:
    machine: int
    characteristics: int
    dll_characteristics: int
    subsystem: int
    linker_version: tuple[int, int] = (0, 0)
    image_base: int = 0
    load_config: LoadConfigInfo | None = None
    clr_flags: int | None = None

    @property
    def dynamic_base(self) -> bool:
        return bool(self.dll_characteristics & 0x0040)

    @property
    def high_entropy_va(self) -> bool:
        return bool(self.dll_characteristics & 0x0020)

    @property
    def nx_compat(self) -> bool:
        return bool(self.dll_characteristics & 0x0100)

    @property
    def guard_cf(self) -> bool:
        return bool(self.dll_characteristics & 0x4000)

    @property
    def relocs_stripped(self) -> bool:
        return bool(self.characteristics & 0x0001)

    @property
    def is_dll(self) -> bool:
        return bool(self.characteristics & 0x2000)

    @property
    def is_il_only(self) -> bool:
        return self.clr_flags is not None and bool(self.clr_flags & 0x1)

    @property
    def is_kernel_mode(self) -> bool:
        return self.subsystem == 1  # IMAGE_SUBSYSTEM_NATIVE

    @property
    def is_boot(self) -> bool:
        return self.subsystem in (10, 11, 12, 13, 16)  # EFI_*, WINDOWS_BOOT_APPLICATION

    @property
    def is_xbox(self) -> bool:
        return self.subsystem == 14  # IMAGE_SUBSYSTEM_XBOX


@dataclass(frozen=True)
class ProgramHeader:
    type: str
    flags: int
    offset: int
    vaddr: int
    filesz: int
    memsz: int


@dataclass(frozen=True)
class ELFInfo:
    elf_type: str
    program_headers: tuple[ProgramHeader, ...] = ()
    dynamic_tags: tuple[tuple[str, int], ...] = ()
    interpreter: str = ""
    compilers: tuple[str, ...] = ()

    def segments(self, p_type: str) -> tuple[ProgramHeader, ...]:
        return tuple(ph for ph in self.program_headers if ph.type == p_type)

    def dynamic_values(self, tag: str) -> tuple[int, ...]:
        return tuple(value for name, value in self.dynamic_tags if name == tag)


@dataclass(frozen=True)
class MachOInfo:
    cputype: int
    filetype: int
    flags: int
    is_fat_slice: bool = False
    dylibs: tuple[str, ...] = ()


@dataclass(frozen=True)
class BinaryArtifact:
    name: str
    sha256: str
    format: BinaryFormat
    architecture: str
    word_size: int = 64
    endianness: str = "little"
    file_type: str = "executable"
    entry_point: int = 0
    sections: tuple[Section, ...] = ()
    symbols: tuple[RawSymbol, ...] = ()
    pe: PEInfo | None = None
    elf: ELFInfo | None = None
    macho: MachOInfo | None = None
    slice_index: int | None = None
    slice_label: str | None = None
    debug_info_error: str | None = None

    @property
    def binary_id(self) -> str:
        if self.slice_index is None:
            return self.name
        return f"{self.name}[{self.slice_label or self.architecture}]"

    def section_named(self, name: str) -> Section | None:
        for section in self.sections:
            if section.name == name:
                return section
        return None

    def section_at(self, address: int) -> Section | None:
        for section in self.sections:
            if section.contains(address):
                return section
        return None

    def read(self, address: int, length: int) -> bytes | None:
        section = self.section_at(address)
        if section is None:
            return None
        return section.read(address, length)
