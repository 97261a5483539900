"""Shared test fixtures: in-memory builders for small ELF, PE and Mach-O images."""

from __future__ import annotations

import struct
from collections.abc import Sequence
from dataclasses import dataclass

import pytest

from mitiscan.config.models import EngineConfig, MitiscanConfig
from mitiscan.engine.engine import AnalysisEngine
from mitiscan.rules.registry import RuleRegistry

# -- ELF ---------------------------------------------------------------------

ELF_TEXT_ADDR = 0x1000
ELF_DATA_ADDR = 0x2000
ELF_DYNAMIC_ADDR = 0x3000

ET_EXEC = 2
ET_DYN = 3
ET_REL = 1
EM_X86_64 = 62
EM_AARCH64 = 183

PT_LOAD = 1
PT_DYNAMIC = 2
PT_PHDR = 6
PT_GNU_STACK = 0x6474E551
PT_GNU_RELRO = 0x6474E552

DT_BIND_NOW = 24
DT_FLAGS = 30
DT_FLAGS_1 = 0x6FFFFFFB


@dataclass
class ElfSymbol:
    name: str
    value: int = 0
    size: int = 0
    kind: str = "func"
    bind: str = "global"
    section: str | None = ".text"


_STT = {"notype": 0, "object": 1, "func": 2}
_STB = {"local": 0, "global": 1, "weak": 2}


def build_elf(
    *,
    e_type: int = ET_DYN,
    machine: int = EM_X86_64,
    text: bytes = b"\xc3",
    data: bytes = b"",
    symbols: Sequence[dict] = (),
    stack_flags: int | None = 6,
    relro: bool = True,
    phdr: bool = True,
    dynamic: list[tuple[int, int]] | None = None,
    debug_info: bytes | None = None,
    debug_abbrev: bytes | None = None,
) -> bytes:
    """Little-endian ELF64 with no gaps between its parts."""
    # section list: (name, type, flags, addr, payload, link_name, entsize)
    layout: list[tuple[str, int, int, int, bytes, str | None, int]] = [
        (".text", 1, 0x6, ELF_TEXT_ADDR, text, None, 0),
    ]
    if data:
        layout.append((".data", 1, 0x3, ELF_DATA_ADDR, data, None, 0))
    if dynamic is not None:
        payload = b"".join(struct.pack("<qQ", tag, val) for tag, val in [*dynamic, (0, 0)])
        layout.append((".dynamic", 6, 0x3, ELF_DYNAMIC_ADDR, payload, ".strtab", 16))
    if debug_info is not None:
        layout.append((".debug_info", 1, 0, 0, debug_info, None, 0))
    if debug_abbrev is not None:
        layout.append((".debug_abbrev", 1, 0, 0, debug_abbrev, None, 0))

    section_names = ["", *(s[0] for s in layout), ".symtab", ".strtab", ".shstrtab"]
    index_of = {name: i for i, name in enumerate(section_names)}

    strtab = bytearray(b"\x00")
    symtab = bytearray(b"\x00" * 24)
    for sym in (ElfSymbol(**entry) for entry in symbols):
        name_off = len(strtab)
        strtab += sym.name.encode() + b"\x00"
        shndx = index_of[sym.section] if sym.section else 0
        info = (_STB[sym.bind] << 4) | _STT[sym.kind]
        symtab += struct.pack("<IBBHQQ", name_off, info, 0, shndx, sym.value, sym.size)
    layout.append((".symtab", 2, 0, 0, bytes(symtab), ".strtab", 24))
    layout.append((".strtab", 3, 0, 0, bytes(strtab), None, 0))

    shstrtab = bytearray(b"\x00")
    name_offsets = {}
    for name in section_names[1:]:
        name_offsets[name] = len(shstrtab)
        shstrtab += name.encode() + b"\x00"
    layout.append((".shstrtab", 3, 0, 0, bytes(shstrtab), None, 0))

    phnum = 1 + (1 if phdr else 0) + (1 if data else 0) + (1 if dynamic is not None else 0)
    phnum += (1 if stack_flags is not None else 0) + (1 if relro else 0)

    offset = 64 + phnum * 56
    placed = []
    for entry in layout:
        placed.append((entry, offset))
        offset += len(entry[4])
    shoff = offset
    offsets = {entry[0]: off for entry, off in placed}

    phdrs = bytearray()

    def phdr_entry(p_type, flags, off, vaddr, size):
        return struct.pack("<IIQQQQQQ", p_type, flags, off, vaddr, vaddr, size, size, 1)

    if phdr:
        phdrs += phdr_entry(PT_PHDR, 4, 64, 64, phnum * 56)
    phdrs += phdr_entry(PT_LOAD, 5, offsets[".text"], ELF_TEXT_ADDR, len(text))
    if data:
        phdrs += phdr_entry(PT_LOAD, 6, offsets[".data"], ELF_DATA_ADDR, len(data))
    if dynamic is not None:
        phdrs += phdr_entry(
            PT_DYNAMIC, 6, offsets[".dynamic"], ELF_DYNAMIC_ADDR, (len(dynamic) + 1) * 16
        )
    if stack_flags is not None:
        phdrs += phdr_entry(PT_GNU_STACK, stack_flags, 0, 0, 0)
    if relro:
        if data:
            phdrs += phdr_entry(PT_GNU_RELRO, 4, offsets[".data"], ELF_DATA_ADDR, len(data))
        else:
            phdrs += phdr_entry(PT_GNU_RELRO, 4, offsets[".text"], ELF_TEXT_ADDR, 0)

    shdrs = bytearray(b"\x00" * 64)
    for (name, sh_type, flags, addr, payload, link, entsize), off in placed:
        shdrs += struct.pack(
            "<IIQQQQIIQQ",
            name_offsets[name],
            sh_type,
            flags,
            addr,
            off,
            len(payload),
            index_of[link] if link else 0,
            1 if sh_type == 2 else 0,
            1,
            entsize,
        )

    ident = b"\x7fELF" + bytes([2, 1, 1, 0]) + b"\x00" * 8
    header = ident + struct.pack(
        "<HHIQQQIHHHHHH",
        e_type,
        machine,
        1,
        ELF_TEXT_ADDR,
        64,
        shoff,
        0,
        64,
        56,
        phnum,
        64,
        len(section_names),
        index_of[".shstrtab"],
    )
    body = b"".join(entry[4] for entry, _ in placed)
    image = header + bytes(phdrs) + body + bytes(shdrs)
    assert len(header) == 64 and len(image) == shoff + 64 * len(section_names)
    return image


# abbrev 1: compile_unit(producer: string), abbrev 2: subprogram(name: string, low_pc: addr)
_DWARF_ABBREV = bytes(
    [1, 0x11, 1, 0x25, 0x08, 0, 0, 2, 0x2E, 0, 0x03, 0x08, 0x11, 0x01, 0, 0, 0]
)


def build_dwarf(producer: str, subprograms: Sequence[tuple[str, int]]) -> dict[str, bytes]:
    """One DWARF 4 compilation unit; returns ``build_elf`` keyword arguments."""
    dies = b"\x01" + producer.encode() + b"\x00"
    for name, low_pc in subprograms:
        dies += b"\x02" + name.encode() + b"\x00" + struct.pack("<Q", low_pc)
    dies += b"\x00"
    unit = struct.pack("<HIB", 4, 0, 8) + dies
    return {"debug_info": struct.pack("<I", len(unit)) + unit, "debug_abbrev": _DWARF_ABBREV}


# -- PE ----------------------------------------------------------------------

PE_IMAGE_BASE = 0x140000000
PE_TEXT_RVA = 0x1000
PE_RDATA_RVA = 0x2000
PE_DATA_RVA = 0x3000
MSVC_COOKIE_64 = 0x00002B992DDFA232
MSVC_COOKIE_32 = 0xBB40E64E


@dataclass
class CoffSymbol:
    name: str
    value: int = 0
    section: int = 1
    function: bool = True
    storage_class: int = 2


def _load_config_blob(word_size: int, cookie_va: int, guard: bool, size: int | None) -> bytes:
    if word_size == 64:
        blob = bytearray(0x94)
        struct.pack_into("<I", blob, 0, size if size is not None else 0x94)
        struct.pack_into("<Q", blob, 88, cookie_va)
        if guard:
            struct.pack_into("<Q", blob, 112, PE_IMAGE_BASE + 0x2200)
            struct.pack_into("<Q", blob, 128, PE_IMAGE_BASE + 0x2300)
            struct.pack_into("<I", blob, 144, 0x10500)
    else:
        blob = bytearray(0x5C)
        struct.pack_into("<I", blob, 0, size if size is not None else 0x5C)
        struct.pack_into("<I", blob, 60, cookie_va)
        if guard:
            struct.pack_into("<I", blob, 72, 0x400000 + 0x2200)
            struct.pack_into("<I", blob, 80, 0x400000 + 0x2300)
            struct.pack_into("<I", blob, 88, 0x10500)
    return bytes(blob)


def build_pe(
    *,
    pe32: bool = False,
    text: bytes = b"\xc3",
    dll_characteristics: int = 0x4160,
    characteristics: int = 0x0022,
    subsystem: int = 3,
    linker_version: tuple[int, int] = (14, 30),
    load_config: bool = True,
    cookie_value: int | None = None,
    cookie_va: int | None = None,
    guard_cf: bool = True,
    load_config_size: int | None = None,
    clr_flags: int | None = None,
    coff_symbols: Sequence[dict] = (),
    writable_text: bool = False,
    shared_data: bool = False,
    machine: int | None = None,
    image_base: int | None = None,
) -> bytes:
    """PE32+ (or PE32) image with .text, .rdata and .data sections.

    Headers fill 0x200 bytes and each section 0x200 raw bytes, so every file
    offset belongs to a validated structure.
    """
    word_size = 32 if pe32 else 64
    if image_base is None:
        image_base = 0x400000 if pe32 else PE_IMAGE_BASE
    if cookie_value is None:
        cookie_value = MSVC_COOKIE_32 if pe32 else MSVC_COOKIE_64
    if cookie_va is None:
        cookie_va = image_base + PE_DATA_RVA

    rdata = bytearray(0x200)
    directories = [(0, 0)] * 16
    if load_config:
        blob = _load_config_blob(word_size, cookie_va, guard_cf, load_config_size)
        rdata[0 : len(blob)] = blob
        directories[10] = (PE_RDATA_RVA, 0x94 if word_size == 64 else 0x5C)
    if clr_flags is not None:
        struct.pack_into("<IHHIIIII", rdata, 0x100, 72, 2, 5, 0, 0, clr_flags, 0, 0)
        directories[14] = (PE_RDATA_RVA + 0x100, 72)

    data = bytearray(0x200)
    struct.pack_into("<Q" if word_size == 64 else "<I", data, 0, cookie_value)

    text_chars = 0x60000020 | (0x80000000 if writable_text else 0)
    data_chars = 0xC0000040 | (0x10000000 if shared_data else 0)
    sections = [
        (b".text", PE_TEXT_RVA, max(len(text), 1), 0x200, text_chars, text),
        (b".rdata", PE_RDATA_RVA, 0x200, 0x400, 0x40000040, bytes(rdata)),
        (b".data", PE_DATA_RVA, 0x200, 0x600, data_chars, bytes(data)),
    ]

    symtab = b""
    pointer_to_symbols = 0
    if coff_symbols:
        pointer_to_symbols = 0x800
        strings = bytearray()
        entries = bytearray()
        for sym in (CoffSymbol(**entry) for entry in coff_symbols):
            raw = sym.name.encode()
            if len(raw) <= 8:
                name_field = raw.ljust(8, b"\x00")
            else:
                name_field = struct.pack("<II", 0, 4 + len(strings))
                strings += raw + b"\x00"
            entries += struct.pack(
                "<8sIhHBB",
                name_field,
                sym.value,
                sym.section,
                0x20 if sym.function else 0,
                sym.storage_class,
                0,
            )
        symtab = bytes(entries) + struct.pack("<I", 4 + len(strings)) + bytes(strings)

    opt_size = 224 if pe32 else 240
    if machine is None:
        machine = 0x14C if pe32 else 0x8664
    coff = struct.pack(
        "<HHIIIHH",
        machine,
        len(sections),
        0,
        pointer_to_symbols,
        len(coff_symbols),
        opt_size,
        characteristics,
    )
    if pe32:
        optional = struct.pack(
            "<HBBIIIIIIIIIHHHHHHIIIIHHIIIIII",
            0x10B, *linker_version, 0x200, 0x400, 0, PE_TEXT_RVA, PE_TEXT_RVA,
            PE_RDATA_RVA, image_base, 0x1000, 0x200, 6, 0, 0, 0, 6, 0, 0, 0x4000, 0x200, 0,
            subsystem, dll_characteristics, 0x100000, 0x1000, 0x100000, 0x1000, 0, 16,
        )
    else:
        optional = struct.pack(
            "<HBBIIIIIQIIHHHHHHIIIIHHQQQQII",
            0x20B, *linker_version, 0x200, 0x400, 0, PE_TEXT_RVA, PE_TEXT_RVA,
            image_base, 0x1000, 0x200, 6, 0, 0, 0, 6, 0, 0, 0x4000, 0x200, 0,
            subsystem, dll_characteristics, 0x100000, 0x1000, 0x100000, 0x1000, 0, 16,
        )
    optional += b"".join(struct.pack("<II", rva, size) for rva, size in directories)
    assert len(optional) == opt_size

    table = b"".join(
        struct.pack("<8sIIIIIIHHI", name, vsize, rva, 0x200, raw_ptr, 0, 0, 0, 0, chars)
        for name, rva, vsize, raw_ptr, chars, _payload in sections
    )

    dos = bytearray(0x40)
    dos[0:2] = b"MZ"
    struct.pack_into("<I", dos, 0x3C, 0x40)
    headers = bytes(dos) + b"PE\x00\x00" + coff + optional + table
    headers = headers.ljust(0x200, b"\x00")
    body = b"".join(payload.ljust(0x200, b"\x00") for *_, payload in sections)
    return headers + body + symtab


# -- Mach-O --------------------------------------------------------------------

MACHO_TEXT_ADDR = 0x100001000
MACHO_DATA_ADDR = 0x100004000
CPU_TYPE_X86_64 = 0x01000007
CPU_TYPE_ARM64 = 0x0100000C
MH_EXECUTE = 0x2
MH_DYLIB = 0x6
MH_PIE = 0x200000
MH_ALLOW_STACK_EXECUTION = 0x20000


@dataclass
class MachSymbol:
    name: str
    value: int = 0
    section: int = 1
    external: bool = True
    ordinal: int = 0


def build_macho(
    *,
    cputype: int = CPU_TYPE_X86_64,
    filetype: int = MH_EXECUTE,
    flags: int = MH_PIE | 0x85,
    text: bytes = b"\xc3",
    data: bytes = b"",
    symbols: Sequence[dict] = (),
    dylib: str = "/usr/lib/libSystem.B.dylib",
) -> bytes:
    """Little-endian 64-bit Mach-O with __TEXT,__text, optional __DATA,__data."""
    dylib_name = dylib.encode() + b"\x00"
    dylib_size = 24 + ((len(dylib_name) + 7) // 8) * 8
    cmd_sizes = [152]
    if data:
        cmd_sizes.append(152)
    cmd_sizes += [24, 24, dylib_size]  # LC_SYMTAB, LC_MAIN, LC_LOAD_DYLIB
    sizeofcmds = sum(cmd_sizes)

    text_off = 32 + sizeofcmds
    data_off = text_off + len(text)
    symoff = data_off + len(data)

    strtab = bytearray(b"\x00")
    nlist = bytearray()
    for sym in (MachSymbol(**entry) for entry in symbols):
        strx = len(strtab)
        strtab += sym.name.encode() + b"\x00"
        if sym.section:
            n_type = 0x0E | (0x01 if sym.external else 0)
        else:
            n_type = 0x01
        nlist += struct.pack(
            "<IBBHQ", strx, n_type, sym.section, (sym.ordinal & 0xFF) << 8, sym.value
        )
    stroff = symoff + len(nlist)

    def segment(name: bytes, vmaddr, fileoff, filesize, prot, sect: bytes, addr, size, off, sflags):
        section = struct.pack(
            "<16s16sQQIIIIIIII", sect, name, addr, size, off, 0, 0, 0, sflags, 0, 0, 0
        )
        return struct.pack(
            "<II16sQQQQiiII", 0x19, 152, name, vmaddr, 0x4000, fileoff, filesize, prot, prot, 1, 0
        ) + section

    cmds = segment(
        b"__TEXT", 0x100000000, 0, data_off, 5, b"__text", MACHO_TEXT_ADDR, len(text), text_off,
        0x80000400,
    )
    if data:
        cmds += segment(
            b"__DATA", MACHO_DATA_ADDR, data_off, len(data), 3, b"__data", MACHO_DATA_ADDR,
            len(data), data_off, 0,
        )
    cmds += struct.pack("<IIIIII", 0x2, 24, symoff, len(symbols), stroff, len(strtab))
    cmds += struct.pack("<IIQQ", 0x80000028, 24, MACHO_TEXT_ADDR - 0x100000000, 0)
    cmds += struct.pack("<IIIIII", 0xC, dylib_size, 24, 2, 0x10000, 0x10000)
    cmds += dylib_name.ljust(dylib_size - 24, b"\x00")
    assert len(cmds) == sizeofcmds

    header = struct.pack(
        "<IiiIIIII", 0xFEEDFACF, cputype, 3 if cputype == CPU_TYPE_X86_64 else 0, filetype,
        len(cmd_sizes), sizeofcmds, flags, 0,
    )
    return header + cmds + text + data + bytes(nlist) + bytes(strtab)


def build_fat(slices: list[tuple[int, bytes]]) -> bytes:
    """Big-endian FAT_MAGIC wrapper; slices start on 0x1000 boundaries, the last unpadded."""
    offset = 0x1000
    table = b""
    body = b""
    for i, (cputype, image) in enumerate(slices):
        table += struct.pack(">iiIII", cputype, 0, offset, len(image), 12)
        last = i == len(slices) - 1
        padded = image if last else image.ljust(((len(image) + 0xFFF) // 0x1000) * 0x1000, b"\x00")
        body += padded
        offset += len(padded)
    header = struct.pack(">II", 0xCAFEBABE, len(slices)) + table
    return header.ljust(0x1000, b"\x00") + body


# -- fixtures ----------------------------------------------------------------


@pytest.fixture
def make_elf():
    return build_elf


@pytest.fixture
def make_dwarf():
    return build_dwarf


@pytest.fixture
def make_pe():
    return build_pe


@pytest.fixture
def make_macho():
    return build_macho


@pytest.fixture
def make_fat():
    return build_fat


@pytest.fixture
def sample_config() -> MitiscanConfig:
    return MitiscanConfig(engine=EngineConfig(max_workers=2, rule_workers=1))


@pytest.fixture
def engine(sample_config) -> AnalysisEngine:
    return AnalysisEngine(RuleRegistry.default(), sample_config)


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: exhaustive truncation sweeps")


@pytest.fixture
def analyze(engine):
    """Analyze an in-memory image; returns ``{rule_id: RuleResult}`` for its only report."""

    def _analyze(image: bytes, name: str = "sample") -> dict:
        (report,) = engine.analyze_bytes(image, name)
        return {result.rule_id: result for result in report.results}

    return _analyze
