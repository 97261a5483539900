"""ELF loader using pyelftools over a pre-validated buffer."""

from __future__ import annotations

import io
from collections.abc import Sequence
from typing import Any

from elftools.elf.descriptions import describe_reloc_type
from elftools.elf.dynamic import DynamicSection
from elftools.elf.elffile import ELFFile
from elftools.elf.relocation import RelocationSection
from elftools.elf.sections import SymbolTableSection

from mitiscan.binary.annotations import annotate_symbols, producer_disables_spectre
from mitiscan.binary.artifact import (
    BinaryArtifact,
    BinaryFormat,
    ELFInfo,
    ProgramHeader,
    RawSymbol,
    Relocation,
    Section,
    SymbolBinding,
    SymbolKind,
)
from mitiscan.binary.reader import ByteView
from mitiscan.errors import LoadError, MalformedError
from mitiscan.utils.logging import get_logger

log = get_logger(__name__)

SHT_NULL = 0
SHT_NOBITS = 8

SHF_WRITE = 0x1
SHF_ALLOC = 0x2
SHF_EXECINSTR = 0x4

_EHDR = {32: "16sHHIIIIIHHHHHH", 64: "16sHHIQQQIHHHHHH"}
_SHDR = {32: "IIIIIIIIII", 64: "IIQQQQIIQQ"}
_PHDR = {32: "IIIIIIII", 64: "IIQQQQQQ"}

_MACHINES = {
    "EM_X86_64": "x86_64",
    "EM_386": "x86",
    "EM_ARM": "arm",
    "EM_AARCH64": "arm64",
    "EM_MIPS": "mips",
    "EM_PPC": "ppc",
    "EM_PPC64": "ppc64",
    "EM_RISCV": "riscv",
    "EM_S390": "s390",
}

_FILE_TYPES = {
    "ET_EXEC": "executable",
    "ET_DYN": "shared_object",
    "ET_REL": "relocatable",
    "ET_CORE": "core",
}

_BINDINGS = {
    "STB_LOCAL": SymbolBinding.LOCAL,
    "STB_GLOBAL": SymbolBinding.GLOBAL,
    "STB_WEAK": SymbolBinding.WEAK,
    "STB_GNU_UNIQUE": SymbolBinding.GLOBAL,
}

_KINDS = {
    "STT_FUNC": SymbolKind.FUNCTION,
    "STT_GNU_IFUNC": SymbolKind.FUNCTION,
    "STT_OBJECT": SymbolKind.OBJECT,
    "STT_TLS": SymbolKind.OBJECT,
    "STT_COMMON": SymbolKind.OBJECT,
    "STT_SECTION": SymbolKind.SECTION,
    "STT_FILE": SymbolKind.FILE,
}


def load_elf(
    data: bytes,
    name: str,
    sha256: str,
    opt_out_patterns: Sequence[str] = (),
) -> BinaryArtifact:
    """Parse an ELF image into a BinaryArtifact.

    Every header table and section range is validated against the buffer
    before pyelftools sees it; pyelftools failures surface as MalformedError.
    """
    view = ByteView(data)
    _prevalidate(view)

    try:
        elf = ELFFile(io.BytesIO(data))
        elf_type = elf.header.e_type
        sections, names = _get_sections(elf, data)
        program_headers = _get_program_headers(elf)
        symbols = _get_symbols(elf, names)
        dynamic_tags = _get_dynamic_tags(elf)
        compilers, opt_out_addresses, debug_error = _get_dwarf_metadata(elf)
        artifact = BinaryArtifact(
            name=name,
            sha256=sha256,
            format=BinaryFormat.ELF,
            architecture=_MACHINES.get(elf.header.e_machine, str(elf.header.e_machine).lower()),
            word_size=elf.elfclass,
            endianness="little" if elf.little_endian else "big",
            file_type=_FILE_TYPES.get(elf_type, str(elf_type)),
            entry_point=elf.header.e_entry,
            sections=sections,
            symbols=annotate_symbols(
                symbols,
                opt_out_addresses=opt_out_addresses,
                opt_out_patterns=opt_out_patterns,
            ),
            elf=ELFInfo(
                elf_type=str(elf_type),
                program_headers=program_headers,
                dynamic_tags=dynamic_tags,
                interpreter=_get_interpreter(view, program_headers),
                compilers=compilers,
            ),
            debug_info_error=debug_error,
        )
    except LoadError:
        raise
    except Exception as exc:
        log.debug("elf_parse_failed", name=name, error=str(exc))
        raise MalformedError(f"ELF parse failed: {type(exc).__name__}: {exc}") from exc

    return artifact


def _prevalidate(view: ByteView) -> None:
    """Check identification, header tables, and section/segment ranges."""
    ei_class = view.u8(4, "e_ident[EI_CLASS]")
    ei_data = view.u8(5, "e_ident[EI_DATA]")
    if ei_class not in (1, 2):
        raise MalformedError(f"invalid ELF class {ei_class}", offset=4)
    if ei_data not in (1, 2):
        raise MalformedError(f"invalid ELF data encoding {ei_data}", offset=5)
    bits = 32 if ei_class == 1 else 64
    endian = "<" if ei_data == 1 else ">"

    (
        _ident, _type, _machine, _version, _entry, phoff, shoff, _flags,
        _ehsize, phentsize, phnum, shentsize, shnum, shstrndx,
    ) = view.unpack(endian + _EHDR[bits], 0, "ELF header")

    if phnum:
        if phentsize < (32 if bits == 32 else 56):
            raise MalformedError(f"program header entry size {phentsize} too small")
        view.table(phoff, phnum, phentsize, "program header table")
        for i in range(phnum):
            fields = view.unpack(endian + _PHDR[bits], phoff + i * phentsize, "program header")
            if bits == 64:
                p_offset, p_filesz = fields[2], fields[5]
            else:
                p_offset, p_filesz = fields[1], fields[4]
            view.require(p_offset, p_filesz, f"segment {i} contents")

    if not shoff:
        if shnum:
            raise MalformedError(f"{shnum} sections declared at offset 0")
        return
    if shentsize < (40 if bits == 32 else 64):
        raise MalformedError(f"section header entry size {shentsize} too small")
    if shnum == 0:
        # Extended numbering keeps the real count in section 0's sh_size.
        shnum = view.unpack(endian + _SHDR[bits], shoff, "section header 0")[5]
        if not shnum:
            return
    if shstrndx >= shnum and shstrndx != 0xFFFF:
        raise MalformedError(f"e_shstrndx {shstrndx} out of range ({shnum} sections)")
    view.table(shoff, shnum, shentsize, "section header table")

    ranges: list[tuple[int, int, int]] = []
    for i in range(shnum):
        (
            _name, sh_type, _sh_flags, _addr, sh_offset, sh_size,
            _link, _info, _align, _entsize,
        ) = view.unpack(endian + _SHDR[bits], shoff + i * shentsize, "section header")
        if sh_type in (SHT_NULL, SHT_NOBITS):
            continue
        view.require(sh_offset, sh_size, f"section {i} contents")
        if sh_size:
            ranges.append((sh_offset, sh_size, i))

    ranges.sort()
    for (off_a, size_a, idx_a), (off_b, _size_b, idx_b) in zip(ranges, ranges[1:]):
        if off_b < off_a + size_a:
            raise MalformedError(
                f"sections {idx_a} and {idx_b} overlap in the file", offset=off_b
            )


def _get_sections(elf: ELFFile, data: bytes) -> tuple[tuple[Section, ...], dict[int, str]]:
    """Build Section objects (with relocations) and an index -> name map."""
    names: dict[int, str] = {}
    raw: list[tuple[int, Any]] = []
    for idx, section in enumerate(elf.iter_sections()):
        names[idx] = section.name
        raw.append((idx, section))

    relocations: dict[int, list[Relocation]] = {}
    is_relocatable = elf.header.e_type == "ET_REL"
    for idx, section in raw:
        if not isinstance(section, RelocationSection):
            continue
        for target, reloc in _iter_relocations(elf, section, raw, is_relocatable):
            relocations.setdefault(target, []).append(reloc)

    sections: list[Section] = []
    for idx, section in raw:
        hdr = section.header
        if hdr["sh_type"] == "SHT_NULL":
            continue
        flags = hdr["sh_flags"]
        nobits = hdr["sh_type"] == "SHT_NOBITS"
        offset, size = hdr["sh_offset"], hdr["sh_size"]
        sections.append(
            Section(
                name=section.name,
                address=hdr["sh_addr"],
                size=size,
                offset=offset,
                raw_size=0 if nobits else size,
                readable=bool(flags & SHF_ALLOC),
                writable=bool(flags & SHF_WRITE),
                executable=bool(flags & SHF_EXECINSTR),
                data=b"" if nobits else data[offset : offset + size],
                relocations=tuple(relocations.get(idx, ())),
            )
        )
    return tuple(sections), names


def _iter_relocations(elf: ELFFile, section: RelocationSection, raw, is_relocatable: bool):
    hdr = section.header
    if not hdr["sh_entsize"]:
        raise MalformedError(f"relocation section {section.name} has zero entry size")

    symtab = None
    if 0 < hdr["sh_link"] < len(raw):
        candidate = raw[hdr["sh_link"]][1]
        if isinstance(candidate, SymbolTableSection) and candidate.header["sh_entsize"]:
            symtab = candidate

    alloc_sections = [
        (idx, s) for idx, s in raw if s.header["sh_flags"] & SHF_ALLOC and s.header["sh_size"]
    ]
    for rel in section.iter_relocations():
        offset = rel["r_offset"]
        sym_idx = rel["r_info_sym"]
        sym_name = ""
        if symtab is not None and 0 < sym_idx < symtab.num_symbols():
            sym_name = symtab.get_symbol(sym_idx).name
        reloc = Relocation(
            offset=offset,
            type=describe_reloc_type(rel["r_info_type"], elf),
            symbol=sym_name,
        )
        if is_relocatable and 0 < hdr["sh_info"] < len(raw):
            yield hdr["sh_info"], reloc
            continue
        for idx, s in alloc_sections:
            start = s.header["sh_addr"]
            if start <= offset < start + s.header["sh_size"]:
                yield idx, reloc
                break


def _get_program_headers(elf: ELFFile) -> tuple[ProgramHeader, ...]:
    headers = []
    for segment in elf.iter_segments():
        hdr = segment.header
        headers.append(
            ProgramHeader(
                type=str(hdr["p_type"]),
                flags=hdr["p_flags"],
                offset=hdr["p_offset"],
                vaddr=hdr["p_vaddr"],
                filesz=hdr["p_filesz"],
                memsz=hdr["p_memsz"],
            )
        )
    return tuple(headers)


def _get_interpreter(view: ByteView, program_headers: tuple[ProgramHeader, ...]) -> str:
    for ph in program_headers:
        if ph.type == "PT_INTERP":
            raw = view.slice(ph.offset, ph.filesz, "PT_INTERP")
            return raw.split(b"\x00", 1)[0].decode("utf-8", errors="replace")
    return ""


def _get_symbols(elf: ELFFile, names: dict[int, str]) -> list[RawSymbol]:
    """Extract all symbols from .symtab and .dynsym, keeping duplicates."""
    symbols: list[RawSymbol] = []
    num_sections = len(names)
    for section in elf.iter_sections():
        if not isinstance(section, SymbolTableSection):
            continue
        hdr = section.header
        if not hdr["sh_entsize"]:
            raise MalformedError(f"symbol table {section.name} has zero entry size")
        if hdr["sh_link"] >= num_sections:
            raise MalformedError(f"symbol table {section.name} links to missing string table")
        source = "dynsym" if hdr["sh_type"] == "SHT_DYNSYM" else "symtab"

        for sym in section.iter_symbols():
            if not sym.name:
                continue
            shndx = sym["st_shndx"]
            bind = _BINDINGS.get(sym["st_info"]["bind"], SymbolBinding.LOCAL)
            defined = shndx != "SHN_UNDEF"
            if isinstance(shndx, int):
                section_name = names.get(shndx)
            elif shndx == "SHN_COMMON":
                section_name = "COMMON"
            else:
                section_name = None
            symbols.append(
                RawSymbol(
                    name=sym.name,
                    address=sym["st_value"],
                    size=sym["st_size"],
                    binding=bind,
                    kind=_KINDS.get(sym["st_info"]["type"], SymbolKind.OTHER),
                    section=section_name,
                    defined=defined,
                    imported=not defined and bind != SymbolBinding.LOCAL,
                    exported=(
                        source == "dynsym"
                        and defined
                        and bind != SymbolBinding.LOCAL
                        and sym["st_other"]["visibility"] in ("STV_DEFAULT", "STV_PROTECTED")
                    ),
                    source=source,
                )
            )
    return symbols


def _get_dynamic_tags(elf: ELFFile) -> tuple[tuple[str, int], ...]:
    for section in elf.iter_sections():
        if isinstance(section, DynamicSection):
            return tuple(
                (str(tag.entry.d_tag), tag.entry.d_val) for tag in section.iter_tags()
            )
    return ()


def _get_dwarf_metadata(elf: ELFFile) -> tuple[tuple[str, ...], frozenset[int], str | None]:
    """Collect DW_AT_producer strings and opted-out subprogram addresses.

    A DWARF failure is returned as text rather than raised: it only matters
    to rules that consume debug metadata.
    """
    if not elf.has_dwarf_info():
        return (), frozenset(), None

    producers: list[str] = []
    opt_out: set[int] = set()
    try:
        dwarf = elf.get_dwarf_info()
        for cu in dwarf.iter_CUs():
            top = cu.get_top_DIE()
            producer = _attr_text(top.attributes.get("DW_AT_producer"))
            if producer:
                producers.append(producer)
            if not producer_disables_spectre(producer):
                continue
            for die in cu.iter_DIEs():
                if die.tag == "DW_TAG_subprogram" and "DW_AT_low_pc" in die.attributes:
                    opt_out.add(die.attributes["DW_AT_low_pc"].value)
    except Exception as exc:
        log.warning("dwarf_parse_failed", error=str(exc))
        return tuple(producers), frozenset(opt_out), f"{type(exc).__name__}: {exc}"

    return tuple(producers), frozenset(opt_out), None


def _attr_text(attr) -> str:
    if attr is None:
        return ""
    value = attr.value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)
