"""PE/COFF loader using pefile over a pre-validated buffer."""

from __future__ import annotations

import struct
from collections.abc import Sequence

import pefile

from mitiscan.binary.annotations import annotate_symbols
from mitiscan.binary.artifact import (
    BinaryArtifact,
    BinaryFormat,
    LoadConfigInfo,
    PEInfo,
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

PE32_MAGIC = 0x10B
PE32_PLUS_MAGIC = 0x20B

IMAGE_SCN_MEM_SHARED = 0x10000000
IMAGE_SCN_MEM_EXECUTE = 0x20000000
IMAGE_SCN_MEM_READ = 0x40000000
IMAGE_SCN_MEM_WRITE = 0x80000000

IMAGE_DIRECTORY_ENTRY_LOAD_CONFIG = 10
IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR = 14

IMAGE_SYM_CLASS_EXTERNAL = 2
IMAGE_SYM_CLASS_STATIC = 3
IMAGE_SYM_CLASS_LABEL = 6
IMAGE_SYM_CLASS_FILE = 103
IMAGE_SYM_CLASS_WEAK_EXTERNAL = 105
IMAGE_SYM_DTYPE_FUNCTION = 2

_COFF_SYMBOL_SIZE = 18

_MACHINES = {
    0x014C: "x86",
    0x8664: "x86_64",
    0xAA64: "arm64",
    0xA641: "arm64",
    0x01C0: "arm",
    0x01C4: "arm",
    0x0200: "ia64",
}

# (offset, width) of load config fields for PE32 / PE32+
_LOAD_CONFIG_FIELDS = {
    32: {
        "security_cookie_va": (60, 4),
        "guard_cf_check_function_pointer": (72, 4),
        "guard_cf_function_table": (80, 4),
        "guard_flags": (88, 4),
    },
    64: {
        "security_cookie_va": (88, 8),
        "guard_cf_check_function_pointer": (112, 8),
        "guard_cf_function_table": (128, 8),
        "guard_flags": (144, 4),
    },
}


def load_pe(
    data: bytes,
    name: str,
    sha256: str,
    opt_out_patterns: Sequence[str] = (),
) -> BinaryArtifact:
    """Parse a PE image into a BinaryArtifact."""
    view = ByteView(data)
    coff_table = _prevalidate(view)

    try:
        pe = pefile.PE(data=data, fast_load=True)
    except pefile.PEFormatError as exc:
        raise MalformedError(f"PE parse failed: {exc}") from exc

    try:
        pe.parse_data_directories(
            directories=[
                pefile.DIRECTORY_ENTRY["IMAGE_DIRECTORY_ENTRY_EXPORT"],
                pefile.DIRECTORY_ENTRY["IMAGE_DIRECTORY_ENTRY_IMPORT"],
                pefile.DIRECTORY_ENTRY["IMAGE_DIRECTORY_ENTRY_BASERELOC"],
            ]
        )
        word_size = 64 if pe.OPTIONAL_HEADER.Magic == PE32_PLUS_MAGIC else 32
        image_base = pe.OPTIONAL_HEADER.ImageBase
        sections = _get_sections(pe, data, image_base)
        load_config = _get_load_config(pe, sections, image_base, word_size)
        clr_flags = _get_clr_flags(pe, sections, image_base)

        symbols: list[RawSymbol] = []
        symbols.extend(_get_exports(pe, sections, image_base))
        symbols.extend(_get_imports(pe))
        if coff_table is not None:
            symbols.extend(_get_coff_symbols(view, coff_table, sections))
        cookie = _synthesize_cookie_symbol(load_config, sections, word_size)
        if cookie is not None:
            symbols.append(cookie)

        entry_rva = pe.OPTIONAL_HEADER.AddressOfEntryPoint
        machine = pe.FILE_HEADER.Machine
        info = PEInfo(
            machine=machine,
            characteristics=pe.FILE_HEADER.Characteristics,
            dll_characteristics=pe.OPTIONAL_HEADER.DllCharacteristics,
            subsystem=pe.OPTIONAL_HEADER.Subsystem,
            linker_version=(
                pe.OPTIONAL_HEADER.MajorLinkerVersion,
                pe.OPTIONAL_HEADER.MinorLinkerVersion,
            ),
            image_base=image_base,
            load_config=load_config,
            clr_flags=clr_flags,
        )
        artifact = BinaryArtifact(
            name=name,
            sha256=sha256,
            format=BinaryFormat.PE,
            architecture=_MACHINES.get(machine, f"{machine:#x}"),
            word_size=word_size,
            endianness="little",
            file_type="dll" if info.is_dll else "executable",
            entry_point=image_base + entry_rva if entry_rva else 0,
            sections=sections,
            symbols=annotate_symbols(symbols, opt_out_patterns=opt_out_patterns),
            pe=info,
        )
    except LoadError:
        raise
    except Exception as exc:
        log.debug("pe_parse_failed", name=name, error=str(exc))
        raise MalformedError(f"PE parse failed: {type(exc).__name__}: {exc}") from exc
    finally:
        pe.close()

    return artifact


def _prevalidate(view: ByteView) -> tuple[int, int] | None:
    """Validate header, section and COFF symbol table ranges.

    Returns ``(offset, count)`` of the COFF symbol table, or None.
    """
    e_lfanew = view.u32(0x3C, "e_lfanew")
    (
        _machine, nsections, _timestamp, symtab_ptr, nsyms, opt_size, _chars,
    ) = view.unpack("<HHIIIHH", e_lfanew + 4, "COFF file header")

    opt_off = e_lfanew + 24
    view.require(opt_off, opt_size, "optional header")
    if opt_size < 2:
        raise MalformedError("optional header missing", offset=opt_off)
    magic = view.u16(opt_off, "optional header magic")
    if magic not in (PE32_MAGIC, PE32_PLUS_MAGIC):
        raise MalformedError(f"unknown optional header magic {magic:#x}", offset=opt_off)
    minimum = 96 if magic == PE32_MAGIC else 112
    if opt_size < minimum:
        raise MalformedError(f"optional header too small ({opt_size} bytes)", offset=opt_off)
    size_of_headers = view.u32(opt_off + 60, "SizeOfHeaders")
    view.require(0, size_of_headers, "image headers")

    sec_off = opt_off + opt_size
    view.table(sec_off, nsections, 40, "section table")
    spans: list[tuple[int, int, str]] = []
    for i in range(nsections):
        raw_name, vsize, vaddr, raw_size, raw_ptr = view.unpack(
            "<8sIIII", sec_off + i * 40, "section header"
        )
        sec_name = raw_name.rstrip(b"\x00").decode("latin-1")
        if raw_size:
            view.require(raw_ptr, raw_size, f"section {sec_name} raw data")
        span = vsize or raw_size
        if span:
            spans.append((vaddr, span, sec_name))

    spans.sort()
    for (va_a, size_a, name_a), (va_b, _size_b, name_b) in zip(spans, spans[1:]):
        if va_b < va_a + size_a:
            raise MalformedError(f"sections {name_a} and {name_b} overlap in memory")

    if not symtab_ptr or not nsyms:
        return None
    view.table(symtab_ptr, nsyms, _COFF_SYMBOL_SIZE, "COFF symbol table")
    strtab_off = symtab_ptr + nsyms * _COFF_SYMBOL_SIZE
    strtab_size = view.u32(strtab_off, "COFF string table size")
    if strtab_size < 4:
        raise MalformedError("COFF string table size smaller than its own header")
    view.require(strtab_off, strtab_size, "COFF string table")
    return symtab_ptr, nsyms


def _get_sections(pe: pefile.PE, data: bytes, image_base: int) -> tuple[Section, ...]:
    relocs: dict[int, list[Relocation]] = {}
    bounds = [
        (s.VirtualAddress, s.VirtualAddress + max(s.Misc_VirtualSize, s.SizeOfRawData), i)
        for i, s in enumerate(pe.sections)
    ]
    for block in getattr(pe, "DIRECTORY_ENTRY_BASERELOC", []):
        for entry in block.entries:
            if entry.type == 0:  # IMAGE_REL_BASED_ABSOLUTE padding
                continue
            for start, end, idx in bounds:
                if start <= entry.rva < end:
                    relocs.setdefault(idx, []).append(
                        Relocation(
                            offset=image_base + entry.rva,
                            type=str(pefile.RELOCATION_TYPE.get(entry.type, entry.type)),
                        )
                    )
                    break

    sections = []
    for i, s in enumerate(pe.sections):
        chars = s.Characteristics
        raw_size = s.SizeOfRawData
        raw = data[s.PointerToRawData : s.PointerToRawData + raw_size] if raw_size else b""
        sections.append(
            Section(
                name=s.Name.rstrip(b"\x00").decode("latin-1"),
                address=image_base + s.VirtualAddress,
                size=s.Misc_VirtualSize or raw_size,
                offset=s.PointerToRawData,
                raw_size=raw_size,
                readable=bool(chars & IMAGE_SCN_MEM_READ),
                writable=bool(chars & IMAGE_SCN_MEM_WRITE),
                executable=bool(chars & IMAGE_SCN_MEM_EXECUTE),
                shared=bool(chars & IMAGE_SCN_MEM_SHARED),
                data=raw,
                relocations=tuple(relocs.get(i, ())),
            )
        )
    return tuple(sections)


def _read_va(sections: tuple[Section, ...], va: int, length: int) -> bytes | None:
    for section in sections:
        if section.contains(va):
            return section.read(va, length)
    return None


def _get_load_config(
    pe: pefile.PE, sections: tuple[Section, ...], image_base: int, word_size: int
) -> LoadConfigInfo | None:
    directories = pe.OPTIONAL_HEADER.DATA_DIRECTORY
    if len(directories) <= IMAGE_DIRECTORY_ENTRY_LOAD_CONFIG:
        return None
    directory = directories[IMAGE_DIRECTORY_ENTRY_LOAD_CONFIG]
    if not directory.VirtualAddress:
        return None

    va = image_base + directory.VirtualAddress
    header = _read_va(sections, va, 4)
    if header is None:
        raise MalformedError(f"load config directory at {va:#x} is outside every section")
    (size,) = struct.unpack("<I", header)
    blob = _read_va(sections, va, size)
    if blob is None:
        raise MalformedError(f"load config directory ({size} bytes) crosses a section end")

    values: dict[str, int] = {}
    for field_name, (offset, width) in _LOAD_CONFIG_FIELDS[word_size].items():
        if offset + width <= size:
            fmt = "<Q" if width == 8 else "<I"
            values[field_name] = struct.unpack_from(fmt, blob, offset)[0]
    return LoadConfigInfo(size=size, **values)


def _get_clr_flags(pe: pefile.PE, sections: tuple[Section, ...], image_base: int) -> int | None:
    directories = pe.OPTIONAL_HEADER.DATA_DIRECTORY
    if len(directories) <= IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR:
        return None
    directory = directories[IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR]
    if not directory.VirtualAddress:
        return None
    cor20 = _read_va(sections, image_base + directory.VirtualAddress, 20)
    if cor20 is None:
        raise MalformedError("COR20 header is outside every section")
    return struct.unpack_from("<I", cor20, 16)[0]


def _get_exports(pe: pefile.PE, sections: tuple[Section, ...], image_base: int) -> list[RawSymbol]:
    export_dir = getattr(pe, "DIRECTORY_ENTRY_EXPORT", None)
    if export_dir is None:
        return []
    symbols = []
    for exp in export_dir.symbols:
        if exp.forwarder:
            continue
        address = image_base + exp.address
        section = next((s for s in sections if s.contains(address)), None)
        name = exp.name.decode("utf-8", errors="replace") if exp.name else f"#{exp.ordinal}"
        symbols.append(
            RawSymbol(
                name=name,
                address=address,
                binding=SymbolBinding.GLOBAL,
                kind=(
                    SymbolKind.FUNCTION
                    if section is not None and section.executable
                    else SymbolKind.OBJECT
                ),
                section=section.name if section is not None else None,
                exported=True,
                source="export",
            )
        )
    return symbols


def _get_imports(pe: pefile.PE) -> list[RawSymbol]:
    symbols = []
    for entry in getattr(pe, "DIRECTORY_ENTRY_IMPORT", []):
        library = entry.dll.decode("utf-8", errors="replace") if entry.dll else ""
        for imp in entry.imports:
            if imp.name:
                name = imp.name.decode("utf-8", errors="replace")
            else:
                name = f"{library}#{imp.ordinal}"
            symbols.append(
                RawSymbol(
                    name=name,
                    address=imp.address or 0,
                    binding=SymbolBinding.GLOBAL,
                    defined=False,
                    imported=True,
                    library=library,
                    source="import",
                )
            )
    return symbols


def _get_coff_symbols(
    view: ByteView, table: tuple[int, int], sections: tuple[Section, ...]
) -> list[RawSymbol]:
    """Read the COFF symbol table (present in MinGW/clang images and objects)."""
    offset, count = table
    strtab_off = offset + count * _COFF_SYMBOL_SIZE
    strtab_size = view.u32(strtab_off, "COFF string table size")

    symbols: list[RawSymbol] = []
    index = 0
    while index < count:
        name8, value, secnum, sym_type, sclass, naux = view.unpack(
            "<8sIhHBB", offset + index * _COFF_SYMBOL_SIZE, "COFF symbol"
        )
        index += 1 + naux
        if sclass == IMAGE_SYM_CLASS_FILE or secnum == -2:
            continue

        if name8[:4] == b"\x00\x00\x00\x00":
            (str_offset,) = struct.unpack("<I", name8[4:])
            if not 4 <= str_offset < strtab_size:
                raise MalformedError(f"COFF symbol name offset {str_offset:#x} out of range")
            name = view.cstring(
                strtab_off + str_offset, "COFF symbol name", limit=strtab_size - str_offset
            )
        else:
            name = name8.rstrip(b"\x00").decode("utf-8", errors="replace")
        if not name:
            continue

        if sclass == IMAGE_SYM_CLASS_WEAK_EXTERNAL:
            binding = SymbolBinding.WEAK
        elif sclass == IMAGE_SYM_CLASS_EXTERNAL:
            binding = SymbolBinding.GLOBAL
        else:
            binding = SymbolBinding.LOCAL

        section = None
        address = value
        if secnum > 0:
            if secnum > len(sections):
                raise MalformedError(f"COFF symbol {name!r} references section {secnum}")
            section = sections[secnum - 1]
            address = section.address + value

        if (sym_type >> 4) == IMAGE_SYM_DTYPE_FUNCTION:
            kind = SymbolKind.FUNCTION
        elif sclass == IMAGE_SYM_CLASS_STATIC and naux and value == 0:
            kind = SymbolKind.SECTION
        elif section is not None and not section.executable:
            kind = SymbolKind.OBJECT
        else:
            kind = SymbolKind.OTHER

        defined = secnum != 0 or (sclass == IMAGE_SYM_CLASS_EXTERNAL and value != 0)
        symbols.append(
            RawSymbol(
                name=name,
                address=address if secnum != 0 else 0,
                size=0,
                binding=binding,
                kind=kind,
                section=section.name if section is not None else None,
                defined=defined,
                imported=not defined,
                source="coff",
            )
        )
    return symbols


def _synthesize_cookie_symbol(
    load_config: LoadConfigInfo | None, sections: tuple[Section, ...], word_size: int
) -> RawSymbol | None:
    """Expose the load-config security cookie as a ``__security_cookie`` definition.

    MSVC images keep their symbols in a PDB; the load config still records
    where the cookie lives, which is all the cookie checks need.
    """
    if load_config is None or not load_config.security_cookie_va:
        return None
    va = load_config.security_cookie_va
    section = next((s for s in sections if s.contains(va)), None)
    if section is None:
        return None
    return RawSymbol(
        name="__security_cookie",
        address=va,
        size=word_size // 8,
        binding=SymbolBinding.GLOBAL,
        kind=SymbolKind.OBJECT,
        section=section.name,
        source="load_config",
    )
