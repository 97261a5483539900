"""Mach-O loader (thin and fat/universal) using macholib."""

from __future__ import annotations

import io
from collections import Counter
from collections.abc import Sequence
from dataclasses import replace

from macholib.mach_o import (
    LC_MAIN,
    LC_SEGMENT,
    LC_SEGMENT_64,
    LC_SYMTAB,
    MH_CIGAM,
    MH_CIGAM_64,
    MH_MAGIC,
    MH_MAGIC_64,
)
from macholib.MachO import MachO

from mitiscan.binary.annotations import annotate_symbols
from mitiscan.binary.artifact import (
    BinaryArtifact,
    BinaryFormat,
    MachOInfo,
    RawSymbol,
    Section,
    SymbolBinding,
    SymbolKind,
)
from mitiscan.binary.formats import FAT_MAGICS, MACHO_MAGICS
from mitiscan.binary.reader import ByteView
from mitiscan.errors import LoadError, MalformedError
from mitiscan.utils.logging import get_logger

log = get_logger(__name__)

MH_OBJECT = 0x1
MH_PIE = 0x200000
MH_ALLOW_STACK_EXECUTION = 0x20000

VM_PROT_READ = 0x1
VM_PROT_WRITE = 0x2
VM_PROT_EXECUTE = 0x4

SECTION_TYPE = 0xFF
S_ATTR_INSTRUCTIONS = 0x80000400
_ZEROFILL_TYPES = (0x1, 0xC, 0x12)

N_STAB = 0xE0
N_TYPE = 0x0E
N_EXT = 0x01
N_UNDF = 0x0
N_SECT = 0xE
N_WEAK_REF = 0x40
N_WEAK_DEF = 0x80

_CPU_TYPES = {
    7: "x86",
    0x01000007: "x86_64",
    12: "arm",
    0x0100000C: "arm64",
    0x0200000C: "arm64_32",
    18: "ppc",
    0x01000012: "ppc64",
}

_FILE_TYPES = {
    0x1: "object",
    0x2: "executable",
    0x6: "dylib",
    0x7: "dylinker",
    0x8: "bundle",
    0xB: "kext",
}


class _BufferMachO(MachO):
    """macholib MachO parsed from an in-memory buffer instead of a path."""

    def __init__(self, data: bytes, name: str) -> None:
        # mirrors MachO.__init__ of macholib 1.16, minus the open()
        self.graphident = name
        self.filename = name
        self.loader_path = ""
        self.fat = None
        self.headers = []
        self.allow_unknown_load_commands = True
        self.load(io.BytesIO(data))


def load_macho(
    data: bytes,
    name: str,
    sha256: str,
    opt_out_patterns: Sequence[str] = (),
) -> tuple[BinaryArtifact, ...]:
    """Parse a thin or fat Mach-O file; fat files yield one artifact per slice."""
    view = ByteView(data)
    if data[:4] not in FAT_MAGICS:
        return (_load_slice(view, name, sha256, opt_out_patterns, None),)

    slices = _fat_slices(view)
    artifacts = []
    for index, (offset, size) in enumerate(slices):
        slice_view = view.subview(offset, size, f"fat slice {index}")
        artifacts.append(_load_slice(slice_view, name, sha256, opt_out_patterns, index))
    # arm64 and arm64e share a cputype; repeated architectures are told apart by slice index
    repeats = Counter(a.architecture for a in artifacts)
    artifacts = [
        replace(a, slice_label=f"{a.architecture}#{a.slice_index}")
        if repeats[a.architecture] > 1
        else a
        for a in artifacts
    ]
    log.debug("fat_macho_loaded", name=name, slices=len(artifacts))
    return tuple(artifacts)


def _fat_slices(view: ByteView) -> list[tuple[int, int]]:
    magic = view.slice(0, 4, "fat magic")
    endian = ">" if magic[:2] == b"\xca\xfe" else "<"
    is_64 = magic in (b"\xca\xfe\xba\xbf", b"\xbf\xba\xfe\xca")
    nfat = view.u32(4, "fat header", endian)
    if nfat == 0:
        raise MalformedError("fat binary contains no architectures")

    entry_size = 32 if is_64 else 20
    view.table(8, nfat, entry_size, "fat arch table")
    header_end = 8 + nfat * entry_size
    slices = []
    for i in range(nfat):
        fmt = endian + ("iiQQII" if is_64 else "iiIII")
        _cputype, _subtype, offset, size = view.unpack(fmt, 8 + i * entry_size, "fat arch")[:4]
        if offset < header_end:
            raise MalformedError(
                f"fat slice {i} at {offset:#x} overlaps the fat header", offset=8 + i * entry_size
            )
        view.require(offset, size, f"fat slice {i}")
        slices.append((offset, size))
    return slices


def _load_slice(
    view: ByteView,
    name: str,
    sha256: str,
    opt_out_patterns: Sequence[str],
    slice_index: int | None,
) -> BinaryArtifact:
    symtab = _prevalidate(view)
    raw = view.slice(0, len(view), "Mach-O image")

    try:
        macho = _BufferMachO(raw, name)
        header = macho.headers[0]
        hdr = header.header
        is_64 = header.MH_MAGIC in (MH_MAGIC_64, MH_CIGAM_64)
        endian = header.endian
        dylibs = tuple(filename for _idx, _kind, filename in header.walkRelocatables())

        sections: list[Section] = []
        text_vmaddr = 0
        entry_offset = None
        for lc, cmd, payload in header.commands:
            if lc.cmd in (LC_SEGMENT, LC_SEGMENT_64):
                segname = _cstr(cmd.segname)
                if segname == "__TEXT":
                    text_vmaddr = cmd.vmaddr
                sections.extend(_segment_sections(cmd, payload, raw, hdr.filetype))
            elif lc.cmd == LC_MAIN:
                entry_offset = cmd.entryoff

        symbols: list[RawSymbol] = []
        if symtab is not None:
            symbols = _get_symbols(view, symtab, tuple(sections), dylibs, is_64, endian)

        cputype = hdr.cputype
        arch = _CPU_TYPES.get(cputype, f"cpu{cputype:#x}")
        artifact = BinaryArtifact(
            name=name,
            sha256=sha256,
            format=BinaryFormat.MACHO,
            architecture=arch,
            word_size=64 if is_64 else 32,
            endianness="big" if endian == ">" else "little",
            file_type=_FILE_TYPES.get(hdr.filetype, f"type{hdr.filetype:#x}"),
            entry_point=text_vmaddr + entry_offset if entry_offset is not None else 0,
            sections=tuple(sections),
            symbols=annotate_symbols(symbols, opt_out_patterns=opt_out_patterns),
            macho=MachOInfo(
                cputype=cputype,
                filetype=hdr.filetype,
                flags=hdr.flags,
                is_fat_slice=slice_index is not None,
                dylibs=dylibs,
            ),
            slice_index=slice_index,
        )
    except LoadError:
        raise
    except Exception as exc:
        log.debug("macho_parse_failed", name=name, error=str(exc))
        raise MalformedError(f"Mach-O parse failed: {type(exc).__name__}: {exc}") from exc
    return artifact


def _prevalidate(view: ByteView) -> tuple[int, int, int, int] | None:
    """Check header, load commands, segment/section data and symtab ranges.

    Returns ``(symoff, nsyms, stroff, strsize)`` when LC_SYMTAB is present.
    """
    magic = view.slice(0, 4, "Mach-O magic")
    if magic not in MACHO_MAGICS:
        raise MalformedError(f"slice has bad Mach-O magic {magic.hex()}", offset=view.base)
    (magic_value,) = view.unpack(">I", 0, "Mach-O magic")
    endian = ">" if magic_value in (MH_MAGIC, MH_MAGIC_64) else "<"
    is_64 = magic_value in (MH_MAGIC_64, MH_CIGAM_64)

    header_size = 32 if is_64 else 28
    _magic, _cpu, _sub, filetype, ncmds, sizeofcmds, _flags = view.unpack(
        endian + "IiiIIII", 0, "Mach-O header"
    )
    view.require(header_size, sizeofcmds, "load commands")

    seg_cmd_size, sect_size = (72, 80) if is_64 else (56, 68)
    cmds_end = header_size + sizeofcmds
    offset = header_size
    symtab = None
    for i in range(ncmds):
        if offset + 8 > cmds_end:
            raise MalformedError(f"load command {i} starts past sizeofcmds", offset=offset)
        cmd, cmdsize = view.unpack(endian + "II", offset, "load command")
        if cmdsize < 8 or offset + cmdsize > cmds_end:
            raise MalformedError(f"load command {i} has bad size {cmdsize}", offset=offset)

        if cmd in (LC_SEGMENT, LC_SEGMENT_64):
            if (cmd == LC_SEGMENT_64) != is_64:
                raise MalformedError("segment command width does not match header", offset=offset)
            fmt = endian + ("16sQQQQiiII" if is_64 else "16sIIIIiiII")
            _segname, _vmaddr, _vmsize, fileoff, filesize, _maxprot, _initprot, nsects, _ = (
                view.unpack(fmt, offset + 8, "segment command")
            )
            if cmdsize != seg_cmd_size + nsects * sect_size:
                raise MalformedError(
                    f"segment command size {cmdsize} does not match {nsects} sections",
                    offset=offset,
                )
            if filesize:
                view.require(fileoff, filesize, "segment data")
            sect_fmt = endian + ("16s16sQQIIIIIIII" if is_64 else "16s16sIIIIIIIIII")
            for j in range(nsects):
                fields = view.unpack(sect_fmt, offset + seg_cmd_size + j * sect_size, "section")
                size, sect_offset, flags = fields[3], fields[4], fields[8]
                if size and (flags & SECTION_TYPE) not in _ZEROFILL_TYPES:
                    view.require(sect_offset, size, f"section {_cstr(fields[0])} data")
        elif cmd == LC_SYMTAB:
            symoff, nsyms, stroff, strsize = view.unpack(
                endian + "IIII", offset + 8, "symtab command"
            )
            view.table(symoff, nsyms, 16 if is_64 else 12, "symbol table")
            view.require(stroff, strsize, "string table")
            symtab = (symoff, nsyms, stroff, strsize)
        offset += cmdsize

    if filetype == 0:
        raise MalformedError("Mach-O header has file type 0")
    return symtab


def _cstr(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("utf-8", errors="replace")


def _segment_sections(cmd, payload, raw: bytes, filetype: int) -> list[Section]:
    sections = []
    prot = cmd.initprot
    for sect in payload:
        zerofill = (sect.flags & SECTION_TYPE) in _ZEROFILL_TYPES
        data = b"" if zerofill else raw[sect.offset : sect.offset + sect.size]
        executable = bool(prot & VM_PROT_EXECUTE)
        if filetype == MH_OBJECT:
            executable = bool(sect.flags & S_ATTR_INSTRUCTIONS)
        sections.append(
            Section(
                name=f"{_cstr(sect.segname)},{_cstr(sect.sectname)}",
                address=sect.addr,
                size=sect.size,
                offset=0 if zerofill else sect.offset,
                raw_size=len(data),
                readable=bool(prot & VM_PROT_READ),
                writable=bool(prot & VM_PROT_WRITE),
                executable=executable,
                data=data,
            )
        )
    return sections


def _get_symbols(
    view: ByteView,
    symtab: tuple[int, int, int, int],
    sections: tuple[Section, ...],
    dylibs: tuple[str, ...],
    is_64: bool,
    endian: str,
) -> list[RawSymbol]:
    symoff, nsyms, stroff, strsize = symtab
    entry_size = 16 if is_64 else 12
    fmt = endian + ("IBBHQ" if is_64 else "IBBHI")

    symbols = []
    for i in range(nsyms):
        n_strx, n_type, n_sect, n_desc, n_value = view.unpack(
            fmt, symoff + i * entry_size, "nlist entry"
        )
        if n_type & N_STAB:
            continue
        if n_strx >= strsize:
            raise MalformedError(f"symbol {i} name offset {n_strx:#x} past string table")
        name = view.cstring(stroff + n_strx, "symbol name", limit=strsize - n_strx)
        if not name:
            continue

        sym_type = n_type & N_TYPE
        external = bool(n_type & N_EXT)
        section = None
        if sym_type == N_SECT:
            if not 1 <= n_sect <= len(sections):
                raise MalformedError(f"symbol {name!r} references section {n_sect}")
            section = sections[n_sect - 1]

        defined = sym_type != N_UNDF or n_value != 0
        if n_desc & (N_WEAK_DEF | N_WEAK_REF):
            binding = SymbolBinding.WEAK
        elif external:
            binding = SymbolBinding.GLOBAL
        else:
            binding = SymbolBinding.LOCAL

        library = ""
        if not defined:
            ordinal = (n_desc >> 8) & 0xFF
            if 1 <= ordinal <= len(dylibs):
                library = dylibs[ordinal - 1]

        if section is not None:
            kind = SymbolKind.FUNCTION if section.executable else SymbolKind.OBJECT
        else:
            kind = SymbolKind.OTHER

        symbols.append(
            RawSymbol(
                name=name,
                address=n_value if defined else 0,
                binding=binding,
                kind=kind,
                section=section.name if section is not None else None,
                defined=defined,
                imported=not defined and external,
                exported=defined and external,
                library=library,
                source="nlist",
            )
        )
    return symbols
