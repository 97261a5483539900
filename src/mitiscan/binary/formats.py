"""Container format detection by magic-number sniffing."""

from __future__ import annotations

import struct

from mitiscan.binary.artifact import BinaryFormat
from mitiscan.errors import TruncatedError, UnsupportedFormatError

ELF_MAGIC = b"\x7fELF"
MZ_MAGIC = b"MZ"
PE_SIGNATURE = b"PE\x00\x00"

# Mach-O magic values (32/64 bit, big/little-endian)
MACHO_MAGICS = (
    b"\xfe\xed\xfa\xce",
    b"\xfe\xed\xfa\xcf",
    b"\xce\xfa\xed\xfe",
    b"\xcf\xfa\xed\xfe",
)
# Fat/universal wrappers; FAT_MAGIC also starts every Java class file.
FAT_MAGICS = (
    b"\xca\xfe\xba\xbe",
    b"\xca\xfe\xba\xbf",
    b"\xbe\xba\xfe\xca",
    b"\xbf\xba\xfe\xca",
)
MAX_FAT_ARCHS = 30

_ALL_MAGICS = (ELF_MAGIC, MZ_MAGIC, *MACHO_MAGICS, *FAT_MAGICS)


def is_fat(data: bytes) -> bool:
    return data[:4] in FAT_MAGICS


def detect_format(data: bytes) -> BinaryFormat:
    """Identify the container format without trusting any other header field.

    Raises ``TruncatedError`` when the buffer ends inside the identifying
    bytes, ``UnsupportedFormatError`` when no known magic matches.
    """
    if not data:
        raise TruncatedError("empty file", offset=0)

    if len(data) < 4 and any(magic.startswith(data) for magic in _ALL_MAGICS):
        raise TruncatedError("file ends inside magic number", offset=0)

    if data[:4] == ELF_MAGIC:
        return BinaryFormat.ELF
    if data[:4] in MACHO_MAGICS:
        return BinaryFormat.MACHO
    if data[:4] in FAT_MAGICS:
        if len(data) < 8:
            raise TruncatedError("fat header truncated", offset=4)
        endian = ">" if data[:2] == b"\xca\xfe" else "<"
        (nfat_arch,) = struct.unpack(endian + "I", data[4:8])
        if nfat_arch > MAX_FAT_ARCHS:
            raise UnsupportedFormatError(
                f"fat magic with {nfat_arch} architectures (likely a Java class file)"
            )
        return BinaryFormat.MACHO
    if data[:2] == MZ_MAGIC:
        return _check_pe_signature(data)
    raise UnsupportedFormatError(f"unrecognized magic {data[:4].hex()}")


def _check_pe_signature(data: bytes) -> BinaryFormat:
    if len(data) < 0x40:
        raise TruncatedError("DOS header truncated", offset=len(data))
    (e_lfanew,) = struct.unpack_from("<I", data, 0x3C)
    if e_lfanew + 4 > len(data):
        raise TruncatedError(
            f"e_lfanew {e_lfanew:#x} points past end of data", offset=e_lfanew
        )
    if data[e_lfanew : e_lfanew + 4] != PE_SIGNATURE:
        raise UnsupportedFormatError("MZ image without a PE signature (DOS executable)")
    return BinaryFormat.PE
