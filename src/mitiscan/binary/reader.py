"""Bounds-checked access to a raw binary buffer."""

from __future__ import annotations

import struct

from mitiscan.errors import MalformedError, TruncatedError


class ByteView:
    """Read-only view over file bytes; every access is validated first.

    ``base`` shifts all offsets, so a fat Mach-O slice can be read with
    slice-relative offsets while still being checked against the slice end.
    """

    def __init__(self, data: bytes, base: int = 0, length: int | None = None) -> None:
        if length is None:
            length = len(data) - base
        if base < 0 or length < 0 or base + length > len(data):
            raise TruncatedError(
                f"view [{base:#x}, +{length:#x}) exceeds buffer of {len(data):#x} bytes",
                offset=base,
            )
        self._data = data
        self._base = base
        self._length = length

    def __len__(self) -> int:
        return self._length

    @property
    def base(self) -> int:
        return self._base

    def require(self, offset: int, length: int, what: str) -> None:
        """Validate that ``[offset, offset + length)`` lies inside the view."""
        if offset < 0 or length < 0:
            raise MalformedError(f"{what}: negative offset or size", offset=offset)
        if offset + length > self._length:
            raise TruncatedError(
                f"{what}: [{offset:#x}, +{length:#x}) extends past end of data "
                f"({self._length:#x} bytes)",
                offset=offset,
            )

    def slice(self, offset: int, length: int, what: str) -> bytes:
        self.require(offset, length, what)
        start = self._base + offset
        return self._data[start : start + length]

    def subview(self, offset: int, length: int, what: str) -> ByteView:
        self.require(offset, length, what)
        return ByteView(self._data, self._base + offset, length)

    def unpack(self, fmt: str, offset: int, what: str) -> tuple:
        size = struct.calcsize(fmt)
        return struct.unpack(fmt, self.slice(offset, size, what))

    def u8(self, offset: int, what: str) -> int:
        return self.unpack("B", offset, what)[0]

    def u16(self, offset: int, what: str, endian: str = "<") -> int:
        return self.unpack(endian + "H", offset, what)[0]

    def u32(self, offset: int, what: str, endian: str = "<") -> int:
        return self.unpack(endian + "I", offset, what)[0]

    def u64(self, offset: int, what: str, endian: str = "<") -> int:
        return self.unpack(endian + "Q", offset, what)[0]

    def table(self, offset: int, count: int, entry_size: int, what: str) -> None:
        """Validate a table of ``count`` fixed-size entries."""
        if count < 0 or entry_size < 0:
            raise MalformedError(f"{what}: negative table dimensions", offset=offset)
        self.require(offset, count * entry_size, what)

    def cstring(self, offset: int, what: str, limit: int | None = None) -> str:
        """Read a NUL-terminated string; a missing terminator is malformed."""
        end_limit = self._length if limit is None else min(self._length, offset + limit)
        self.require(offset, 0, what)
        start = self._base + offset
        stop = self._base + end_limit
        end = self._data.find(b"\x00", start, stop)
        if end == -1:
            raise MalformedError(f"{what}: unterminated string", offset=offset)
        return self._data[start:end].decode("utf-8", errors="replace")
