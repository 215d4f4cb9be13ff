"""
Wire primitives — bounded byte reader/writer with Bitcoin CompactSize varints.

CompactSize:
    < 0xFD            1 byte
    0xFD + uint16 LE  3 bytes
    0xFE + uint32 LE  5 bytes
    0xFF + uint64 LE  9 bytes

The reader rejects non-canonical varints (a value that fits a shorter
form) so that every package has exactly one encoding.
"""

from __future__ import annotations

import io
import struct

from beef.errors import DecodeError

_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")


def encode_varint(n: int) -> bytes:
    """Encode a non-negative integer as a CompactSize varint."""
    if n < 0:
        raise ValueError(f"varint must be non-negative, got {n}")
    if n < 0xFD:
        return bytes((n,))
    if n <= 0xFFFF:
        return b"\xfd" + _U16.pack(n)
    if n <= 0xFFFFFFFF:
        return b"\xfe" + _U32.pack(n)
    if n <= 0xFFFFFFFFFFFFFFFF:
        return b"\xff" + _U64.pack(n)
    raise ValueError(f"varint out of range: {n}")


class ByteWriter:
    """Append-only buffer used by the encoders."""

    def __init__(self) -> None:
        self._buf = io.BytesIO()

    def write(self, data: bytes) -> None:
        self._buf.write(data)

    def write_u8(self, n: int) -> None:
        self._buf.write(bytes((n,)))

    def write_u32(self, n: int) -> None:
        self._buf.write(_U32.pack(n))

    def write_u64(self, n: int) -> None:
        self._buf.write(_U64.pack(n))

    def write_varint(self, n: int) -> None:
        self._buf.write(encode_varint(n))

    def write_var_bytes(self, data: bytes) -> None:
        self.write_varint(len(data))
        self._buf.write(data)

    def getvalue(self) -> bytes:
        return self._buf.getvalue()


class ByteReader:
    """Cursor over an immutable byte string.

    Every read is bounds-checked; running past the end raises the
    configured error class (DecodeError by default) instead of
    returning short data.
    """

    def __init__(self, data: bytes, error: type[Exception] = DecodeError) -> None:
        self._data = memoryview(data)
        self._pos = 0
        self._error = error

    @property
    def position(self) -> int:
        return self._pos

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos

    def at_end(self) -> bool:
        return self._pos >= len(self._data)

    def read(self, n: int) -> bytes:
        if n < 0 or n > self.remaining:
            raise self._error(
                f"Truncated input: need {n} bytes at offset {self._pos}, "
                f"have {self.remaining}"
            )
        chunk = bytes(self._data[self._pos:self._pos + n])
        self._pos += n
        return chunk

    def read_u8(self) -> int:
        return self.read(1)[0]

    def read_u32(self) -> int:
        return _U32.unpack(self.read(4))[0]

    def read_u64(self) -> int:
        return _U64.unpack(self.read(8))[0]

    def read_varint(self) -> int:
        prefix = self.read_u8()
        if prefix < 0xFD:
            return prefix
        if prefix == 0xFD:
            value, floor = _U16.unpack(self.read(2))[0], 0xFD
        elif prefix == 0xFE:
            value, floor = _U32.unpack(self.read(4))[0], 0x10000
        else:
            value, floor = _U64.unpack(self.read(8))[0], 0x100000000
        if value < floor:
            raise self._error(f"Non-canonical varint at offset {self._pos}")
        return value

    def read_count(self, limit: int, what: str, min_item_size: int = 1) -> int:
        """Read a varint count and check it before anything is allocated.

        The count must not exceed ``limit`` and ``count * min_item_size``
        must fit in the bytes that remain.
        """
        count = self.read_varint()
        if count > limit:
            raise self._error(f"{what} count {count} exceeds limit {limit}")
        if count * min_item_size > self.remaining:
            raise self._error(
                f"{what} count {count} cannot fit in remaining {self.remaining} bytes"
            )
        return count

    def read_var_bytes(self, limit: int, what: str = "field") -> bytes:
        length = self.read_varint()
        if length > limit:
            raise self._error(f"{what} length {length} exceeds limit {limit}")
        return self.read(length)
