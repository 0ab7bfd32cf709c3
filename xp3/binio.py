from __future__ import annotations

import struct
from typing import BinaryIO

from .errors import XP3IOError


_U8 = struct.Struct("<B")
_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")


def read_exact(f: BinaryIO, n: int) -> bytes:
    if n == 0:
        return b""
    b = f.read(n)
    if len(b) != n:
        raise XP3IOError(f"Unexpected EOF: wanted {n} bytes, got {len(b)}")
    return b


def read_u8(f: BinaryIO) -> int:
    return _U8.unpack(read_exact(f, 1))[0]


def read_u16(f: BinaryIO) -> int:
    return _U16.unpack(read_exact(f, 2))[0]


def read_u32(f: BinaryIO) -> int:
    return _U32.unpack(read_exact(f, 4))[0]


def read_u64(f: BinaryIO) -> int:
    return _U64.unpack(read_exact(f, 8))[0]


def pack_u8(v: int) -> bytes:
    return _U8.pack(v)


def pack_u16(v: int) -> bytes:
    return _U16.pack(v)


def pack_u32(v: int) -> bytes:
    return _U32.pack(v)


def pack_u64(v: int) -> bytes:
    return _U64.pack(v)


def write_u64(f: BinaryIO, v: int) -> int:
    f.write(_U64.pack(v))
    return 8
