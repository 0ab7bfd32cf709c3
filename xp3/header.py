from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import BinaryIO, Tuple

from .binio import read_exact
from .constants import HEADER_VERSIONED_SIZE, XP3_CURRENT_VER_MARKER, XP3_VERSION_IDENTIFIER
from .errors import InvalidHeaderError


_MARKER_STRUCT = struct.Struct("<Q")
# marker u64, minor_version u32, identifier u8, index_size_offset u64
_HEADER_STRUCT = struct.Struct("<QIBQ")


@dataclass(frozen=True)
class Header:
    """Archive header following the magic and version selector.

    Legacy archives carry no header bytes at all; versioned ones start with
    an 8-byte marker. ``index_size_offset`` is the number of bytes to skip
    after the header before the index offset pointer.
    """

    versioned: bool
    minor_version: int = 0
    index_size_offset: int = 0

    @classmethod
    def legacy(cls) -> "Header":
        return cls(versioned=False)

    @classmethod
    def current(cls, minor_version: int = 1, index_size_offset: int = 0) -> "Header":
        return cls(versioned=True, minor_version=minor_version, index_size_offset=index_size_offset)

    @property
    def size(self) -> int:
        return HEADER_VERSIONED_SIZE if self.versioned else 0


LEGACY_HEADER = Header.legacy()


def read_header(f: BinaryIO) -> Tuple[int, Header]:
    start = f.tell()
    raw = f.read(_MARKER_STRUCT.size)
    if len(raw) != _MARKER_STRUCT.size or _MARKER_STRUCT.unpack(raw)[0] != XP3_CURRENT_VER_MARKER:
        f.seek(start)
        return 0, LEGACY_HEADER
    rest = read_exact(f, _HEADER_STRUCT.size - _MARKER_STRUCT.size)
    _marker, minor_version, identifier, index_size_offset = _HEADER_STRUCT.unpack(raw + rest)
    if identifier != XP3_VERSION_IDENTIFIER:
        raise InvalidHeaderError(f"Bad version identifier {identifier}")
    return HEADER_VERSIONED_SIZE, Header.current(minor_version, index_size_offset)


def write_header(f: BinaryIO, header: Header) -> int:
    if not header.versioned:
        return 0
    f.write(
        _HEADER_STRUCT.pack(
            XP3_CURRENT_VER_MARKER,
            header.minor_version,
            XP3_VERSION_IDENTIFIER,
            header.index_size_offset,
        )
    )
    return HEADER_VERSIONED_SIZE
