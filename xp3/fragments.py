from __future__ import annotations

import io
import struct
from dataclasses import dataclass, field
from typing import List, Union

from .binio import read_exact
from .constants import (
    INFO_NOT_PROTECTED,
    INFO_PROTECTED,
    MAX_NAME_BYTES,
    SEGMENT_COMPRESSED,
    SEGMENT_RECORD_SIZE,
    SEGMENT_UNCOMPRESSED,
    TAG_ADLR,
    TAG_INFO,
    TAG_SEGM,
    TAG_TIME,
)
from .errors import InvalidFileIndexError, NameTooLongError
from .tlv import IndexRecord


# flag u32, file_size u64, stored_size u64, name_units u16
_INFO_STRUCT = struct.Struct("<IQQH")
# flag u32, data_offset u64, original_size u64, stored_size u64
_SEGMENT_STRUCT = struct.Struct("<IQQQ")
_TIME_STRUCT = struct.Struct("<Q")
_ADLER_STRUCT = struct.Struct("<I")


def encode_name(name: str) -> bytes:
    """UTF-16LE encode a file name, refusing names the u16 length prefix cannot carry."""
    encoded = name.encode("utf-16-le", errors="replace")
    if len(encoded) > MAX_NAME_BYTES:
        raise NameTooLongError(
            f"File name is {len(encoded)} bytes in UTF-16LE; limit is {MAX_NAME_BYTES}"
        )
    return encoded


@dataclass
class InfoFragment:
    protected: bool
    original_size: int
    stored_size: int
    name: str

    @classmethod
    def decode(cls, payload: bytes) -> "InfoFragment":
        f = io.BytesIO(payload)
        flag, file_size, stored_size, name_units = _INFO_STRUCT.unpack(read_exact(f, _INFO_STRUCT.size))
        if flag == INFO_NOT_PROTECTED:
            protected = False
        elif flag == INFO_PROTECTED:
            protected = True
        else:
            raise InvalidFileIndexError(f"Unknown info flag 0x{flag:08x}")
        raw_name = read_exact(f, name_units * 2)
        return cls(protected, file_size, stored_size, raw_name.decode("utf-16-le", errors="replace"))

    def encode(self) -> bytes:
        encoded = encode_name(self.name)
        flag = INFO_PROTECTED if self.protected else INFO_NOT_PROTECTED
        return _INFO_STRUCT.pack(flag, self.original_size, self.stored_size, len(encoded) // 2) + encoded


@dataclass
class SegmentFragment:
    compressed: bool
    data_offset: int
    original_size: int
    stored_size: int

    @classmethod
    def decode(cls, raw: bytes) -> "SegmentFragment":
        flag, data_offset, original_size, stored_size = _SEGMENT_STRUCT.unpack(raw)
        if flag not in (SEGMENT_UNCOMPRESSED, SEGMENT_COMPRESSED):
            raise InvalidFileIndexError(f"Unknown segment flag {flag}")
        return cls(flag == SEGMENT_COMPRESSED, data_offset, original_size, stored_size)

    def encode(self) -> bytes:
        flag = SEGMENT_COMPRESSED if self.compressed else SEGMENT_UNCOMPRESSED
        return _SEGMENT_STRUCT.pack(flag, self.data_offset, self.original_size, self.stored_size)


@dataclass
class SegmentListFragment:
    segments: List[SegmentFragment] = field(default_factory=list)

    @classmethod
    def decode(cls, payload: bytes) -> "SegmentListFragment":
        if len(payload) % SEGMENT_RECORD_SIZE:
            raise InvalidFileIndexError(
                f"Segment list length {len(payload)} is not a multiple of {SEGMENT_RECORD_SIZE}"
            )
        return cls(
            [
                SegmentFragment.decode(payload[pos : pos + SEGMENT_RECORD_SIZE])
                for pos in range(0, len(payload), SEGMENT_RECORD_SIZE)
            ]
        )

    def encode(self) -> bytes:
        return b"".join(s.encode() for s in self.segments)


@dataclass
class TimeFragment:
    timestamp: int

    @classmethod
    def decode(cls, payload: bytes) -> "TimeFragment":
        (timestamp,) = _TIME_STRUCT.unpack(read_exact(io.BytesIO(payload), _TIME_STRUCT.size))
        return cls(timestamp)

    def encode(self) -> bytes:
        return _TIME_STRUCT.pack(self.timestamp)


@dataclass
class AdlerFragment:
    checksum: int

    @classmethod
    def decode(cls, payload: bytes) -> "AdlerFragment":
        (checksum,) = _ADLER_STRUCT.unpack(read_exact(io.BytesIO(payload), _ADLER_STRUCT.size))
        return cls(checksum)

    def encode(self) -> bytes:
        return _ADLER_STRUCT.pack(self.checksum)


@dataclass
class UnknownFragment:
    identifier: int
    payload: bytes


Fragment = Union[InfoFragment, SegmentListFragment, AdlerFragment, TimeFragment, UnknownFragment]

_FRAGMENT_TYPES = {
    TAG_INFO: InfoFragment,
    TAG_SEGM: SegmentListFragment,
    TAG_ADLR: AdlerFragment,
    TAG_TIME: TimeFragment,
}
_FRAGMENT_TAGS = {cls: tag for tag, cls in _FRAGMENT_TYPES.items()}


def decode_fragment(record: IndexRecord) -> Fragment:
    cls = _FRAGMENT_TYPES.get(record.identifier)
    if cls is None:
        return UnknownFragment(record.identifier, record.payload)
    return cls.decode(record.payload)


def fragment_record(fragment: Fragment) -> IndexRecord:
    if isinstance(fragment, UnknownFragment):
        return IndexRecord(fragment.identifier, fragment.payload)
    return IndexRecord(_FRAGMENT_TAGS[type(fragment)], fragment.encode())
