from __future__ import annotations

"""
TLV records used by the XP3 index.

Encoding
- Record: u32 identifier || u64 length || payload[length]   (little endian)
- Identifiers are four ASCII characters read as a little-endian u32

Top-level index tags
- "File": one file index (container; contains file sub-record TLVs)
- anything else: carried verbatim as an extra record

File sub-record tags (within a "File" record)
- "info": flag u32 || file_size u64 || stored_size u64 || name_units u16 || name[UTF-16LE]
- "segm": N x (flag u32 || data_offset u64 || original_size u64 || stored_size u64)
- "adlr": adler32 u32
- "time": timestamp u64
- anything else: skipped
"""

import io
from dataclasses import dataclass
from typing import BinaryIO, Iterator, Tuple

from .binio import pack_u32, pack_u64, read_exact, read_u32, read_u64
from .constants import RECORD_HEADER_SIZE


@dataclass
class IndexRecord:
    identifier: int
    payload: bytes

    @property
    def wire_size(self) -> int:
        return RECORD_HEADER_SIZE + len(self.payload)

    def to_bytes(self) -> bytes:
        return encode_record(self.identifier, self.payload)


def encode_record(identifier: int, payload: bytes) -> bytes:
    return pack_u32(identifier) + pack_u64(len(payload)) + payload


def read_record(f: BinaryIO) -> Tuple[int, IndexRecord]:
    """Read one record from ``f``; returns (bytes consumed, record)."""
    identifier = read_u32(f)
    length = read_u64(f)
    payload = read_exact(f, length)
    return RECORD_HEADER_SIZE + length, IndexRecord(identifier, payload)


def write_record(f: BinaryIO, record: IndexRecord) -> int:
    f.write(record.to_bytes())
    return record.wire_size


def iter_records(data: bytes, size: int) -> Iterator[IndexRecord]:
    """Walk ``data`` as consecutive records until ``size`` bytes are consumed."""
    buf = io.BytesIO(data)
    consumed = 0
    while consumed < size:
        read, record = read_record(buf)
        consumed += read
        yield record


def tag_name(identifier: int) -> str:
    raw = identifier.to_bytes(4, "little")
    if all(0x20 <= b < 0x7F for b in raw):
        return raw.decode("ascii")
    return f"0x{identifier:08x}"
