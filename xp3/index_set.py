from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, Iterator, List, Optional, Tuple

from .binio import pack_u8, pack_u64, read_exact, read_u8, read_u64
from .codec import Codec
from .constants import (
    DEFAULT_COMPRESSION_LEVEL,
    INDEX_COMPRESSED,
    INDEX_UNCOMPRESSED,
    MAX_INDEX_SIZE,
    SEGMENT_COMPRESSED,
    TAG_FILE,
)
from .errors import InvalidFileIndexHeaderError
from .file_index import FileIndex
from .tlv import IndexRecord, iter_records


class IndexCompression(enum.IntEnum):
    UNCOMPRESSED = INDEX_UNCOMPRESSED
    COMPRESSED = INDEX_COMPRESSED


@dataclass
class IndexSet:
    """Whole-archive index: file indexes keyed by name plus unrecognised records."""

    compression: IndexCompression = IndexCompression.COMPRESSED
    extras: List[IndexRecord] = field(default_factory=list)
    files: Dict[str, FileIndex] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.files)

    def __contains__(self, name: str) -> bool:
        return name in self.files

    def get(self, name: str) -> Optional[FileIndex]:
        return self.files.get(name)

    def entries(self) -> Iterator[Tuple[str, FileIndex]]:
        return iter(self.files.items())

    def add(self, file_index: FileIndex) -> None:
        # Same name replaces the earlier entry.
        self.files[file_index.name] = file_index

    @classmethod
    def read(cls, f: BinaryIO, *, max_index_size: int = MAX_INDEX_SIZE) -> Tuple[int, "IndexSet"]:
        """Read an index set at the current position; returns (bytes consumed, IndexSet)."""
        selector = read_u8(f)
        try:
            compression = IndexCompression(selector)
        except ValueError:
            raise InvalidFileIndexHeaderError(f"Unknown index compression selector {selector}") from None
        if compression == IndexCompression.UNCOMPRESSED:
            index_size = read_u64(f)
            _check_size(index_size, max_index_size)
            body = read_exact(f, index_size)
            consumed = 1 + 8 + index_size
        else:
            compressed_size = read_u64(f)
            index_size = read_u64(f)
            _check_size(compressed_size, max_index_size)
            _check_size(index_size, max_index_size)
            raw = read_exact(f, compressed_size)
            body = Codec(SEGMENT_COMPRESSED).decompress(raw, index_size, exact=True)
            consumed = 1 + 16 + compressed_size

        index_set = cls(compression=compression)
        for record in iter_records(body, index_size):
            if record.identifier == TAG_FILE:
                index_set.add(FileIndex.decode(record.payload))
            else:
                index_set.extras.append(record)
        return consumed, index_set

    def body(self) -> bytes:
        out = bytearray()
        for record in self.extras:
            out += record.to_bytes()
        for file_index in self.files.values():
            out += file_index.to_record().to_bytes()
        return bytes(out)

    def write(self, f: BinaryIO, *, level: int = DEFAULT_COMPRESSION_LEVEL) -> int:
        body = self.body()
        if self.compression == IndexCompression.UNCOMPRESSED:
            f.write(pack_u8(self.compression) + pack_u64(len(body)))
            f.write(body)
            return 1 + 8 + len(body)
        packed = Codec(SEGMENT_COMPRESSED, level).compress(body)
        f.write(pack_u8(self.compression) + pack_u64(len(packed)) + pack_u64(len(body)))
        f.write(packed)
        return 1 + 16 + len(packed)


def _check_size(size: int, limit: int) -> None:
    if size > limit:
        raise InvalidFileIndexHeaderError(f"Index size {size} exceeds safety bound {limit}")
