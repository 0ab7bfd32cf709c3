from __future__ import annotations

import io
import os
from dataclasses import dataclass, field
from typing import BinaryIO, Iterable, List, Optional, Tuple, Union

from .binio import pack_u8, write_u64
from .codec import Adler32, Codec
from .constants import DEFAULT_COMPRESSION_LEVEL, DEFAULT_SEGMENT_SIZE, XP3_MAGIC, XP3_VERSION_SELECTOR
from .errors import wrap_os_errors
from .file_index import FileIndex
from .fragments import AdlerFragment, InfoFragment, SegmentFragment, TimeFragment, encode_name
from .header import Header, write_header
from .index_set import IndexCompression, IndexSet
from .reader import ArchiveReader
from .tlv import IndexRecord


@dataclass
class BytesInput:
    """Segment data held in memory."""

    data: bytes
    compressed: bool = False

    def produce_bytes(self) -> bytes:
        return bytes(self.data)


@dataclass
class StreamInput:
    """Segment data read to EOF from a binary stream."""

    stream: BinaryIO
    compressed: bool = False

    def produce_bytes(self) -> bytes:
        return self.stream.read()


@dataclass
class SegmentInput:
    """Segment data re-exported from an open archive, decoded and stored again."""

    reader: ArchiveReader
    segment: SegmentFragment
    compressed: bool = False

    def produce_bytes(self) -> bytes:
        buf = io.BytesIO()
        self.reader.read_segment(self.segment, buf)
        return buf.getvalue()


WriteInput = Union[BytesInput, StreamInput, SegmentInput]


@dataclass
class WriteEntry:
    name: str
    inputs: List[WriteInput] = field(default_factory=list)
    protected: bool = False
    timestamp: Optional[int] = None


class EntryWriter:
    """Writes the segments of one file entry.

    Obtained from ``ArchiveWriter.enter_file``; only one entry may be open at a
    time because segments are written at the archive's single write head.
    ``write()`` stores each call as one segment using the entry's default flag.
    """

    def __init__(
        self,
        writer: "ArchiveWriter",
        name: str,
        *,
        protected: bool = False,
        timestamp: Optional[int] = None,
        compressed: bool = False,
    ):
        self.writer = writer
        self.name = name
        self.protected = protected
        self.timestamp = timestamp
        self.compressed = compressed
        self.original_size = 0
        self.stored_size = 0
        self.adler = Adler32()
        self.segments: List[SegmentFragment] = []
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.finish()
        else:
            self.discard()

    def write(self, data: bytes) -> int:
        self.write_segment(data)
        return len(data)

    def flush(self):
        pass

    def write_segment(self, data: bytes, compressed: Optional[bool] = None) -> int:
        """Store ``data`` as one segment; returns the number of bytes stored."""
        if self.closed:
            raise RuntimeError(f"Entry {self.name!r} already finished")
        flag = self.compressed if compressed is None else compressed
        stored = Codec.for_flag(flag, self.writer.level).compress(data)
        f = self.writer._require_open()
        with wrap_os_errors(f"Failed to write segment of {self.name}"):
            data_offset = f.tell() - self.writer.origin
            f.write(stored)
        self.adler.update(data)
        self.original_size += len(data)
        self.stored_size += len(stored)
        self.segments.append(SegmentFragment(flag, data_offset, len(data), len(stored)))
        return len(stored)

    def finish(self) -> FileIndex:
        """Register the entry in the archive index."""
        if self.closed:
            raise RuntimeError(f"Entry {self.name!r} already finished")
        file_index = FileIndex(
            info=InfoFragment(self.protected, self.original_size, self.stored_size, self.name),
            segments=list(self.segments),
            adler=AdlerFragment(self.adler.value),
            time=TimeFragment(self.timestamp) if self.timestamp is not None else None,
        )
        self.writer.index_set.add(file_index)
        self._close()
        return file_index

    def discard(self):
        # Bytes already written stay in the data region but are not indexed.
        if not self.closed:
            self._close()

    def _close(self):
        self.closed = True
        if self.writer._active is self:
            self.writer._active = None


class ArchiveWriter:
    """Streaming writer for XP3 archives.

    Layout written: magic, version selector, header, index offset slot, segment
    data for each entry in order, then the index set. The index offset slot is
    filled in by ``finalize()`` once the data region is complete.
    """

    def __init__(
        self,
        target: Union[str, "os.PathLike[str]", BinaryIO],
        header: Optional[Header] = None,
        index_compression: IndexCompression = IndexCompression.COMPRESSED,
        *,
        level: int = DEFAULT_COMPRESSION_LEVEL,
    ):
        if isinstance(target, (str, os.PathLike)):
            self.out_path: Optional[str] = os.fspath(target)
            self._target: Optional[BinaryIO] = None
        else:
            self.out_path = None
            self._target = target
        self.f: Optional[BinaryIO] = None
        self.header = header if header is not None else Header.current()
        self.index_set = IndexSet(compression=IndexCompression(index_compression))
        self.level = level
        self.origin = 0
        self.index_pos = 0
        self.finalized = False
        self._active: Optional[EntryWriter] = None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def open(self):
        if self.f is not None:
            return
        self.f = open(self.out_path, "wb") if self._target is None else self._target
        f = self.f
        with wrap_os_errors("Failed to write archive header"):
            self.origin = f.tell()
            f.write(XP3_MAGIC)
            f.write(pack_u8(XP3_VERSION_SELECTOR))
            write_header(f, self.header)
            if self.header.versioned and self.header.index_size_offset:
                f.write(b"\x00" * self.header.index_size_offset)
            self.index_pos = f.tell()
            # index offset is patched in finalize()
            write_u64(f, 0)

    def close(self):
        if self.f is not None:
            if self._target is None:
                self.f.close()
            self.f = None

    def current_pos(self) -> int:
        return self._require_open().tell()

    def append_extra_record(self, record: IndexRecord):
        self.index_set.extras.append(record)

    def enter_file(
        self,
        name: str,
        *,
        protected: bool = False,
        timestamp: Optional[int] = None,
        compressed: bool = False,
    ) -> EntryWriter:
        self._require_open()
        if self._active is not None:
            raise RuntimeError(f"Entry {self._active.name!r} is still open; finish it first")
        # Fail before any data is written for this entry.
        encode_name(name)
        self._active = EntryWriter(self, name, protected=protected, timestamp=timestamp, compressed=compressed)
        return self._active

    def add_bytes(
        self,
        name: str,
        data: bytes,
        *,
        protected: bool = False,
        timestamp: Optional[int] = None,
        compressed: bool = False,
        segment_size: Optional[int] = DEFAULT_SEGMENT_SIZE,
    ) -> FileIndex:
        with self.enter_file(name, protected=protected, timestamp=timestamp, compressed=compressed) as entry:
            step = segment_size or len(data)
            for pos in range(0, len(data), step or 1):
                entry.write_segment(data[pos : pos + step])
        return self.index_set.files[name]

    def add_file(
        self,
        name: str,
        fs_path: str,
        *,
        protected: bool = False,
        timestamp: Optional[int] = None,
        compressed: bool = False,
        segment_size: Optional[int] = DEFAULT_SEGMENT_SIZE,
    ) -> FileIndex:
        """Stream a filesystem file into the archive, one segment per ``segment_size`` bytes."""
        with open(fs_path, "rb") as rf:
            with self.enter_file(name, protected=protected, timestamp=timestamp, compressed=compressed) as entry:
                while True:
                    raw = rf.read(segment_size) if segment_size else rf.read()
                    if not raw:
                        break
                    entry.write_segment(raw)
                    if not segment_size:
                        break
        return self.index_set.files[name]

    def build_entries(self, entries: Iterable[WriteEntry]) -> List[FileIndex]:
        """Write each entry's inputs in order, one segment per input."""
        built: List[FileIndex] = []
        for item in entries:
            with self.enter_file(item.name, protected=item.protected, timestamp=item.timestamp) as entry:
                for source in item.inputs:
                    entry.write_segment(source.produce_bytes(), compressed=source.compressed)
            built.append(self.index_set.files[item.name])
        return built

    def finalize(self) -> Tuple[Header, IndexSet]:
        """
        Completes the archive.

        1.  Records the end of the data region.
        2.  Seeks back to the index offset slot and writes that position,
            relative to the archive origin.
        3.  Returns to the end and writes the index set there.
        """
        f = self._require_open()
        if self._active is not None:
            raise RuntimeError(f"Entry {self._active.name!r} is still open; finish it first")
        with wrap_os_errors("Failed to write archive index"):
            current = f.tell()
            f.seek(self.index_pos)
            write_u64(f, current - self.origin)
            f.seek(current)
            self.index_set.write(f, level=self.level)
            f.flush()
        self.finalized = True
        return self.header, self.index_set

    # internals
    def _require_open(self) -> BinaryIO:
        if self.f is None:
            raise RuntimeError("Archive not open")
        if self.finalized:
            raise RuntimeError("Archive already finalized")
        return self.f
