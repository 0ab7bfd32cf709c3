from __future__ import annotations

import io
import os
from contextlib import contextmanager
from typing import BinaryIO, Iterator, List, Optional, Tuple, Union

from .binio import read_exact, read_u8, read_u64
from .codec import Adler32, copy_inflate, copy_stored
from .constants import MAX_INDEX_SIZE, XP3_MAGIC
from .errors import (
    ChecksumMismatchError,
    FileNotFoundInArchive,
    InvalidFileError,
    XP3Error,
    XP3IOError,
    wrap_os_errors,
)
from .file_index import FileIndex
from .fragments import SegmentFragment
from .header import Header, read_header
from .index_set import IndexSet


PathOrStream = Union[str, "os.PathLike[str]", BinaryIO]


class _ChecksumSink:
    """Forwards writes to ``target`` (if any) while accumulating Adler-32."""

    def __init__(self, target: Optional[BinaryIO] = None):
        self.target = target
        self.adler = Adler32()
        self.size = 0

    def write(self, data: bytes) -> int:
        self.adler.update(data)
        self.size += len(data)
        if self.target is not None:
            self.target.write(data)
        return len(data)


class ArchiveReader:
    """Reader for XP3 archives.

    Only the header and index are decoded on ``open()``; file data is read on
    demand by ``unpack``. The stream is left positioned at the archive origin
    and every segment read seeks relative to it and back again, so a single
    reader serves one unpack at a time.
    """

    def __init__(self, source: PathOrStream, *, max_index_size: int = MAX_INDEX_SIZE):
        if isinstance(source, (str, os.PathLike)):
            self.path: Optional[str] = os.fspath(source)
            self._source: Optional[BinaryIO] = None
        else:
            name = getattr(source, "name", None)
            self.path = name if isinstance(name, str) else None
            self._source = source
        self.f: Optional[BinaryIO] = None
        self.origin: int = 0
        self.header: Optional[Header] = None
        self.index_set: Optional[IndexSet] = None
        self.index_offset: int = 0
        self.max_index_size = max_index_size
        self._busy = False

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __len__(self) -> int:
        return len(self._index())

    def __contains__(self, name: str) -> bool:
        return name in self._index()

    def open(self):
        if self.f is not None:
            return
        self.f = open(self.path, "rb") if self._source is None else self._source
        try:
            self._read_container()
        except XP3Error:
            self.close()
            raise
        except OSError as exc:
            self.close()
            raise XP3IOError(f"Failed to read archive: {exc}") from exc

    def close(self):
        if self.f is not None:
            if self._source is None:
                self.f.close()
            self.f = None

    def get(self, name: str) -> Optional[FileIndex]:
        return self._index().get(name)

    def entries(self) -> Iterator[Tuple[str, FileIndex]]:
        return self._index().entries()

    def list(self) -> List[FileIndex]:
        return [fi for _, fi in sorted(self._index().entries(), key=lambda kv: kv[0])]

    def unpack(self, name: str, sink: BinaryIO, *, verify: bool = False) -> int:
        """Write the contents of ``name`` to ``sink``; returns bytes written.

        With ``verify`` the Adler-32 of the written bytes is compared with the
        stored checksum after the last segment and ``ChecksumMismatchError`` is
        raised on mismatch. The data has already reached ``sink`` by then.
        """
        file_index = self._index().get(name)
        if file_index is None:
            raise FileNotFoundInArchive(f"File not found in archive: {name}")
        out = _ChecksumSink(sink) if verify else sink
        written = 0
        with self._lease():
            for segment in file_index.segments:
                written += self._read_segment(segment, out)
        if verify and out.adler.value != file_index.checksum:
            raise ChecksumMismatchError(
                f"Adler-32 mismatch for {name}: stored {file_index.checksum:08x}, computed {out.adler.hexdigest()}"
            )
        return written

    def read(self, name: str, *, verify: bool = False) -> bytes:
        buf = io.BytesIO()
        self.unpack(name, buf, verify=verify)
        return buf.getvalue()

    def read_segment(self, segment: SegmentFragment, sink: BinaryIO) -> int:
        """Decode one segment of this archive into ``sink``; returns bytes written."""
        with self._lease():
            return self._read_segment(segment, sink)

    def extract(self, name: str, out_path: str, *, verify: bool = False) -> int:
        os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
        with open(out_path, "wb") as wf:
            return self.unpack(name, wf, verify=verify)

    def verify_entry(self, name: str) -> bool:
        file_index = self._index().get(name)
        if file_index is None:
            raise FileNotFoundInArchive(f"File not found in archive: {name}")
        counter = _ChecksumSink()
        with self._lease():
            for segment in file_index.segments:
                self._read_segment(segment, counter)
        return counter.adler.value == file_index.checksum and counter.size == file_index.size

    def verify(self) -> bool:
        """Recompute the checksum and size of every entry against the index."""
        ok = True
        for name, _ in self.entries():
            if not self.verify_entry(name):
                ok = False
        return ok

    # internals
    def _index(self) -> IndexSet:
        if self.f is None or self.index_set is None:
            raise RuntimeError("Archive not open")
        return self.index_set

    @contextmanager
    def _lease(self):
        if self.f is None:
            raise RuntimeError("Archive not open")
        if self._busy:
            raise RuntimeError("Another read is already in progress on this archive")
        self._busy = True
        try:
            with wrap_os_errors("Failed to read segment data"):
                yield self.f
        finally:
            self._busy = False

    def _read_container(self):
        """
        Locates and decodes the header and index set.

        1.  Remember the current position as the archive origin.
        2.  Check the magic and skip the version selector byte.
        3.  Decode the header; a versioned header says how many bytes to skip
            before the index offset pointer, a legacy one has it right after.
        4.  Seek to origin + index offset and decode the index set.
        5.  Return to the origin, which segment offsets are relative to.
        """
        assert self.f is not None
        f = self.f
        self.origin = f.tell()
        if read_exact(f, len(XP3_MAGIC)) != XP3_MAGIC:
            raise InvalidFileError("Not an XP3 archive (bad magic)")
        read_u8(f)  # version selector, currently always 1
        _, self.header = read_header(f)
        if self.header.versioned and self.header.index_size_offset:
            f.seek(self.header.index_size_offset, io.SEEK_CUR)
        self.index_offset = read_u64(f)
        f.seek(self.origin + self.index_offset)
        _, self.index_set = IndexSet.read(f, max_index_size=self.max_index_size)
        f.seek(self.origin)

    def _read_segment(self, segment: SegmentFragment, sink) -> int:
        f = self.f
        pos = f.tell()
        f.seek(segment.data_offset, io.SEEK_CUR)
        try:
            if segment.compressed:
                return copy_inflate(f, segment.stored_size, segment.original_size, sink)
            return copy_stored(f, segment.stored_size, sink)
        finally:
            f.seek(pos)


def open_archive(source: PathOrStream, *, max_index_size: int = MAX_INDEX_SIZE) -> ArchiveReader:
    """Open ``source`` (a path or seekable binary stream) and decode its index."""
    reader = ArchiveReader(source, max_index_size=max_index_size)
    reader.open()
    return reader
