from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from .constants import TAG_FILE
from .errors import InvalidFileIndexError
from .fragments import (
    AdlerFragment,
    InfoFragment,
    SegmentFragment,
    SegmentListFragment,
    TimeFragment,
    UnknownFragment,
    decode_fragment,
    fragment_record,
)
from .tlv import IndexRecord, iter_records


@dataclass
class FileIndex:
    """Per-file metadata: info, data segments, checksum and optional timestamp."""

    info: InfoFragment
    segments: List[SegmentFragment] = field(default_factory=list)
    adler: AdlerFragment = field(default_factory=lambda: AdlerFragment(1))
    time: Optional[TimeFragment] = None

    @property
    def name(self) -> str:
        return self.info.name

    @property
    def protected(self) -> bool:
        return self.info.protected

    @property
    def size(self) -> int:
        return self.info.original_size

    @property
    def stored_size(self) -> int:
        return self.info.stored_size

    @property
    def checksum(self) -> int:
        return self.adler.checksum

    @property
    def timestamp(self) -> Optional[int]:
        return self.time.timestamp if self.time is not None else None

    @classmethod
    def decode(cls, payload: bytes) -> "FileIndex":
        """Parse the body of a "File" record.

        Sub-records are walked until the whole payload is consumed. Unknown
        sub-records are skipped; info, segm and adlr must each appear exactly once.
        """
        info: Optional[InfoFragment] = None
        segments: Optional[List[SegmentFragment]] = None
        adler: Optional[AdlerFragment] = None
        time: Optional[TimeFragment] = None
        for record in iter_records(payload, len(payload)):
            frag = decode_fragment(record)
            if isinstance(frag, InfoFragment):
                if info is not None:
                    raise InvalidFileIndexError("Duplicate info record in file index")
                info = frag
            elif isinstance(frag, SegmentListFragment):
                if segments is not None:
                    raise InvalidFileIndexError("Duplicate segm record in file index")
                segments = frag.segments
            elif isinstance(frag, AdlerFragment):
                if adler is not None:
                    raise InvalidFileIndexError("Duplicate adlr record in file index")
                adler = frag
            elif isinstance(frag, TimeFragment):
                time = frag
            elif isinstance(frag, UnknownFragment):
                continue
        if info is None:
            raise InvalidFileIndexError("File index is missing its info record")
        if segments is None:
            raise InvalidFileIndexError(f"File index for {info.name!r} is missing its segm record")
        if adler is None:
            raise InvalidFileIndexError(f"File index for {info.name!r} is missing its adlr record")
        return cls(info=info, segments=segments, adler=adler, time=time)

    def encode(self) -> bytes:
        # Sub-record order is part of the format: adlr, time, info, segm.
        out = bytearray()
        out += fragment_record(self.adler).to_bytes()
        if self.time is not None:
            out += fragment_record(self.time).to_bytes()
        out += fragment_record(self.info).to_bytes()
        out += fragment_record(SegmentListFragment(list(self.segments))).to_bytes()
        return bytes(out)

    def to_record(self) -> IndexRecord:
        return IndexRecord(TAG_FILE, self.encode())
