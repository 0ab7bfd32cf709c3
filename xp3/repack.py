from __future__ import annotations

import os
from typing import Optional, Tuple

from .header import Header
from .index_set import IndexCompression, IndexSet
from .reader import ArchiveReader
from .tlv import IndexRecord
from .writer import ArchiveWriter, SegmentInput, WriteEntry


def repack_archive(
    src: str,
    dst: str,
    *,
    header: Optional[Header] = None,
    index_compression: Optional[IndexCompression] = None,
    compressed: Optional[bool] = None,
) -> Tuple[Header, IndexSet]:
    """Rewrite ``src`` into ``dst`` by re-exporting every segment.

    Header, index compression and per-segment compression default to what
    ``src`` uses. Extra index records are carried over unchanged and entries are
    written in name order.
    """
    if os.path.abspath(src) == os.path.abspath(dst) or (os.path.exists(src) and os.path.exists(dst) and os.path.samefile(src, dst)):
        raise ValueError(f"Repack output must differ from the source archive: {dst}")
    with ArchiveReader(src) as reader:
        assert reader.header is not None and reader.index_set is not None
        with ArchiveWriter(
            dst,
            header if header is not None else reader.header,
            index_compression if index_compression is not None else reader.index_set.compression,
        ) as writer:
            for record in reader.index_set.extras:
                writer.append_extra_record(IndexRecord(record.identifier, record.payload))
            writer.build_entries(
                WriteEntry(
                    name=fi.name,
                    inputs=[
                        SegmentInput(reader, seg, seg.compressed if compressed is None else compressed)
                        for seg in fi.segments
                    ],
                    protected=fi.protected,
                    timestamp=fi.timestamp,
                )
                for fi in reader.list()
            )
            return writer.finalize()
