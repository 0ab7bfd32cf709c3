from __future__ import annotations

import zlib
from typing import BinaryIO, Optional

from .binio import read_exact
from .constants import COPY_BUFFER_SIZE, DEFAULT_COMPRESSION_LEVEL, SEGMENT_COMPRESSED, SEGMENT_UNCOMPRESSED
from .errors import XP3IOError


class Codec:
    """zlib deflate for compressed segments and index sets; identity otherwise."""

    def __init__(self, codec_id: int, level: Optional[int] = None):
        if codec_id not in (SEGMENT_UNCOMPRESSED, SEGMENT_COMPRESSED):
            raise RuntimeError(f"unsupported codec id: {codec_id}")
        self.codec_id = codec_id
        self.level = level

    @classmethod
    def for_flag(cls, compressed: bool, level: Optional[int] = None) -> "Codec":
        return cls(SEGMENT_COMPRESSED if compressed else SEGMENT_UNCOMPRESSED, level)

    def compress(self, data: bytes) -> bytes:
        if self.codec_id == SEGMENT_UNCOMPRESSED:
            return data
        return zlib.compress(data, self.level if self.level is not None else DEFAULT_COMPRESSION_LEVEL)

    def decompress(self, data: bytes, max_length: int, *, exact: bool = False) -> bytes:
        """Inflate at most ``max_length`` bytes; with ``exact`` a shorter result is an error."""
        if self.codec_id == SEGMENT_UNCOMPRESSED:
            out = data[:max_length]
        else:
            try:
                out = zlib.decompressobj().decompress(data, max_length) if max_length else b""
            except zlib.error as exc:
                raise XP3IOError(f"deflate stream is corrupt: {exc}") from exc
        if exact and len(out) != max_length:
            raise XP3IOError(f"Inflated {len(out)} bytes, expected {max_length}")
        return out


def copy_stored(src: BinaryIO, size: int, sink: BinaryIO, *, block_size: int = COPY_BUFFER_SIZE) -> int:
    """Copy exactly ``size`` bytes from ``src`` to ``sink`` in blocks."""
    remaining = size
    while remaining > 0:
        block = read_exact(src, min(block_size, remaining))
        sink.write(block)
        remaining -= len(block)
    return size


def copy_inflate(
    src: BinaryIO,
    stored_size: int,
    original_size: int,
    sink: BinaryIO,
    *,
    block_size: int = COPY_BUFFER_SIZE,
) -> int:
    """Inflate up to ``original_size`` bytes from ``stored_size`` deflated bytes of ``src``."""
    decomp = zlib.decompressobj()
    remaining_in = stored_size
    written = 0
    try:
        while written < original_size:
            if decomp.unconsumed_tail:
                chunk = decomp.unconsumed_tail
            elif remaining_in > 0:
                chunk = read_exact(src, min(block_size, remaining_in))
                remaining_in -= len(chunk)
            else:
                break
            out = decomp.decompress(chunk, original_size - written)
            if out:
                sink.write(out)
                written += len(out)
            if decomp.eof:
                break
    except zlib.error as exc:
        raise XP3IOError(f"deflate stream is corrupt: {exc}") from exc
    if written < original_size and not decomp.eof:
        raise XP3IOError(f"deflate stream ended before end of data: inflated {written} of {original_size} bytes")
    return written


class Adler32:
    """Rolling Adler-32 over the uncompressed bytes of a file."""

    def __init__(self, value: int = 1):
        self.value = value

    def update(self, data: bytes) -> None:
        self.value = zlib.adler32(data, self.value)

    def hexdigest(self) -> str:
        return f"{self.value:08x}"
