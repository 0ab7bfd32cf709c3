# Magic and version
XP3_MAGIC = b"XP3\r\n \n\x1a\x8b\x67"  # 10 bytes
XP3_VERSION_SELECTOR = 1                 # byte following the magic; always 1

# Versioned header: u64 marker, u32 minor version, u8 identifier, u64 index_size_offset
XP3_CURRENT_VER_MARKER = 0x17
XP3_VERSION_IDENTIFIER = 128
HEADER_VERSIONED_SIZE = 21


def _fourcc(tag: bytes) -> int:
    return int.from_bytes(tag, "little")


# Top-level index record tags
TAG_FILE = _fourcc(b"File")  # 1701603654

# File index sub-record tags
TAG_INFO = _fourcc(b"info")  # 1868983913
TAG_SEGM = _fourcc(b"segm")  # 1835492723
TAG_ADLR = _fourcc(b"adlr")  # 1919706209
TAG_TIME = _fourcc(b"time")  # 1701669236

# Info flags
INFO_NOT_PROTECTED = 0
INFO_PROTECTED = 0x80000000

# Segment flags
SEGMENT_UNCOMPRESSED = 0
SEGMENT_COMPRESSED = 1

# Index set compression selector
INDEX_UNCOMPRESSED = 0
INDEX_COMPRESSED = 1

# Fixed record sizes
RECORD_HEADER_SIZE = 12   # u32 identifier + u64 length
SEGMENT_RECORD_SIZE = 28  # u32 flag + 3 x u64
MAX_NAME_BYTES = 0xFFFF

DEFAULT_COMPRESSION_LEVEL = 1  # zlib "fast"
DEFAULT_SEGMENT_SIZE = None    # one segment per file
COPY_BUFFER_SIZE = 1_048_576   # 1 MiB
MAX_INDEX_SIZE = 256 * 1024 * 1024
