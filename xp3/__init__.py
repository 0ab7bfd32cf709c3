"""
xp3: reader/writer for XP3 game-engine archives.

Features:

- Legacy and versioned headers, located index offset pointer.
- TLV index with per-file info/segm/adlr/time records; unknown records preserved.
- Optional zlib deflate for the whole index and for each data segment.
- Multi-segment files, streamed on demand from a seekable stream.
- Opt-in Adler-32 verification on unpack, plus list/info/pack/unpack/verify/repack CLI.

See xp3/tlv.py for the index record layout.
"""

__version__ = "0.1"

__all__ = [
    "constants",
    "errors",
    "header",
    "index_set",
    "reader",
    "writer",
    "repack",
]

# Importable programmatic API is available via xp3.reader/xp3.writer and
# the CLI functions in xp3.cli (cmd_pack/cmd_unpack) which take normal parameters.
