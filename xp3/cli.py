from __future__ import annotations

import os
import sys
import time
import argparse
import json as _json

from pathlib import Path
from typing import List, Iterable, Dict, Any, Optional

from xp3.writer import ArchiveWriter
from xp3.reader import ArchiveReader
from xp3.repack import repack_archive
from xp3.header import Header
from xp3.index_set import IndexCompression
from xp3.pathutil import norm_path, extraction_target
from xp3.tlv import tag_name
from xp3.errors import (
    XP3Error,
    InvalidFileError,
    InvalidHeaderError,
    InvalidFileIndexHeaderError,
    InvalidFileIndexError,
    ChecksumMismatchError,
)


# Windows FILETIME: 100ns ticks since 1601-01-01
_FILETIME_EPOCH_DELTA = 116_444_736_000_000_000


def _filetime_from_ns(ns: int) -> int:
    return ns // 100 + _FILETIME_EPOCH_DELTA


def _seconds_from_filetime(ft: int) -> Optional[float]:
    """Convert a stored timestamp to epoch seconds, or None if it predates 1970."""
    if ft < _FILETIME_EPOCH_DELTA:
        return None
    return (ft - _FILETIME_EPOCH_DELTA) / 10_000_000.0


def _safe_utime(path: str, mtime: Optional[float]) -> None:
    """Best‑effort utime that never raises.

    Args:
        path: Destination filesystem path to update.
        mtime: Modification time (seconds since epoch). If None, no change is made.
    """
    if mtime is None:
        return
    try:
        os.utime(path, (mtime, mtime))
    except OSError as exc:
        print(f"Warning: failed to set timestamps on {path}: {exc}", file=sys.stderr)


def _iter_inputs(inputs: Iterable[str]) -> Iterable[tuple[str, str, int]]:
    """Yield (archive name, filesystem path, size) for files under the inputs.

    Directories contribute their files with names relative to the directory
    itself, so ``pack out.xp3 data/`` stores ``data/a.txt`` as ``a.txt``.
    """
    for raw in inputs:
        p = Path(raw)
        if p.is_dir():
            for root, dirnames, filenames in os.walk(str(p)):
                dirnames.sort()
                for fn in sorted(filenames):
                    full = os.path.join(root, fn)
                    if os.path.islink(full):
                        continue
                    rel = os.path.relpath(full, start=str(p))
                    yield norm_path(rel), full, os.path.getsize(full)
        else:
            yield norm_path(p.name), str(p), os.path.getsize(str(p))


def _print_index_hint() -> None:
    print(
        "Index appears inconsistent or corrupted. This command is read-only.\n"
        "Hint: run 'xp3 verify' on a known-good copy, or 'xp3 repack' to rewrite the index.",
        file=sys.stderr,
    )


_INDEX_ERRORS = (InvalidHeaderError, InvalidFileIndexHeaderError, InvalidFileIndexError)


def cmd_pack(
    output: str,
    inputs: List[str],
    *,
    compress: bool = False,
    segment_size: Optional[int] = None,
    legacy: bool = False,
    minor_version: int = 1,
    index_compressed: bool = True,
    protect: bool = False,
    timestamps: bool = False,
    quiet: bool = False,
) -> bool:
    """Pack files and directories into a new archive.

    Args:
        output: Path to the output .xp3 file to write.
        inputs: List of file or directory paths to store.
        compress: Deflate every segment.
        segment_size: Split files into segments of at most this many bytes.
        legacy: Write a legacy (headerless) archive.
        minor_version: Minor version stored in a versioned header.
        index_compressed: Deflate the index set.
        protect: Mark every entry as protected.
        timestamps: Store each file's mtime as a FILETIME timestamp.
    """
    files = list(_iter_inputs(inputs))
    total_bytes = sum(sz for _, _, sz in files) or 1
    processed = 0
    t0 = time.time()

    header = Header.legacy() if legacy else Header.current(minor_version)
    compression = IndexCompression.COMPRESSED if index_compressed else IndexCompression.UNCOMPRESSED
    with ArchiveWriter(output, header, compression) as w:
        for name, full, size in files:
            ts = _filetime_from_ns(os.stat(full).st_mtime_ns) if timestamps else None
            if name in w.index_set:
                print(f"Warning: duplicate name {name}; later file replaces earlier", file=sys.stderr)
            w.add_file(name, full, protected=protect, timestamp=ts, compressed=compress, segment_size=segment_size)
            processed += size
            if not quiet:
                pct = processed * 100.0 / total_bytes
                print(f" {pct:6.2f}% packing: {name}")
        w.finalize()

    dt = max(0.000001, time.time() - t0)
    mib = processed / (1024.0 * 1024.0)
    print(f"Done: {len(files)} files; {mib:.2f} MiB in {dt:.1f}s; {mib / dt:.2f} MiB/s")
    return True


def cmd_list(archive: str, *, as_json: bool = False) -> bool:
    """List archive entries.

    Args:
        archive: Path to an .xp3 file.
        as_json: Emit one JSON document instead of tab-separated lines.
    """
    with ArchiveReader(archive) as r:
        entries = r.list()
    if as_json:
        rows: List[Dict[str, Any]] = [
            {
                "name": e.name,
                "size": e.size,
                "stored_size": e.stored_size,
                "segments": len(e.segments),
                "protected": e.protected,
                "adler32": f"{e.checksum:08x}",
                "timestamp": e.timestamp,
            }
            for e in entries
        ]
        print(_json.dumps({"entries": rows}))
        return True
    for e in entries:
        flags = ("P" if e.protected else "-") + ("Z" if any(s.compressed for s in e.segments) else "-")
        print(f"{flags}\t{e.size}\t{e.stored_size}\t{e.name}")
    return True


def cmd_info(archive: str) -> bool:
    """Show archive information.

    Args:
        archive: Path to an .xp3 file.
    """
    with ArchiveReader(archive) as r:
        print(f"Archive: {archive}")
        if r.header is not None and r.header.versioned:
            print(f"  Header: versioned (minor {r.header.minor_version}, index size offset {r.header.index_size_offset})")
        else:
            print("  Header: legacy")
        print(f"  Index offset: {r.index_offset}")
        print(f"  Index compression: {r.index_set.compression.name.lower()}")
        entries = r.list()
        print(f"  Files: {len(entries)}")
        print(f"    Size: {sum(e.size for e in entries)}")
        print(f"    Stored: {sum(e.stored_size for e in entries)}")
        print(f"    Segments: {sum(len(e.segments) for e in entries)}")
        if r.index_set.extras:
            tags = ", ".join(tag_name(rec.identifier) for rec in r.index_set.extras)
            print(f"  Extra records: {len(r.index_set.extras)} ({tags})")
    return True


def cmd_unpack(
    archive: str,
    *,
    outdir: str = ".",
    names: Optional[List[str]] = None,
    verify: bool = False,
    exists: str = "overwrite",
    quiet: bool = False,
) -> bool:
    """Unpack files from an archive to a directory.

    Args:
        archive: Path to an .xp3 file.
        outdir: Destination directory.
        names: Entries (or name prefixes ending at a '/') to extract; all when empty.
        verify: Check each entry's Adler-32 after writing it.
        exists: "overwrite", "skip" or "fail" when a destination file exists.
    """
    t0 = time.time()
    extracted = 0
    skipped = 0
    total_bytes = 0
    with ArchiveReader(archive) as r:
        entries = r.list()
        if names:
            wanted = [norm_path(n) for n in names]
            entries = [
                e for e in entries
                if any(norm_path(e.name) == w or norm_path(e.name).startswith(w + "/") for w in wanted)
            ]
        for i, e in enumerate(entries, 1):
            dst = extraction_target(outdir, e.name)
            if os.path.exists(dst):
                if exists == "skip":
                    print(f"    skipping: {e.name} (exists)")
                    skipped += 1
                    continue
                if exists == "fail":
                    raise RuntimeError(f"Destination exists: {dst}")
                if os.path.isdir(dst):
                    raise RuntimeError(f"Cannot overwrite directory with file: {dst}")
            if not quiet:
                print(f" unpacking: {i:>4}/{len(entries):<4} {e.name}")
            total_bytes += r.extract(e.name, dst, verify=verify)
            if e.timestamp is not None:
                _safe_utime(dst, _seconds_from_filetime(e.timestamp))
            extracted += 1
    dt = max(0.000001, time.time() - t0)
    mib = total_bytes / (1024.0 * 1024.0)
    print(f"Done: extracted {extracted} files ({mib:.2f} MiB) in {dt:.1f}s; skipped={skipped}")
    return True


def cmd_verify(archive: str) -> bool:
    """Verify every entry's size and Adler-32 checksum.

    Prints:
        "OK" on success, "FAIL" followed by the failing names otherwise.
    """
    with ArchiveReader(archive) as r:
        failed = [name for name, _ in r.entries() if not r.verify_entry(name)]
    if failed:
        print("FAIL")
        for name in sorted(failed):
            print(f"  {name}")
        return False
    print("OK")
    return True


def cmd_repack(
    archive: str,
    output: str,
    *,
    compress: Optional[bool] = None,
    legacy: Optional[bool] = None,
    index_compressed: Optional[bool] = None,
) -> bool:
    """Rewrite an archive, optionally changing header or compression.

    Args:
        archive: Source .xp3 path.
        output: Destination .xp3 path.
        compress: True/False to force segment compression on/off; None keeps each segment's flag.
        legacy: True for a legacy header, False for a versioned one; None keeps the source header.
        index_compressed: True/False to force index compression; None keeps the source setting.
    """
    header = None if legacy is None else (Header.legacy() if legacy else Header.current())
    compression = None
    if index_compressed is not None:
        compression = IndexCompression.COMPRESSED if index_compressed else IndexCompression.UNCOMPRESSED
    _, index_set = repack_archive(archive, output, header=header, index_compression=compression, compressed=compress)
    print(f"Done: repacked {len(index_set)} files into {output}")
    return True


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="xp3",
        description="XP3 game archive tool",
    )
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_pack = sub.add_parser("pack", help="Pack files into a new archive")
    ap_pack.add_argument("output", help="Output .xp3 path")
    ap_pack.add_argument("inputs", nargs="+", help="Input files/directories")
    ap_pack.add_argument("--compress", action="store_true", help="Deflate file segments")
    ap_pack.add_argument("--segment-size", type=int, help="Split files into segments of at most this many bytes")
    ap_pack.add_argument("--legacy", action="store_true", help="Write a legacy header-less archive")
    ap_pack.add_argument("--minor-version", type=int, default=1, help="Minor version for the versioned header (default 1)")
    ap_pack.add_argument("--uncompressed-index", action="store_true", help="Store the index without deflate")
    ap_pack.add_argument("--protect", action="store_true", help="Set the protected flag on every entry")
    ap_pack.add_argument("--timestamps", action="store_true", help="Store file modification times")
    ap_pack.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_list = sub.add_parser("list", help="List archive contents")
    ap_list.add_argument("archive", help="Archive path")
    ap_list.add_argument("--json", action="store_true", help="Emit JSON")

    ap_info = sub.add_parser("info", help="Show archive information")
    ap_info.add_argument("archive", help="Archive path")

    ap_unpack = sub.add_parser("unpack", help="Unpack files")
    ap_unpack.add_argument("archive", help="Archive path")
    ap_unpack.add_argument("names", nargs="*", help="Specific entries to extract")
    ap_unpack.add_argument("--outdir", default=".", help="Output directory")
    ap_unpack.add_argument("--verify", action="store_true", help="Check Adler-32 of each extracted entry")
    ap_unpack.add_argument(
        "--exists",
        choices=["overwrite", "skip", "fail"],
        default="overwrite",
        help="What to do if a destination file exists (default: overwrite)",
    )
    ap_unpack.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_verify = sub.add_parser("verify", help="Verify archive checksums")
    ap_verify.add_argument("archive", help="Archive path")

    ap_repack = sub.add_parser("repack", help="Rewrite an archive")
    ap_repack.add_argument("archive", help="Source archive path")
    ap_repack.add_argument("output", help="Output .xp3 path")
    seg = ap_repack.add_mutually_exclusive_group()
    seg.add_argument("--compress", dest="compress", action="store_const", const=True, help="Deflate all segments")
    seg.add_argument("--decompress", dest="compress", action="store_const", const=False, help="Store all segments raw")
    hdr = ap_repack.add_mutually_exclusive_group()
    hdr.add_argument("--legacy", dest="legacy", action="store_const", const=True, help="Write a legacy header")
    hdr.add_argument("--versioned", dest="legacy", action="store_const", const=False, help="Write a versioned header")
    idx = ap_repack.add_mutually_exclusive_group()
    idx.add_argument("--compressed-index", dest="index_compressed", action="store_const", const=True)
    idx.add_argument("--uncompressed-index", dest="index_compressed", action="store_const", const=False)

    args = ap.parse_args(argv)
    try:
        if args.cmd == "pack":
            cmd_pack(
                args.output,
                args.inputs,
                compress=args.compress,
                segment_size=args.segment_size,
                legacy=args.legacy,
                minor_version=args.minor_version,
                index_compressed=not args.uncompressed_index,
                protect=args.protect,
                timestamps=args.timestamps,
                quiet=args.quiet,
            )
        elif args.cmd == "list":
            cmd_list(args.archive, as_json=args.json)
        elif args.cmd == "info":
            cmd_info(args.archive)
        elif args.cmd == "unpack":
            cmd_unpack(
                args.archive,
                outdir=args.outdir,
                names=args.names,
                verify=args.verify,
                exists=args.exists,
                quiet=args.quiet,
            )
        elif args.cmd == "verify":
            sys.exit(0 if cmd_verify(args.archive) else 1)
        elif args.cmd == "repack":
            cmd_repack(
                args.archive,
                args.output,
                compress=args.compress,
                legacy=args.legacy,
                index_compressed=args.index_compressed,
            )
        else:
            raise RuntimeError("Unknown command")
    except InvalidFileError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except _INDEX_ERRORS as e:
        print(f"Error: {e}", file=sys.stderr)
        _print_index_hint()
        sys.exit(2)
    except ChecksumMismatchError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except (XP3Error, OSError, ValueError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
