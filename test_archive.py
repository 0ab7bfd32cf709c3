from __future__ import annotations

import io
import os
import tempfile
import unittest
import zlib
from pathlib import Path

from xp3.binio import read_u64
from xp3.codec import copy_inflate
from xp3.constants import XP3_MAGIC
from xp3.errors import (
    ChecksumMismatchError,
    FileNotFoundInArchive,
    InvalidFileError,
    NameTooLongError,
    XP3IOError,
)
from xp3.fragments import SegmentFragment
from xp3.header import Header
from xp3.index_set import IndexCompression
from xp3.reader import ArchiveReader, open_archive
from xp3.repack import repack_archive
from xp3.tlv import IndexRecord
from xp3.writer import ArchiveWriter, BytesInput, SegmentInput, StreamInput, WriteEntry


def _build(fill, *, header=None, index_compression=IndexCompression.COMPRESSED, prefix: bytes = b"") -> io.BytesIO:
    buf = io.BytesIO()
    buf.write(prefix)
    with ArchiveWriter(buf, header, index_compression) as w:
        fill(w)
        w.finalize()
    buf.seek(len(prefix))
    return buf


def _flip_byte(buf: io.BytesIO, pos: int):
    raw = bytearray(buf.getvalue())
    raw[pos] ^= 0xFF
    return io.BytesIO(bytes(raw))


class _FlakyStream(io.BytesIO):
    fail = False

    def read(self, *args):
        if self.fail:
            raise OSError("device went away")
        return super().read(*args)


class ArchiveRoundTripTests(unittest.TestCase):
    def test_single_file(self):
        buf = _build(lambda w: w.add_bytes("a.txt", b"hello"))
        with ArchiveReader(buf) as r:
            self.assertEqual(len(r), 1)
            self.assertIn("a.txt", r)
            fi = r.get("a.txt")
            self.assertEqual(fi.size, 5)
            self.assertEqual(fi.checksum, zlib.adler32(b"hello"))
            self.assertEqual(r.read("a.txt"), b"hello")
            self.assertEqual(r.read("a.txt", verify=True), b"hello")
            with self.assertRaises(FileNotFoundInArchive):
                r.read("missing.txt")
            with self.assertRaises(KeyError):
                r.unpack("missing.txt", io.BytesIO())

    def test_both_index_modes_mixed_segments(self):
        payload = os.urandom(3000) + b"z" * 5000
        for mode in IndexCompression:
            with self.subTest(mode=mode.name):

                def fill(w):
                    with w.enter_file("mixed.bin", timestamp=132000000000000000) as e:
                        e.write_segment(payload[:4000], compressed=True)
                        e.write_segment(payload[4000:], compressed=False)
                    w.add_bytes("small.txt", b"abc", compressed=True, protected=True)

                buf = _build(fill, index_compression=mode)
                with ArchiveReader(buf) as r:
                    self.assertEqual(r.index_set.compression, mode)
                    fi = r.get("mixed.bin")
                    self.assertEqual([s.compressed for s in fi.segments], [True, False])
                    self.assertEqual(fi.size, len(payload))
                    self.assertEqual(fi.stored_size, sum(s.stored_size for s in fi.segments))
                    self.assertEqual(fi.timestamp, 132000000000000000)
                    self.assertEqual(r.read("mixed.bin", verify=True), payload)
                    small = r.get("small.txt")
                    self.assertTrue(small.protected)
                    self.assertIsNone(small.timestamp)
                    self.assertEqual(r.read("small.txt"), b"abc")
                    self.assertTrue(r.verify())

    def test_two_segments_one_compressed(self):
        def fill(w):
            with w.enter_file("two.bin") as e:
                e.write_segment(b"abc" * 100, compressed=True)
                e.write_segment(b"xyz", compressed=False)

        with ArchiveReader(_build(fill)) as r:
            fi = r.get("two.bin")
            self.assertEqual(len(fi.segments), 2)
            self.assertLess(fi.segments[0].stored_size, 300)
            self.assertEqual(fi.segments[1].stored_size, 3)
            self.assertEqual(fi.checksum, zlib.adler32(b"abc" * 100 + b"xyz"))
            self.assertEqual(r.read("two.bin"), b"abc" * 100 + b"xyz")

    def test_segment_size_splits(self):
        data = bytes(range(256)) * 10
        buf = _build(lambda w: w.add_bytes("split.bin", data, segment_size=1000, compressed=True))
        with ArchiveReader(buf) as r:
            fi = r.get("split.bin")
            self.assertEqual([s.original_size for s in fi.segments], [1000, 1000, 560])
            self.assertEqual(r.read("split.bin", verify=True), data)

    def test_empty_file_and_empty_archive(self):
        with ArchiveReader(_build(lambda w: w.add_bytes("empty", b""))) as r:
            fi = r.get("empty")
            self.assertEqual(fi.segments, [])
            self.assertEqual(fi.checksum, 1)
            self.assertEqual(r.read("empty", verify=True), b"")
        with ArchiveReader(_build(lambda w: None)) as r:
            self.assertEqual(len(r), 0)
            self.assertEqual(r.list(), [])
            self.assertTrue(r.verify())

    def test_list_sorted_and_duplicates(self):
        def fill(w):
            w.add_bytes("b.txt", b"b")
            w.add_bytes("a.txt", b"one")
            w.add_bytes("a.txt", b"two")

        with ArchiveReader(_build(fill)) as r:
            self.assertEqual([fi.name for fi in r.list()], ["a.txt", "b.txt"])
            self.assertEqual(r.read("a.txt"), b"two")
            self.assertEqual(dict(r.entries()).keys(), {"a.txt", "b.txt"})

    def test_unicode_names(self):
        name = "データ/画像/絵.png"
        with ArchiveReader(_build(lambda w: w.add_bytes(name, b"\x89PNG"))) as r:
            self.assertEqual(r.list()[0].name, name)
            self.assertEqual(r.read(name), b"\x89PNG")

    def test_extra_records_preserved(self):
        extra = IndexRecord(0x6E666E68, b"hash table payload")

        def fill(w):
            w.append_extra_record(extra)
            w.add_bytes("a.txt", b"hello")

        with ArchiveReader(_build(fill)) as r:
            self.assertEqual(r.index_set.extras, [extra])
            self.assertEqual(r.read("a.txt"), b"hello")


class ContainerLayoutTests(unittest.TestCase):
    def test_versioned_layout(self):
        buf = _build(lambda w: w.add_bytes("a.txt", b"hello"))
        raw = buf.getvalue()
        self.assertEqual(raw[:10], XP3_MAGIC)
        self.assertEqual(raw[10], 1)
        index_offset = read_u64(io.BytesIO(raw[32:40]))
        self.assertEqual(raw[40:45], b"hello")
        self.assertIn(raw[index_offset], (0, 1))
        with ArchiveReader(buf) as r:
            self.assertEqual(r.header, Header.current())
            self.assertEqual(r.index_offset, index_offset)
            self.assertEqual(r.get("a.txt").segments[0].data_offset, 40)

    def test_legacy_layout(self):
        buf = _build(lambda w: w.add_bytes("a.txt", b"hello"), header=Header.legacy())
        raw = buf.getvalue()
        index_offset = read_u64(io.BytesIO(raw[11:19]))
        self.assertEqual(raw[19:24], b"hello")
        with ArchiveReader(buf) as r:
            self.assertFalse(r.header.versioned)
            self.assertEqual(r.index_offset, index_offset)
            self.assertEqual(r.read("a.txt"), b"hello")

    def test_index_size_offset_skipped(self):
        header = Header.current(3, 5)
        buf = _build(lambda w: w.add_bytes("a.txt", b"hello"), header=header)
        raw = buf.getvalue()
        self.assertEqual(raw[32:37], b"\x00" * 5)
        self.assertEqual(raw[45:50], b"hello")
        with ArchiveReader(buf) as r:
            self.assertEqual(r.header, header)
            self.assertEqual(r.read("a.txt"), b"hello")

    def test_nonzero_origin(self):
        prefix = b"MZ" + b"\x00" * 98
        buf = _build(lambda w: w.add_bytes("a.txt", b"hello", compressed=True), prefix=prefix)
        with ArchiveReader(buf) as r:
            self.assertEqual(r.origin, len(prefix))
            self.assertEqual(buf.tell(), len(prefix))
            self.assertEqual(r.read("a.txt", verify=True), b"hello")
            # Stream is back at the origin after each read
            self.assertEqual(buf.tell(), len(prefix))

    def test_bad_magic(self):
        with self.assertRaises(InvalidFileError):
            open_archive(io.BytesIO(b"\x00" * 64))

    def test_truncated_archive(self):
        raw = _build(lambda w: w.add_bytes("a.txt", b"hello")).getvalue()
        with self.assertRaises(XP3IOError):
            open_archive(io.BytesIO(raw[:30]))


class IntegrityTests(unittest.TestCase):
    def _corrupted(self):
        buf = _build(lambda w: w.add_bytes("a.txt", b"hello world"))
        with ArchiveReader(buf) as r:
            offset = r.get("a.txt").segments[0].data_offset
        return _flip_byte(buf, offset)

    def test_verify_detects_corruption(self):
        with ArchiveReader(self._corrupted()) as r:
            self.assertNotEqual(r.read("a.txt"), b"hello world")
            self.assertFalse(r.verify_entry("a.txt"))
            self.assertFalse(r.verify())
            with self.assertRaises(ChecksumMismatchError):
                r.read("a.txt", verify=True)

    def test_corrupt_deflate_stream(self):
        buf = _build(lambda w: w.add_bytes("z.bin", b"q" * 1000, compressed=True))
        with ArchiveReader(buf) as r:
            offset = r.get("z.bin").segments[0].data_offset
        with ArchiveReader(_flip_byte(buf, offset)) as r:
            with self.assertRaises(XP3IOError):
                r.read("z.bin")

    def test_truncated_deflate_stream(self):
        data = os.urandom(5000)
        buf = _build(lambda w: w.add_bytes("a", data, compressed=True))
        with ArchiveReader(buf) as r:
            fi = r.get("a")
            seg = fi.segments[0]
            fi.segments[0] = SegmentFragment(True, seg.data_offset, seg.original_size, seg.stored_size // 2)
            with self.assertRaises(XP3IOError):
                r.read("a")

    def test_inflate_stops_at_stream_end(self):
        packed = zlib.compress(b"abc")
        sink = io.BytesIO()
        # A complete stream shorter than the declared size is accepted
        self.assertEqual(copy_inflate(io.BytesIO(packed), len(packed), 10, sink), 3)
        self.assertEqual(sink.getvalue(), b"abc")
        with self.assertRaises(XP3IOError):
            copy_inflate(io.BytesIO(packed[:-4]), len(packed) - 4, 10, io.BytesIO())

    def test_stream_errors_wrapped(self):
        raw = _build(lambda w: w.add_bytes("a.txt", b"hello")).getvalue()
        stream = _FlakyStream(raw)
        with ArchiveReader(stream) as r:
            stream.fail = True
            with self.assertRaises(XP3IOError):
                r.read("a.txt")

    def test_reentrant_read_rejected(self):
        buf = _build(lambda w: (w.add_bytes("a.txt", b"hello"), w.add_bytes("b.txt", b"world")))
        with ArchiveReader(buf) as r:

            class Sink:
                def write(self, data):
                    r.read("b.txt")

            with self.assertRaises(RuntimeError):
                r.unpack("a.txt", Sink())
            # Guard is released after the failure
            self.assertEqual(r.read("b.txt"), b"world")

    def test_closed_reader(self):
        r = open_archive(_build(lambda w: w.add_bytes("a.txt", b"hello")))
        r.close()
        with self.assertRaises(RuntimeError):
            r.read("a.txt")


class WriterTests(unittest.TestCase):
    def test_name_too_long(self):
        buf = io.BytesIO()
        with ArchiveWriter(buf) as w:
            with self.assertRaises(NameTooLongError):
                w.add_bytes("n" * 40000, b"data")
            w.add_bytes("n" * 32767, b"data")
            w.finalize()
        buf.seek(0)
        with ArchiveReader(buf) as r:
            self.assertEqual(r.read("n" * 32767), b"data")

    def test_single_active_entry(self):
        buf = io.BytesIO()
        with ArchiveWriter(buf) as w:
            entry = w.enter_file("first")
            with self.assertRaises(RuntimeError):
                w.enter_file("second")
            with self.assertRaises(RuntimeError):
                w.finalize()
            entry.write(b"abc")
            entry.finish()
            with self.assertRaises(RuntimeError):
                entry.write(b"more")
            w.enter_file("second").finish()
            w.finalize()
            with self.assertRaises(RuntimeError):
                w.add_bytes("late", b"x")

    def test_failed_entry_discarded(self):
        buf = io.BytesIO()
        with ArchiveWriter(buf) as w:
            with self.assertRaises(ValueError):
                with w.enter_file("broken") as e:
                    e.write_segment(b"partial")
                    raise ValueError("source failed")
            self.assertNotIn("broken", w.index_set)
            w.add_bytes("ok", b"fine")
            w.finalize()
        buf.seek(0)
        with ArchiveReader(buf) as r:
            self.assertEqual([fi.name for fi in r.list()], ["ok"])
            self.assertEqual(r.read("ok"), b"fine")

    def test_build_entries_from_sources(self):
        src = _build(lambda w: w.add_bytes("orig.bin", b"0123456789", compressed=True))
        with ArchiveReader(src) as r:
            segment = r.get("orig.bin").segments[0]

            def fill(w):
                w.build_entries(
                    [
                        WriteEntry(
                            "joined.bin",
                            inputs=[
                                BytesInput(b"head-"),
                                StreamInput(io.BytesIO(b"body-"), compressed=True),
                                SegmentInput(r, segment, compressed=False),
                            ],
                            protected=True,
                            timestamp=42,
                        )
                    ]
                )

            out = _build(fill)
        with ArchiveReader(out) as r2:
            fi = r2.get("joined.bin")
            self.assertEqual([s.compressed for s in fi.segments], [False, True, False])
            self.assertTrue(fi.protected)
            self.assertEqual(fi.timestamp, 42)
            self.assertEqual(r2.read("joined.bin", verify=True), b"head-body-0123456789")

    def test_entry_is_file_like(self):
        buf = io.BytesIO()
        with ArchiveWriter(buf) as w:
            with w.enter_file("lines.txt", compressed=True) as e:
                e.write(b"first\n")
                e.write(b"second\n")
            w.finalize()
        buf.seek(0)
        with ArchiveReader(buf) as r:
            self.assertEqual(len(r.get("lines.txt").segments), 2)
            self.assertEqual(r.read("lines.txt", verify=True), b"first\nsecond\n")

    def test_add_file_and_extract(self):
        with tempfile.TemporaryDirectory() as td:
            base = Path(td)
            src = base / "input.bin"
            src.write_bytes(os.urandom(10000))
            archive = base / "out.xp3"
            with ArchiveWriter(str(archive)) as w:
                fi = w.add_file("dir/input.bin", str(src), compressed=True, segment_size=4096)
                w.finalize()
            self.assertEqual(len(fi.segments), 3)
            with ArchiveReader(str(archive)) as r:
                dst = base / "x" / "dir" / "input.bin"
                self.assertEqual(r.extract("dir/input.bin", str(dst), verify=True), 10000)
            self.assertEqual(dst.read_bytes(), src.read_bytes())


class RepackTests(unittest.TestCase):
    def test_repack_refuses_same_path(self):
        with tempfile.TemporaryDirectory() as td:
            src = Path(td) / "src.xp3"
            with ArchiveWriter(str(src)) as w:
                w.add_bytes("a.txt", b"alpha")
                w.finalize()
            before = src.read_bytes()
            with self.assertRaises(ValueError):
                repack_archive(str(src), str(src))
            with self.assertRaises(ValueError):
                repack_archive(str(src), os.path.join(td, ".", "src.xp3"))
            self.assertEqual(src.read_bytes(), before)
            with ArchiveReader(str(src)) as r:
                self.assertEqual(r.read("a.txt", verify=True), b"alpha")

    def test_repack_changes_layout_keeps_content(self):
        with tempfile.TemporaryDirectory() as td:
            base = Path(td)
            src = base / "src.xp3"
            extra = IndexRecord(0x12345678, b"keep me")
            with ArchiveWriter(str(src), Header.legacy(), IndexCompression.UNCOMPRESSED) as w:
                w.append_extra_record(extra)
                w.add_bytes("b.txt", b"bravo" * 100, timestamp=7)
                w.add_bytes("a.txt", b"alpha", protected=True, segment_size=2)
                w.finalize()

            dst = base / "dst.xp3"
            repack_archive(
                str(src),
                str(dst),
                header=Header.current(),
                index_compression=IndexCompression.COMPRESSED,
                compressed=True,
            )
            with ArchiveReader(str(dst)) as r:
                self.assertTrue(r.header.versioned)
                self.assertEqual(r.index_set.compression, IndexCompression.COMPRESSED)
                self.assertEqual(r.index_set.extras, [extra])
                self.assertEqual(r.read("b.txt", verify=True), b"bravo" * 100)
                self.assertEqual(r.read("a.txt", verify=True), b"alpha")
                a = r.get("a.txt")
                self.assertTrue(a.protected)
                self.assertEqual(len(a.segments), 3)
                self.assertTrue(all(s.compressed for s in a.segments))
                self.assertEqual(r.get("b.txt").timestamp, 7)

    def test_repack_defaults_keep_source_settings(self):
        with tempfile.TemporaryDirectory() as td:
            base = Path(td)
            src = base / "src.xp3"
            with ArchiveWriter(str(src), Header.current(2), IndexCompression.UNCOMPRESSED) as w:
                w.add_bytes("a.txt", b"alpha", compressed=True)
                w.finalize()
            dst = base / "dst.xp3"
            header, index_set = repack_archive(str(src), str(dst))
            self.assertEqual(header, Header.current(2))
            self.assertEqual(index_set.compression, IndexCompression.UNCOMPRESSED)
            with ArchiveReader(str(dst)) as r:
                self.assertTrue(r.get("a.txt").segments[0].compressed)
                self.assertEqual(r.read("a.txt"), b"alpha")


if __name__ == "__main__":
    unittest.main()
