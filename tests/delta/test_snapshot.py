# Copyright Red Hat
#
# tests/delta/test_snapshot.py - Snapshot file and store tests.
#
# This file is part of the syncdirs project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
import tempfile
import gzip
import lzma
import stat
import os

from syncdirs import (
    SyncdirsArgumentError,
    SyncdirsError,
    SyncdirsNotFoundError,
    SyncdirsResourceError,
    SyncdirsSystemError,
)
from syncdirs.delta.records import Record
from syncdirs.delta.snapshot import (
    _HAVE_ZSTD,
    AtomicSnapshotWriter,
    SnapshotStore,
    SnapshotWriter,
    compression_for_path,
    default_compression,
    iter_snapshot,
    open_snapshot,
    route_paths,
    snapshot_extension,
)

from ._util import write_plain_snapshot

RECORDS = [Record("a", 10), Record("a/b", 20), Record("c", 0)]


class TestCompressionNames(unittest.TestCase):
    def test_compression_for_path(self):
        self.assertEqual(compression_for_path("snap.zst"), "zstd")
        self.assertEqual(compression_for_path("snap.xz"), "xz")
        self.assertEqual(compression_for_path("lastsync.gz"), "gz")
        self.assertEqual(compression_for_path("snap.txt"), "none")
        self.assertEqual(compression_for_path("snap"), "none")

    def test_snapshot_extension(self):
        self.assertEqual(snapshot_extension("zstd"), ".zst")
        self.assertEqual(snapshot_extension("none"), "")
        with self.assertRaises(SyncdirsArgumentError):
            snapshot_extension("bzip2")

    def test_default_compression(self):
        self.assertEqual(default_compression(), "zstd" if _HAVE_ZSTD else "xz")

    def test_route_paths(self):
        to_first, to_second = route_paths("/out", "gz")
        self.assertEqual(to_first, "/out/modified.gz")
        self.assertEqual(to_second, "/out/deleted.gz")

    def test_open_snapshot_bad_mode(self):
        with self.assertRaises(SyncdirsArgumentError):
            open_snapshot("snap.txt", "a")


class TestSnapshotFiles(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmpdir = self._tmp.name

    def tearDown(self):
        self._tmp.cleanup()

    def _roundtrip(self, name):
        path = os.path.join(self.tmpdir, name)
        with SnapshotWriter(path) as writer:
            self.assertEqual(writer.write_records(RECORDS), 3)
        self.assertTrue(writer.closed)
        self.assertEqual(list(iter_snapshot(path)), RECORDS)
        return path

    def test_plain_snapshot(self):
        path = self._roundtrip("snap.txt")
        with open(path, "r", encoding="utf-8") as fp:
            self.assertEqual(fp.read(), "a\t10\na/b\t20\nc\t0\n")

    def test_gzip_snapshot(self):
        path = self._roundtrip("lastsync.gz")
        with gzip.open(path, "rt", encoding="utf-8") as fp:
            self.assertEqual(fp.readline(), "a\t10\n")

    def test_xz_snapshot(self):
        path = self._roundtrip("snap.xz")
        with lzma.open(path, "rt", encoding="utf-8") as fp:
            self.assertEqual(fp.readline(), "a\t10\n")

    @unittest.skipIf(not _HAVE_ZSTD, "zstandard not available")
    def test_zstd_snapshot(self):
        self._roundtrip("snap.zst")

    def test_explicit_compression_overrides_extension(self):
        path = os.path.join(self.tmpdir, "snap.dat")
        with SnapshotWriter(path, compression="gz") as writer:
            writer.write_records(RECORDS)
        self.assertEqual(list(iter_snapshot(path, compression="gz")), RECORDS)

    def test_undecodable_names_round_trip(self):
        name = b"caf\xe9".decode("utf-8", errors="surrogateescape")
        path = os.path.join(self.tmpdir, "snap.txt")
        with SnapshotWriter(path) as writer:
            writer.write(Record(name, 1))
        self.assertEqual(list(iter_snapshot(path)), [Record(name, 1)])

    def test_iter_snapshot_missing(self):
        path = os.path.join(self.tmpdir, "nope.txt")
        with self.assertRaises(SyncdirsNotFoundError):
            list(iter_snapshot(path))
        self.assertEqual(list(iter_snapshot(path, missing_ok=True)), [])

    def test_iter_snapshot_corrupt(self):
        path = os.path.join(self.tmpdir, "bad.gz")
        with open(path, "wb") as fp:
            fp.write(b"this is not gzip data")
        with self.assertRaises(SyncdirsSystemError):
            list(iter_snapshot(path))

    def test_iter_snapshot_corrupt_body(self):
        path = os.path.join(self.tmpdir, "bad.gz")
        lines = "".join(f"dir{i % 7}/file{i * 7919}\t{i * 31}\n" for i in range(2000))
        data = bytearray(gzip.compress(lines.encode("utf-8")))
        for i in range(20, 200):
            data[i] ^= 0xFF
        with open(path, "wb") as fp:
            fp.write(bytes(data))
        with self.assertRaises(SyncdirsSystemError):
            list(iter_snapshot(path))

    def test_write_after_close(self):
        path = os.path.join(self.tmpdir, "snap.txt")
        writer = SnapshotWriter(path)
        writer.close()
        writer.close()
        with self.assertRaises(SyncdirsSystemError):
            writer.write(Record("a", 1))

    def test_writer_bad_directory(self):
        with self.assertRaises(SyncdirsSystemError):
            SnapshotWriter(os.path.join(self.tmpdir, "missing", "snap.txt"))


class TestAtomicSnapshotWriter(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmpdir = self._tmp.name
        self.path = os.path.join(self.tmpdir, "baseline.txt")
        write_plain_snapshot(self.path, [Record("old", 1)])

    def tearDown(self):
        self._tmp.cleanup()

    def test_commit_replaces(self):
        writer = AtomicSnapshotWriter(self.path)
        writer.write_records(RECORDS)
        # Destination untouched until commit.
        self.assertEqual(list(iter_snapshot(self.path)), [Record("old", 1)])
        writer.commit()
        self.assertTrue(writer.committed)
        self.assertFalse(os.path.exists(writer.temp_path))
        self.assertEqual(list(iter_snapshot(self.path)), RECORDS)

    def test_commit_keeps_destination_mode(self):
        os.chmod(self.path, 0o640)
        with AtomicSnapshotWriter(self.path) as writer:
            writer.write_records(RECORDS)
        self.assertEqual(stat.S_IMODE(os.stat(self.path).st_mode), 0o640)

    def test_commit_new_file_mode(self):
        path = os.path.join(self.tmpdir, "new.txt")
        with AtomicSnapshotWriter(path) as writer:
            writer.write_records(RECORDS)
        self.assertEqual(stat.S_IMODE(os.stat(path).st_mode), 0o644)

    def test_abort_leaves_destination(self):
        writer = AtomicSnapshotWriter(self.path)
        writer.write_records(RECORDS)
        writer.abort()
        self.assertFalse(os.path.exists(writer.temp_path))
        self.assertEqual(list(iter_snapshot(self.path)), [Record("old", 1)])
        self.assertEqual(os.listdir(self.tmpdir), ["baseline.txt"])

    def test_context_manager_aborts_on_error(self):
        with self.assertRaises(SyncdirsError):
            with AtomicSnapshotWriter(self.path) as writer:
                writer.write(Record("new", 2))
                raise SyncdirsError("boom")
        self.assertEqual(list(iter_snapshot(self.path)), [Record("old", 1)])
        self.assertEqual(os.listdir(self.tmpdir), ["baseline.txt"])

    def test_context_manager_commits(self):
        with AtomicSnapshotWriter(self.path) as writer:
            writer.write(Record("new", 2))
        self.assertEqual(list(iter_snapshot(self.path)), [Record("new", 2)])

    def test_temp_dir_missing(self):
        with self.assertRaises(SyncdirsResourceError):
            AtomicSnapshotWriter(os.path.join(self.tmpdir, "missing", "snap.txt"))


class TestSnapshotStore(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmpdir = self._tmp.name

    def tearDown(self):
        self._tmp.cleanup()

    def test_store_first_run(self):
        store = SnapshotStore(os.path.join(self.tmpdir, "lastsync.gz"))
        self.assertFalse(store.exists)
        self.assertEqual(store.compression, "gz")
        self.assertEqual(list(store.records()), [])

    def test_store_new_snapshot(self):
        store = SnapshotStore(os.path.join(self.tmpdir, "lastsync.gz"))
        with store.new_snapshot() as writer:
            writer.write_records(RECORDS)
        self.assertTrue(store.exists)
        self.assertEqual(list(store.records()), RECORDS)
        self.assertIn("lastsync.gz", repr(store))
