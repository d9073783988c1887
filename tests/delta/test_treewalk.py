# Copyright Red Hat
#
# tests/delta/test_treewalk.py - Tree walker tests.
#
# This file is part of the syncdirs project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
from unittest.mock import patch
import tempfile
import os

from syncdirs import SyncdirsFilesystemError
from syncdirs.delta.options import SyncOptions
from syncdirs.delta.records import Record
from syncdirs.delta.treewalk import DIR_SENTINEL_TIMESTAMP, TreeWalker, mtime_seconds

from ._util import make_file

_real_scandir = os.scandir


class TestMtimeSeconds(unittest.TestCase):
    def test_truncates_to_seconds(self):
        with tempfile.NamedTemporaryFile() as tmp:
            os.utime(tmp.name, ns=(1_500_000_000_999_999_999, 1_500_000_000_999_999_999))
            st = os.stat(tmp.name)
        self.assertEqual(mtime_seconds(st), 1_500_000_000)


class TestTreeWalker(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = self._tmp.name
        make_file(self.root, "a.txt", 100)
        make_file(self.root, "dir/b.txt", 200)
        make_file(self.root, "dir/sub/c.txt", 300)
        os.utime(os.path.join(self.root, "dir/sub"), (400, 400))
        os.utime(os.path.join(self.root, "dir"), (500, 500))

    def tearDown(self):
        self._tmp.cleanup()

    def _walk(self, **kwargs):
        walker = TreeWalker(SyncOptions(quiet=True, **kwargs))
        return walker, list(walker.walk(self.root))

    def test_walk_records(self):
        walker, records = self._walk()
        self.assertEqual(
            sorted(records),
            [
                Record("a.txt", 100),
                Record("dir", DIR_SENTINEL_TIMESTAMP),
                Record("dir/b.txt", 200),
                Record("dir/sub", DIR_SENTINEL_TIMESTAMP),
                Record("dir/sub/c.txt", 300),
            ],
        )
        self.assertEqual(walker.nr_records, 5)

    def test_walk_is_post_order(self):
        _, records = self._walk()
        order = [r.path for r in records]
        self.assertLess(order.index("dir/sub/c.txt"), order.index("dir/sub"))
        self.assertLess(order.index("dir/sub"), order.index("dir"))
        self.assertLess(order.index("dir/b.txt"), order.index("dir"))

    def test_walk_dir_timestamps(self):
        _, records = self._walk(dir_timestamps=True)
        records = dict(records)
        self.assertEqual(records["dir"], 500)
        self.assertEqual(records["dir/sub"], 400)

    def test_walk_excludes(self):
        walker, records = self._walk(exclude_patterns=("dir/sub", "*.txt"))
        self.assertEqual(records, [Record("dir", DIR_SENTINEL_TIMESTAMP)])
        self.assertEqual(walker.nr_excluded, 3)

    def test_walk_is_lazy(self):
        walker = TreeWalker(SyncOptions(quiet=True))
        records = walker.walk(self.root)
        self.assertIsInstance(next(records), Record)
        records.close()

    def test_walk_empty_root(self):
        with tempfile.TemporaryDirectory() as empty:
            walker = TreeWalker(SyncOptions(quiet=True))
            self.assertEqual(list(walker.walk(empty)), [])

    def test_walk_missing_root(self):
        walker = TreeWalker(SyncOptions(quiet=True))
        with self.assertRaises(SyncdirsFilesystemError):
            list(walker.walk(os.path.join(self.root, "missing")))

    def test_walk_root_not_directory(self):
        walker = TreeWalker(SyncOptions(quiet=True))
        with self.assertRaises(SyncdirsFilesystemError):
            list(walker.walk(os.path.join(self.root, "a.txt")))

    def test_walk_skips_unrepresentable_names(self):
        make_file(self.root, "bad\tname", 1)
        with self.assertLogs("syncdirs.delta.treewalk", level="WARNING"):
            walker, records = self._walk()
        self.assertNotIn("bad\tname", [r.path for r in records])
        self.assertEqual(walker.nr_excluded, 1)

    def test_walk_unreadable_directory(self):
        blocked = os.path.join(self.root, "dir", "sub")

        def fake_scandir(path):
            if path == blocked:
                raise PermissionError(13, "Permission denied", path)
            return _real_scandir(path)

        with patch("syncdirs.delta.treewalk.os.scandir", side_effect=fake_scandir):
            with self.assertLogs("syncdirs.delta.treewalk", level="WARNING"):
                walker, records = self._walk()
        paths = [r.path for r in records]
        self.assertIn("dir/sub", paths)
        self.assertNotIn("dir/sub/c.txt", paths)
        self.assertEqual(walker.nr_skipped, 1)

    def test_walk_symlinks_not_followed(self):
        os.symlink("dir", os.path.join(self.root, "link"))
        link_mtime = mtime_seconds(os.lstat(os.path.join(self.root, "link")))
        _, records = self._walk()
        records = dict(records)
        self.assertEqual(records["link"], link_mtime)
        self.assertNotIn("link/b.txt", records)

    def test_walk_symlinks_followed(self):
        os.symlink("dir", os.path.join(self.root, "link"))
        os.symlink("missing", os.path.join(self.root, "dangling"))
        _, records = self._walk(follow_symlinks=True)
        paths = [r.path for r in records]
        # Each directory is only descended into once.
        self.assertEqual(
            len([p for p in paths if p.endswith("/b.txt")]), 1
        )
        self.assertIn("dangling", paths)
        self.assertIn("link", paths)

    def test_walk_symlink_loop(self):
        os.symlink("..", os.path.join(self.root, "dir", "up"))
        _, records = self._walk(follow_symlinks=True)
        paths = [r.path for r in records]
        self.assertIn("dir/up", paths)
        self.assertNotIn("dir/up/a.txt", paths)
