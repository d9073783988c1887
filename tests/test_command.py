# Copyright Red Hat
#
# tests/test_command.py - CLI layer tests
#
# This file is part of the syncdirs project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
from unittest.mock import patch
from io import StringIO
import tempfile
import logging
import os

log = logging.getLogger()

import syncdirs
import syncdirs.command as command
from syncdirs.delta.records import Record
from syncdirs.delta.snapshot import iter_snapshot

from tests import MockArgs
from tests.delta._util import make_file, read_plain_snapshot, write_plain_snapshot


class CommandTestsBase(unittest.TestCase):
    def get_main_args(self):
        """
        Return an argument array (in the form of sys.argv) reflecting the
        ``syncdirs`` command.

        :returns: A list of command arguments.
        """
        return ["syncdirs"]

    def get_debug_main_args(self):
        """
        Return an argument array (in the form of sys.argv) reflecting the
        ``syncdirs`` command, with verbose logging and debug enabled.

        :returns: A list of command arguments.
        """
        return self.get_main_args() + ["-vv", "--debug=all"]

    def run_main(self, args):
        """
        Run ``command.main()`` and return ``(status, stdout)``.
        """
        with patch("sys.stdout", new_callable=StringIO) as stdout:
            status = command.main(args)
        return status, stdout.getvalue()


class CommandTestsSimple(CommandTestsBase):
    """
    Test command interfaces
    """

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        self._root = tempfile.TemporaryDirectory()
        self._state = tempfile.TemporaryDirectory()
        self.root = self._root.name
        self.state = self._state.name
        make_file(self.root, "a.txt", 100)
        make_file(self.root, "dir/b.txt", 100)

    def tearDown(self):
        log.debug("Tearing down (%s)", self._testMethodName)
        self._root.cleanup()
        self._state.cleanup()
        syncdirs.set_debug_mask(0)

    def test_set_debug(self):
        command.set_debug("walk,sort")
        self.assertEqual(
            syncdirs.get_debug_mask(),
            syncdirs.SYNCDIRS_DEBUG_WALK | syncdirs.SYNCDIRS_DEBUG_SORT,
        )
        command.set_debug(None)

    def test_set_debug_bad_option(self):
        with self.assertRaises(ValueError):
            command.set_debug("walk,bogus")

    def test_setup_logging(self):
        args = MockArgs()
        args.verbose = 2
        command.setup_logging(args)
        syncdirs_log = logging.getLogger("syncdirs")
        self.assertEqual(syncdirs_log.level, logging.DEBUG)
        self.assertEqual(len(syncdirs_log.handlers), 1)
        self.assertIsInstance(syncdirs_log.handlers[0], syncdirs.ProgressAwareHandler)

    def test_scan_tree(self):
        baseline = os.path.join(self.state, "lastsync.txt")
        summary = command.scan_tree(self.root, baseline=baseline)
        self.assertEqual(summary.records, 3)
        self.assertEqual(len(read_plain_snapshot(baseline)), 3)

    def test_main_scan(self):
        baseline = os.path.join(self.state, "lastsync.txt")
        args = self.get_main_args() + ["scan", self.root, "-b", baseline, "-q"]
        status, output = self.run_main(args)
        self.assertEqual(status, 0)
        lines = output.splitlines()
        self.assertEqual(lines[:3], ["add\ta.txt\t100", "add\tdir\t0", "add\tdir/b.txt\t100"])
        self.assertTrue(lines[3].startswith("Time (ms): "))
        self.assertEqual(lines[4], "Records: 3")

        # Second run: no changes
        status, output = self.run_main(args)
        self.assertEqual(status, 0)
        self.assertTrue(output.startswith("Time (ms): "))

    def test_main_scan_route_no_report(self):
        baseline = os.path.join(self.state, "lastsync.txt")
        write_plain_snapshot(baseline, [Record("a.txt", 50), Record("old", 7)])
        route_dir = os.path.join(self.state, "route")
        args = self.get_main_args() + [
            "scan",
            self.root,
            "-b",
            baseline,
            "-r",
            route_dir,
            "--compression",
            "none",
            "-n",
            "-q",
            "--block-size",
            "1K",
            "-e",
            "dir",
        ]
        status, output = self.run_main(args)
        self.assertEqual(status, 0)
        self.assertNotIn("a.txt", output)
        self.assertIn("Records: 1", output)
        self.assertEqual(
            read_plain_snapshot(os.path.join(route_dir, "modified")), [Record("a.txt", 100)]
        )
        self.assertEqual(
            read_plain_snapshot(os.path.join(route_dir, "deleted")), [Record("old", 7)]
        )

    def test_main_scan_debug(self):
        args = self.get_debug_main_args() + ["scan", self.root, "-q"]
        status, _ = self.run_main(args)
        self.assertEqual(status, 0)

    def test_main_scan_missing_root(self):
        args = self.get_main_args() + ["scan", os.path.join(self.root, "nope"), "-q"]
        with self.assertLogs("syncdirs.command", level="ERROR") as cm:
            status, _ = self.run_main(args)
        self.assertEqual(status, 1)
        self.assertIn("Command failed", cm.output[0])

    def test_main_sort(self):
        path = os.path.join(self.state, "snap.txt")
        write_plain_snapshot(path, [Record("c", 3), Record("a", 1), Record("b", 2)])
        args = self.get_main_args() + ["sort", path, path, "-q", "--tmp-dir", self.state]
        status, output = self.run_main(args)
        self.assertEqual(status, 0)
        self.assertIn("Records: 3", output)
        self.assertEqual(
            read_plain_snapshot(path), [Record("a", 1), Record("b", 2), Record("c", 3)]
        )

    def test_main_diff(self):
        previous = os.path.join(self.state, "previous.txt")
        current = os.path.join(self.state, "current.txt")
        write_plain_snapshot(previous, [Record("x", 1), Record("y", 1)])
        write_plain_snapshot(current, [Record("y", 2)])
        args = self.get_main_args() + ["diff", previous, current, "-q"]
        status, output = self.run_main(args)
        self.assertEqual(status, 0)
        self.assertEqual(output.splitlines()[:2], ["del\tx\t1", "mod\ty\t2"])
        self.assertIn("Records: 1", output)

    def test_main_diff_unsorted(self):
        previous = os.path.join(self.state, "previous.txt")
        current = os.path.join(self.state, "current.txt")
        write_plain_snapshot(previous, [])
        write_plain_snapshot(current, [Record("b", 1), Record("a", 1)])
        args = self.get_main_args() + ["diff", previous, current, "-q", "-n"]
        status, _ = self.run_main(args)
        self.assertEqual(status, 1)

    def test_main_diff_same_file(self):
        path = os.path.join(self.state, "snap.txt")
        write_plain_snapshot(path, [])
        status, _ = self.run_main(self.get_main_args() + ["diff", path, path])
        self.assertEqual(status, 1)

    def test_main_bad_debug(self):
        status, output = self.run_main(self.get_main_args() + ["-d", "bogus", "scan", "."])
        self.assertEqual(status, 1)
        self.assertIn("Unknown debug option", output)

    def test_main_no_command(self):
        status, _ = self.run_main(self.get_main_args())
        self.assertEqual(status, 1)

    def test_main_bad_block_size(self):
        args = self.get_main_args() + ["scan", self.root, "-q", "--block-size", "huge"]
        status, _ = self.run_main(args)
        self.assertEqual(status, 1)

    def test_main_scan_undecodable_name(self):
        name = b"caf\xe9".decode("utf-8", errors="surrogateescape")
        make_file(self.root, name, 300)
        baseline = os.path.join(self.state, "lastsync.gz")
        args = self.get_main_args() + ["scan", self.root, "-b", baseline, "-q"]
        status, output = self.run_main(args)
        self.assertEqual(status, 0)
        self.assertIn("add\tcaf\\udce9\t300", output)
        self.assertIn(Record(name, 300), list(iter_snapshot(baseline)))
