# Copyright Red Hat
#
# syncdirs/delta/treewalk.py - Directory sync tree walk
#
# This file is part of the syncdirs project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Tree walking support for snapshots.

The walk uses an explicit stack of open directories rather than recursion
and yields records lazily. Emission is post-order: a directory's record
is yielded after the records of everything below it. The order of entries
within a directory is whatever the file system returns; snapshots are
sorted afterwards.
"""
from typing import Iterator, List, Optional, Set, Tuple
from fnmatch import fnmatch
from datetime import datetime
import logging
import stat
import os

from syncdirs import SYNCDIRS_SUBSYSTEM_WALK, SyncdirsFilesystemError
from syncdirs.progress import ProgressFactory

from .options import SyncOptions
from .records import Record, is_valid_path

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_walk(msg, *args, **kwargs):
    """A wrapper for walk subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": SYNCDIRS_SUBSYSTEM_WALK}, **kwargs)


#: Timestamp recorded for directories when directory timestamps are disabled.
DIR_SENTINEL_TIMESTAMP = 0

_NSECS_PER_SEC = 10**9


def mtime_seconds(st: os.stat_result) -> int:
    """
    Return the modification time of ``st`` in whole seconds since the epoch.

    Times before the epoch are clamped to 0.

    :param st: The stat result.
    :type st: ``os.stat_result``
    :rtype: ``int``
    """
    return max(0, st.st_mtime_ns // _NSECS_PER_SEC)


class _DirFrame:
    """
    One directory on the walk stack.
    """

    def __init__(
        self, rel_path: str, entries: List[os.DirEntry], record: Optional[Record]
    ):
        #: Path relative to the walk root ("" for the root itself)
        self.rel_path = rel_path
        #: Remaining entries of this directory
        self.entries = iter(entries)
        #: The directory's own record, emitted when the frame is popped
        self.record = record


class TreeWalker:
    """
    Produce the unordered record stream for a directory tree.
    """

    def __init__(self, options: Optional[SyncOptions] = None):
        """
        Initialise a new ``TreeWalker`` object.

        :param options: Options to control this ``TreeWalker`` instance.
        :type options: ``Optional[SyncOptions]``
        """
        self.options: SyncOptions = options or SyncOptions()
        self.exclude_patterns: Tuple[str, ...] = self.options.exclude_patterns or ()
        #: Records produced by the last walk.
        self.nr_records: int = 0
        #: Paths excluded by pattern or skipped as unrepresentable.
        self.nr_excluded: int = 0
        #: Directories whose contents could not be listed.
        self.nr_skipped: int = 0

    def _scan(self, path: str) -> Optional[List[os.DirEntry]]:
        """
        List the directory at ``path``.

        :param path: The directory to list.
        :type path: ``str``
        :returns: The directory entries, or ``None`` if it cannot be read.
        :rtype: ``Optional[List[os.DirEntry]]``
        """
        try:
            with os.scandir(path) as it:
                return list(it)
        except OSError as err:
            _log_warn("Skipping unreadable directory %s: %s", path, err)
            self.nr_skipped += 1
            return None

    def _excluded(self, rel_path: str) -> bool:
        if any(fnmatch(rel_path, pat) for pat in self.exclude_patterns):
            _log_debug_walk("Excluding path '%s'", rel_path)
            return True
        if not is_valid_path(rel_path):
            _log_warn("Skipping path that cannot be recorded: %r", rel_path)
            return True
        return False

    def _stat(self, entry: os.DirEntry) -> Optional[os.stat_result]:
        follow_symlinks = self.options.follow_symlinks
        try:
            return entry.stat(follow_symlinks=follow_symlinks)
        except FileNotFoundError:
            if follow_symlinks and entry.is_symlink():
                _log_debug_walk("Found dangling symbolic link '%s'", entry.path)
                try:
                    return entry.stat(follow_symlinks=False)
                except OSError:
                    pass
            # Path vanished between listing and stat; skip it.
            return None
        except OSError as err:
            _log_warn("Cannot stat %s: %s", entry.path, err)
            return None

    # pylint: disable=too-many-branches
    def walk(self, root: str) -> Iterator[Record]:
        """
        Walk the tree below ``root`` and yield a record for every file and
        directory in it (the root itself is not recorded).

        Unreadable directories are recorded but their contents are skipped
        with a warning.

        :param root: The directory to walk.
        :type root: ``str``
        :returns: A lazy, single-pass iterator over the tree's records.
        :rtype: ``Iterator[Record]``
        :raises SyncdirsFilesystemError: If ``root`` is not a readable
                                         directory.
        """
        root = os.path.abspath(root)
        try:
            root_stat = os.stat(root)
        except OSError as err:
            raise SyncdirsFilesystemError(f"Cannot access {root}: {err}") from err
        if not stat.S_ISDIR(root_stat.st_mode):
            raise SyncdirsFilesystemError(f"{root} is not a directory")

        root_entries = self._scan(root)
        if root_entries is None:
            raise SyncdirsFilesystemError(f"Cannot read directory {root}")

        _log_info("Walking %s", root)
        self.nr_records = self.nr_excluded = self.nr_skipped = 0

        dir_timestamps = self.options.dir_timestamps
        follow_symlinks = self.options.follow_symlinks
        visited: Set[Tuple[int, int]] = {(root_stat.st_dev, root_stat.st_ino)}
        stack = [_DirFrame("", root_entries, None)]

        throbber = ProgressFactory.get_throbber(
            f"Walking {root}", quiet=self.options.quiet
        )
        start_time = datetime.now()
        throbber.start()
        message = "Quit!"
        try:
            while stack:
                frame = stack[-1]
                entry = next(frame.entries, None)
                if entry is None:
                    stack.pop()
                    if frame.record is not None:
                        self.nr_records += 1
                        yield frame.record
                    continue

                rel_path = f"{frame.rel_path}/{entry.name}" if frame.rel_path else entry.name
                if self._excluded(rel_path):
                    self.nr_excluded += 1
                    continue

                entry_stat = self._stat(entry)
                if entry_stat is None:
                    continue

                throbber.throb()
                if not stat.S_ISDIR(entry_stat.st_mode):
                    self.nr_records += 1
                    yield Record(rel_path, mtime_seconds(entry_stat))
                    continue

                record = Record(
                    rel_path,
                    mtime_seconds(entry_stat) if dir_timestamps else DIR_SENTINEL_TIMESTAMP,
                )
                key = (entry_stat.st_dev, entry_stat.st_ino)
                if follow_symlinks and key in visited:
                    _log_warn("Not descending into already visited directory %s", entry.path)
                    entries = []
                else:
                    entries = self._scan(entry.path) or []
                    visited.add(key)
                stack.append(_DirFrame(rel_path, entries, record))
            message = f"found {self.nr_records} paths"
        finally:
            throbber.end(message)

        _log_info(
            "Walked %s: %d paths in %s (excluded %d, unreadable directories %d)",
            root,
            self.nr_records,
            datetime.now() - start_time,
            self.nr_excluded,
            self.nr_skipped,
        )


__all__ = [
    "DIR_SENTINEL_TIMESTAMP",
    "TreeWalker",
    "mtime_seconds",
]
