# Copyright Red Hat
#
# syncdirs/delta/extsort.py - External-memory record sort
#
# This file is part of the syncdirs project.
#
# SPDX-License-Identifier: Apache-2.0
"""
External-memory sorting of record streams.

Records are read in blocks that fit in memory, each block is sorted by
path and spilled to a temporary run file, and the runs are then combined
with a k-way heap merge. Peak memory is bounded by the block size during
the batch phase and by the number of runs during the merge phase.
"""
from typing import Iterable, Iterator, List, Optional
from contextlib import closing
from datetime import datetime
from operator import attrgetter
import heapq
import logging
import tempfile
import sys
import os

from syncdirs import (
    SYNCDIRS_SUBSYSTEM_SORT,
    SyncdirsResourceError,
    SyncdirsSystemError,
    get_available_memory,
    size_fmt,
)
from syncdirs.progress import ProgressFactory

from .options import SyncOptions
from .records import Record, read_records, write_records
from .snapshot import AtomicSnapshotWriter, compression_for_path, iter_snapshot

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_sort(msg, *args, **kwargs):
    """A wrapper for sort subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": SYNCDIRS_SUBSYSTEM_SORT}, **kwargs)


#: Block size used when available memory cannot be determined.
_DEFAULT_BLOCK_SIZE = 64 * 2**20

#: Approximate memory cost of a ``Record`` beyond its path string: the
#: tuple, the timestamp int and the list slot holding it.
_RECORD_OVERHEAD = 96

#: Ratio of in-memory record size to on-disk snapshot size, by compression.
_MEMORY_EXPANSION = {
    "none": 4,
    "gz": 40,
    "xz": 40,
    "zstd": 40,
}

_path_key = attrgetter("path")


def estimate_block_size(
    input_size: Optional[int], max_tmp_files: int, available_memory: int
) -> int:
    """
    Estimate the in-memory size of each sorted run.

    The input is divided into at most ``max_tmp_files`` blocks. If that
    gives blocks smaller than half of the available memory the block size
    is grown to half of the available memory, creating fewer and larger
    runs.

    :param input_size: Estimated in-memory size of the whole input in
                       bytes, or ``None`` if unknown.
    :type input_size: ``Optional[int]``
    :param max_tmp_files: The maximum number of runs to create.
    :type max_tmp_files: ``int``
    :param available_memory: Currently available memory in bytes (0 if
                             unknown).
    :type available_memory: ``int``
    :returns: The block size in bytes.
    :rtype: ``int``
    """
    block_size = 0
    if input_size:
        block_size = -(-input_size // max_tmp_files)

    floor_size = available_memory // 2 if available_memory else _DEFAULT_BLOCK_SIZE
    if block_size < floor_size:
        block_size = floor_size
    return block_size


def record_size(record: Record) -> int:
    """
    Estimate the memory used by ``record`` while buffered for sorting.

    :param record: The record to measure.
    :type record: ``Record``
    :rtype: ``int``
    """
    return sys.getsizeof(record.path) + _RECORD_OVERHEAD


def input_size_for_file(path: str) -> int:
    """
    Estimate the in-memory size of the records in snapshot file ``path``.

    :param path: The snapshot file.
    :type path: ``str``
    :rtype: ``int``
    """
    try:
        disk_size = os.path.getsize(path)
    except OSError as err:
        raise SyncdirsSystemError(f"Cannot stat sort input {path}: {err}") from err
    return disk_size * _MEMORY_EXPANSION[compression_for_path(path)]


def _remove_run(path: str):
    """
    Delete a run file. Failures are logged and otherwise ignored.

    :param path: The run file to delete.
    :type path: ``str``
    """
    try:
        os.unlink(path)
    except OSError as err:
        _log_error("Error removing temporary run file %s: %s", path, err)


class _RunFile:
    """
    Sequential reader over one sorted run with a one-record lookahead.
    """

    def __init__(self, path: str, index: int):
        """
        Open the run at ``path`` and load its first record.

        :param path: The run file path.
        :type path: ``str``
        :param index: The creation order of this run, used to break ties
                      between equal paths in different runs.
        :type index: ``int``
        """
        self.path: str = path
        self.index: int = index
        self.head: Optional[Record] = None
        try:
            # pylint: disable=consider-using-with
            self._stream = open(
                path, "r", encoding="utf-8", errors="surrogateescape", newline="\n"
            )
        except OSError as err:
            raise SyncdirsSystemError(f"Failed to open run file {path}: {err}") from err
        self._records = read_records(self._stream, name=path)
        try:
            self.advance()
        except BaseException:
            self._stream.close()
            raise

    def advance(self):
        """
        Replace ``head`` with the next record, or ``None`` at end of run.
        """
        try:
            self.head = next(self._records, None)
        except OSError as err:
            raise SyncdirsSystemError(f"Error reading run file {self.path}: {err}") from err

    def close(self):
        """Close the run file."""
        self._stream.close()


class ExternalSorter:
    """
    Sort record streams larger than memory using temporary sorted runs.

    An ``ExternalSorter`` owns no state between calls apart from the
    statistics of the most recent sort, so one instance may be reused.
    """

    def __init__(self, options: Optional[SyncOptions] = None):
        """
        Initialise a new ``ExternalSorter``.

        :param options: Options controlling block size, the maximum number
                        of temporary files and their location.
        :type options: ``Optional[SyncOptions]``
        """
        self.options: SyncOptions = options or SyncOptions()
        #: Number of runs created by the last batch phase.
        self.nr_runs: int = 0
        #: Number of records spilled by the last batch phase.
        self.nr_spilled: int = 0
        #: Number of records emitted by the last merge phase.
        self.nr_merged: int = 0

    def block_size_for(self, input_size: Optional[int]) -> int:
        """
        Return the block size to use for an input of ``input_size`` bytes.

        :param input_size: The estimated in-memory input size, or ``None``.
        :type input_size: ``Optional[int]``
        :rtype: ``int``
        """
        if self.options.block_size:
            return self.options.block_size
        return estimate_block_size(
            input_size, self.options.max_tmp_files, get_available_memory()
        )

    def _sort_and_save(self, block: List[Record]) -> str:
        """
        Sort ``block`` in place and write it to a new temporary run file.

        :param block: The records to sort and save.
        :type block: ``List[Record]``
        :returns: The path of the new run file.
        :rtype: ``str``
        """
        block.sort(key=_path_key)
        try:
            fd, path = tempfile.mkstemp(
                prefix="syncdirs-run-", suffix=".txt", dir=self.options.tmp_dir
            )
        except OSError as err:
            raise SyncdirsResourceError(
                f"Failed to create temporary run file: {err}"
            ) from err

        try:
            with os.fdopen(
                fd, "w", encoding="utf-8", errors="surrogateescape", newline="\n"
            ) as fp:
                write_records(fp, block)
        except OSError as err:
            _remove_run(path)
            raise SyncdirsSystemError(f"Error writing run file {path}: {err}") from err
        except BaseException:
            _remove_run(path)
            raise

        _log_debug_sort("Saved run %s with %d records", path, len(block))
        return path

    def sort_in_batch(
        self, records: Iterable[Record], input_size: Optional[int] = None
    ) -> List[str]:
        """
        Split ``records`` into sorted temporary run files.

        If an error occurs the runs created so far are deleted before the
        error is re-raised.

        :param records: The unsorted input records.
        :type records: ``Iterable[Record]``
        :param input_size: The estimated in-memory input size in bytes, or
                           ``None`` if unknown.
        :type input_size: ``Optional[int]``
        :returns: The run file paths, in creation order.
        :rtype: ``List[str]``
        """
        block_size = self.block_size_for(input_size)
        _log_debug_sort(
            "Starting batch phase (block size %s, input size %s)",
            size_fmt(block_size),
            size_fmt(input_size) if input_size else "unknown",
        )

        runs: List[str] = []
        block: List[Record] = []
        current_size = 0
        self.nr_spilled = 0
        try:
            for record in records:
                block.append(record)
                current_size += record_size(record)
                if current_size >= block_size:
                    runs.append(self._sort_and_save(block))
                    self.nr_spilled += len(block)
                    block.clear()
                    current_size = 0
            if block:
                runs.append(self._sort_and_save(block))
                self.nr_spilled += len(block)
                block.clear()
        except BaseException:
            for path in runs:
                _remove_run(path)
            raise

        self.nr_runs = len(runs)
        if self.nr_runs > self.options.max_tmp_files:
            _log_warn(
                "Sort created %d temporary files (limit %d): increase the block size",
                self.nr_runs,
                self.options.max_tmp_files,
            )
        _log_debug_sort(
            "Batch phase complete: %d records in %d runs", self.nr_spilled, self.nr_runs
        )
        return runs

    def merge_sorted_runs(self, runs: List[str], total: int = 0) -> Iterator[Record]:
        """
        Lazily merge sorted run files into one sorted record stream.

        Each run is deleted as soon as its last record has been emitted.
        Runs that remain when the merge ends early (error or the consumer
        closing the iterator) are closed and deleted.

        :param runs: The run file paths in creation order. Equal paths in
                     different runs are emitted in run order.
        :type runs: ``List[str]``
        :param total: The total number of records in all runs, for progress
                      reporting (0 to disable progress).
        :type total: ``int``
        :returns: An iterator over the merged records.
        :rtype: ``Iterator[Record]``
        """
        pending = list(runs)
        heap = []
        progress = ProgressFactory.get_progress(
            "Merging runs", quiet=self.options.quiet or not total
        )
        self.nr_merged = 0
        start_time = datetime.now()

        def _finish(run: _RunFile):
            run.close()
            pending.remove(run.path)
            _remove_run(run.path)

        try:
            for index, path in enumerate(runs):
                run = _RunFile(path, index)
                if run.head is None:
                    _finish(run)
                    continue
                heap.append((run.head.path, run.index, run))
            heapq.heapify(heap)

            if total:
                progress.start(total)

            while heap:
                _, _, run = heap[0]
                record = run.head
                run.advance()
                if run.head is None:
                    heapq.heappop(heap)
                    _finish(run)
                else:
                    heapq.heapreplace(heap, (run.head.path, run.index, run))
                self.nr_merged += 1
                if total:
                    progress.progress(min(self.nr_merged, total))
                yield record

            if total:
                progress.end(
                    f"Merged {self.nr_merged} records from {len(runs)} runs "
                    f"in {datetime.now() - start_time}"
                )
        finally:
            if progress.total:
                progress.cancel()
            for _, _, run in heap:
                run.close()
            for path in pending:
                _remove_run(path)

    def sort(
        self, records: Iterable[Record], input_size: Optional[int] = None
    ) -> Iterator[Record]:
        """
        Lazily sort ``records`` by path.

        The output is identical to a stable in-memory sort of the whole
        input regardless of the block size.

        :param records: The unsorted input records.
        :type records: ``Iterable[Record]``
        :param input_size: The estimated in-memory input size in bytes, or
                           ``None`` if unknown.
        :type input_size: ``Optional[int]``
        :returns: An iterator over the sorted records.
        :rtype: ``Iterator[Record]``
        """
        runs = self.sort_in_batch(records, input_size=input_size)
        yield from self.merge_sorted_runs(runs, total=self.nr_spilled)

    def sort_file(self, input_path: str, output_path: str) -> int:
        """
        Sort the snapshot file ``input_path`` into ``output_path``.

        The output is written to a temporary file and renamed into place
        when complete, so ``input_path`` and ``output_path`` may be the same
        file.

        :param input_path: The unsorted snapshot file.
        :type input_path: ``str``
        :param output_path: The sorted snapshot file to write.
        :type output_path: ``str``
        :returns: The number of records sorted.
        :rtype: ``int``
        """
        start_time = datetime.now()
        input_size = input_size_for_file(input_path)
        with closing(iter_snapshot(input_path)) as records:
            with AtomicSnapshotWriter(output_path) as writer:
                count = writer.write_records(self.sort(records, input_size=input_size))
        _log_info(
            "Sorted %d records from %s into %s using %d runs in %s",
            count,
            input_path,
            output_path,
            self.nr_runs,
            datetime.now() - start_time,
        )
        return count


__all__ = [
    "ExternalSorter",
    "estimate_block_size",
    "input_size_for_file",
    "record_size",
]
