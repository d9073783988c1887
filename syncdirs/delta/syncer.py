# Copyright Red Hat
#
# syncdirs/delta/syncer.py - Directory sync top-level interface
#
# This file is part of the syncdirs project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Top-level synchronisation interface.

A ``Syncer`` drives the whole pipeline: walk a tree, sort the walk output
externally, compare it with the stored baseline and replace the baseline
with the new snapshot.
"""
from typing import Any, Dict, Iterable, Iterator, List, Optional
from dataclasses import dataclass, field
from contextlib import closing
from datetime import datetime, timedelta
import logging
import os

from syncdirs import SyncdirsFilesystemError

from .engine import DeltaStats, DiffEngine
from .extsort import ExternalSorter
from .options import SyncOptions
from .records import Record
from .sinks import DeltaSink, MultiSink, RouteSink
from .treewalk import TreeWalker
from .snapshot import (
    AtomicSnapshotWriter,
    SnapshotStore,
    SnapshotWriter,
    iter_snapshot,
    route_paths,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _no_records() -> Iterator[Record]:
    """The empty snapshot."""
    yield from ()


def _save_records(records: Iterable[Record], writer: SnapshotWriter) -> Iterator[Record]:
    """
    Pass ``records`` through unchanged, writing each one to ``writer``.
    """
    for record in records:
        writer.write(record)
        yield record


@dataclass
class SyncSummary:
    """
    The outcome of one synchronisation or snapshot comparison.
    """

    #: Records in the current snapshot
    records: int = 0
    #: Delta statistics
    stats: DeltaStats = field(default_factory=DeltaStats)
    #: Wall clock time taken
    elapsed: timedelta = field(default_factory=timedelta)

    @property
    def elapsed_ms(self) -> int:
        """The elapsed time in whole milliseconds."""
        return int(self.elapsed.total_seconds() * 1000)

    def __str__(self) -> str:
        return f"Time (ms): {self.elapsed_ms}\nRecords: {self.records}"

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert this summary into a dictionary.

        :rtype: ``Dict[str, Any]``
        """
        return {
            "records": self.records,
            "elapsed_ms": self.elapsed_ms,
            "stats": self.stats.to_dict(),
        }


class Syncer:
    """
    Top-level interface for snapshotting trees and computing deltas.
    """

    def __init__(self, options: Optional[SyncOptions] = None):
        """
        Initialise a new ``Syncer``.

        :param options: Options to control this ``Syncer`` instance.
        :type options: ``Optional[SyncOptions]``
        """
        options = options or SyncOptions()
        self.options: SyncOptions = options
        self.tree_walker: TreeWalker = TreeWalker(options)
        self.sorter: ExternalSorter = ExternalSorter(options)
        self.diff_engine: DiffEngine = DiffEngine()

    def _route_sink(self, route_dir: str) -> RouteSink:
        """
        Create a ``RouteSink`` writing the routed snapshots in ``route_dir``.
        """
        try:
            os.makedirs(route_dir, exist_ok=True)
        except OSError as err:
            raise SyncdirsFilesystemError(
                f"Cannot create route directory {route_dir}: {err}"
            ) from err
        to_first_path, to_second_path = route_paths(route_dir, self.options.compression)
        to_first = AtomicSnapshotWriter(to_first_path)
        try:
            to_second = AtomicSnapshotWriter(to_second_path)
        except BaseException:
            to_first.abort()
            raise
        return RouteSink(to_first, to_second)

    def _delta(
        self,
        previous: Iterable[Record],
        current: Iterable[Record],
        sink: Optional[DeltaSink],
        route_dir: Optional[str],
        new_baseline: Optional[AtomicSnapshotWriter] = None,
    ) -> DeltaStats:
        """
        Run the diff into ``sink`` and the routed outputs, then commit every
        output file. The new baseline, if any, is committed last. On error
        all uncommitted outputs are discarded.
        """
        outputs: List[AtomicSnapshotWriter] = []
        try:
            sinks = [sink] if sink is not None else []
            route_sink = None
            if route_dir:
                route_sink = self._route_sink(route_dir)
                outputs.extend((route_sink.to_first, route_sink.to_second))
                sinks.append(route_sink)
            if new_baseline is not None:
                outputs.append(new_baseline)

            stats = self.diff_engine.compute_delta(previous, current, MultiSink(*sinks))

            if route_sink is not None:
                route_sink.close()
            for output in outputs:
                output.commit()
        except BaseException:
            for output in outputs:
                output.abort()
            raise
        return stats

    def sync(
        self,
        root: str,
        baseline: Optional[str] = None,
        sink: Optional[DeltaSink] = None,
        route_dir: Optional[str] = None,
    ) -> SyncSummary:
        """
        Snapshot ``root`` and compare it with the stored baseline.

        The delta is emitted to ``sink`` (which is not closed) and, when
        ``route_dir`` is given, routed into the two output snapshots in that
        directory. On success the baseline is atomically replaced by the new
        snapshot. Without a baseline every path is reported as added and
        the new snapshot is discarded.

        :param root: The directory tree to snapshot.
        :type root: ``str``
        :param baseline: The baseline snapshot file (need not exist).
        :type baseline: ``Optional[str]``
        :param sink: The sink to receive delta events.
        :type sink: ``Optional[DeltaSink]``
        :param route_dir: Directory for routed output snapshots.
        :type route_dir: ``Optional[str]``
        :returns: A summary of the run.
        :rtype: ``SyncSummary``
        """
        start_time = datetime.now()
        _log_info(
            "Synchronising %s (baseline=%s, route_dir=%s)", root, baseline, route_dir
        )
        store = SnapshotStore(baseline) if baseline else None
        new_baseline = store.new_snapshot() if store else None

        try:
            with closing(self.sorter.sort(self.tree_walker.walk(root))) as current:
                if store is not None:
                    previous = store.records()
                    current_records = _save_records(current, new_baseline)
                else:
                    previous = _no_records()
                    current_records = current
                with closing(previous):
                    stats = self._delta(
                        previous, current_records, sink, route_dir, new_baseline
                    )
        except BaseException:
            if new_baseline is not None:
                new_baseline.abort()
            raise

        summary = SyncSummary(stats.current, stats, datetime.now() - start_time)
        _log_info(
            "Synchronised %s: %d records, %d changes in %s",
            root,
            summary.records,
            stats.total_changes,
            summary.elapsed,
        )
        return summary

    def diff_snapshots(
        self,
        previous: str,
        current: str,
        sink: Optional[DeltaSink] = None,
        route_dir: Optional[str] = None,
    ) -> SyncSummary:
        """
        Compare two sorted snapshot files.

        A missing ``previous`` file is treated as an empty snapshot.

        :param previous: The previous snapshot file.
        :type previous: ``str``
        :param current: The current snapshot file.
        :type current: ``str``
        :param sink: The sink to receive delta events.
        :type sink: ``Optional[DeltaSink]``
        :param route_dir: Directory for routed output snapshots.
        :type route_dir: ``Optional[str]``
        :returns: A summary of the comparison.
        :rtype: ``SyncSummary``
        """
        start_time = datetime.now()
        with closing(iter_snapshot(previous, missing_ok=True)) as prev_records:
            with closing(iter_snapshot(current)) as curr_records:
                stats = self._delta(prev_records, curr_records, sink, route_dir)
        return SyncSummary(stats.current, stats, datetime.now() - start_time)

    def sort_snapshot(self, input_path: str, output_path: str) -> SyncSummary:
        """
        Externally sort the snapshot file ``input_path`` into ``output_path``.

        :param input_path: The unsorted snapshot file.
        :type input_path: ``str``
        :param output_path: The sorted output file (may equal ``input_path``).
        :type output_path: ``str``
        :returns: A summary of the sort (delta statistics are empty).
        :rtype: ``SyncSummary``
        """
        start_time = datetime.now()
        count = self.sorter.sort_file(input_path, output_path)
        return SyncSummary(count, DeltaStats(), datetime.now() - start_time)


__all__ = [
    "SyncSummary",
    "Syncer",
]
