# Copyright Red Hat
#
# syncdirs/delta/sinks.py - Directory sync delta sinks
#
# This file is part of the syncdirs project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Destinations for delta events.

The diff engine pushes each ``DeltaEvent`` into a ``DeltaSink``; the sink
decides how the change is surfaced.
"""
from typing import List, Optional, TextIO
import logging
import sys

from syncdirs import SYNCDIRS_SUBSYSTEM_DIFF, SyncdirsSystemError

from .difftypes import DeltaType
from .engine import DeltaEvent, DeltaResults, DeltaStats
from .records import Record
from .snapshot import _ENCODING, _ERRORS, SnapshotWriter

_log = logging.getLogger(__name__)

_log_debug = _log.debug


def _log_debug_diff(msg, *args, **kwargs):
    """A wrapper for diff subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": SYNCDIRS_SUBSYSTEM_DIFF}, **kwargs)


class DeltaSink:
    """
    Base class for delta event consumers.
    """

    def emit(self, event: DeltaEvent):
        """
        Consume one delta event.

        :param event: The event to consume.
        :type event: ``DeltaEvent``
        """
        raise NotImplementedError

    def close(self):
        """
        Release any resources owned by this sink.
        """

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()


class ReportSink(DeltaSink):
    """
    Write one ``<kind>\\t<path>\\t<timestamp>`` line per event.
    """

    def __init__(self, stream: Optional[TextIO] = None):
        """
        Initialise a new ``ReportSink``.

        :param stream: The stream to write to (default ``sys.stdout``). The
                       stream is not closed by the sink.
        :type stream: ``Optional[TextIO]``
        """
        self.stream = stream or sys.stdout
        self.count = 0

    def emit(self, event: DeltaEvent):
        line = f"{event}\n"
        buffer = getattr(self.stream, "buffer", None)
        try:
            if buffer is not None:
                # Undecodable file names are written back as their raw bytes.
                self.stream.flush()
                buffer.write(line.encode(_ENCODING, _ERRORS))
            else:
                self.stream.write(
                    line.encode(_ENCODING, "backslashreplace").decode(_ENCODING)
                )
        except (OSError, UnicodeError) as err:
            raise SyncdirsSystemError(f"Error writing delta report: {err}") from err
        self.count += 1


class RouteSink(DeltaSink):
    """
    Route events into two snapshots for two-way synchronisation.

    The "first" side is the side described by the previous snapshot and the
    "second" side the one described by the current snapshot. Each output
    holds the records that must be pushed to that side:

    - added paths go to ``to_first`` with their current timestamp,
    - removed paths go to ``to_second`` with their previous timestamp,
    - modified paths go to whichever side holds the older timestamp, with
      the newer record.

    Both outputs are sorted because events arrive in path order.
    """

    def __init__(self, to_first: SnapshotWriter, to_second: SnapshotWriter):
        """
        Initialise a new ``RouteSink``. The writers are owned by the sink and
        closed by ``close()``.

        :param to_first: Writer for records the first side must receive.
        :type to_first: ``SnapshotWriter``
        :param to_second: Writer for records the second side must receive.
        :type to_second: ``SnapshotWriter``
        """
        self.to_first = to_first
        self.to_second = to_second

    def emit(self, event: DeltaEvent):
        if event.delta_type == DeltaType.ADDED:
            self.to_first.write(event.record)
        elif event.delta_type == DeltaType.REMOVED:
            self.to_second.write(event.record)
        elif event.new_timestamp > event.old_timestamp:
            self.to_first.write(Record(event.path, event.new_timestamp))
        else:
            self.to_second.write(Record(event.path, event.old_timestamp))

    def close(self):
        try:
            self.to_first.close()
        finally:
            self.to_second.close()
        _log_debug_diff(
            "Routed %d records to %s and %d records to %s",
            self.to_first.count,
            self.to_first.path,
            self.to_second.count,
            self.to_second.path,
        )


class CollectSink(DeltaSink):
    """
    Accumulate events in memory.
    """

    def __init__(self):
        self.events: List[DeltaEvent] = []

    def emit(self, event: DeltaEvent):
        self.events.append(event)

    def results(self, stats: Optional[DeltaStats] = None) -> DeltaResults:
        """
        Return the collected events as a ``DeltaResults`` object.

        :param stats: Statistics to attach to the results.
        :type stats: ``Optional[DeltaStats]``
        :rtype: ``DeltaResults``
        """
        return DeltaResults(list(self.events), stats)


class MultiSink(DeltaSink):
    """
    Fan one delta stream out to several sinks.
    """

    def __init__(self, *sinks: DeltaSink):
        self.sinks = list(sinks)

    def emit(self, event: DeltaEvent):
        for sink in self.sinks:
            sink.emit(event)

    def close(self):
        errors = []
        for sink in self.sinks:
            try:
                sink.close()
            except SyncdirsSystemError as err:
                errors.append(err)
        if errors:
            raise errors[0]


__all__ = [
    "CollectSink",
    "DeltaSink",
    "MultiSink",
    "ReportSink",
    "RouteSink",
]
