# Copyright Red Hat
#
# syncdirs/delta/engine.py - Directory sync merge-diff engine
#
# This file is part of the syncdirs project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Merge-diff engine

Compares two sorted snapshots in a single forward pass with one cursor per
side, classifying every path as added, removed, modified or unchanged.
"""
from typing import Any, Dict, Iterable, Iterator, List, Optional, TYPE_CHECKING
from dataclasses import dataclass, asdict
from datetime import datetime
import logging
import json

from syncdirs import SYNCDIRS_SUBSYSTEM_DIFF, SyncdirsFormatError

from .difftypes import DeltaType
from .records import Record, RECORD_SEP

if TYPE_CHECKING:
    from .sinks import DeltaSink

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

ENGINE_LOG_ME_HARDER = False


def _log_debug_diff(msg, *args, **kwargs):
    """A wrapper for diff subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": SYNCDIRS_SUBSYSTEM_DIFF}, **kwargs)


def _log_debug_diff_extra(msg, *args, **kwargs):
    """A wrapper for per-path diff subsystem debug logs."""
    if ENGINE_LOG_ME_HARDER:  # pragma: no cover
        _log.debug(msg, *args, extra={"subsystem": SYNCDIRS_SUBSYSTEM_DIFF}, **kwargs)


class DeltaEvent:
    """
    A single classified change between two snapshots.
    """

    def __init__(
        self,
        path: str,
        delta_type: DeltaType,
        old_timestamp: Optional[int] = None,
        new_timestamp: Optional[int] = None,
    ):
        """
        Initialise a new ``DeltaEvent`` object.

        :param path: The path that changed.
        :type path: ``str``
        :param delta_type: The kind of change.
        :type delta_type: ``DeltaType``
        :param old_timestamp: The timestamp in the previous snapshot
                              (``None`` for added paths).
        :type old_timestamp: ``Optional[int]``
        :param new_timestamp: The timestamp in the current snapshot
                              (``None`` for removed paths).
        :type new_timestamp: ``Optional[int]``
        """
        self.path = path
        self.delta_type = delta_type
        self.old_timestamp = old_timestamp
        self.new_timestamp = new_timestamp

    def __eq__(self, other):
        if not isinstance(other, DeltaEvent):
            return NotImplemented
        return (
            self.path == other.path
            and self.delta_type == other.delta_type
            and self.old_timestamp == other.old_timestamp
            and self.new_timestamp == other.new_timestamp
        )

    def __repr__(self) -> str:
        return (
            f"DeltaEvent({self.path!r}, {self.delta_type}, "
            f"{self.old_timestamp!r}, {self.new_timestamp!r})"
        )

    def __str__(self) -> str:
        """
        Return the delta report line for this event (without a newline):
        ``<kind>\\t<path>\\t<timestamp>``.

        :rtype: ``str``
        """
        return f"{self.delta_type.value}{RECORD_SEP}{self.path}{RECORD_SEP}{self.timestamp}"

    @property
    def timestamp(self) -> int:
        """
        The timestamp shown for this event: the current side for added
        paths, the previous side for removed paths and the newer side for
        modified paths.
        """
        if self.delta_type == DeltaType.REMOVED:
            return self.old_timestamp
        if self.delta_type == DeltaType.MODIFIED:
            return max(self.old_timestamp, self.new_timestamp)
        return self.new_timestamp

    @property
    def record(self) -> Record:
        """The ``Record`` for the side shown by ``timestamp``."""
        return Record(self.path, self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert this ``DeltaEvent`` into a dictionary suitable for encoding as
        JSON.

        :rtype: ``Dict[str, Any]``
        """
        return {
            "path": self.path,
            "delta_type": self.delta_type.value,
            "old_timestamp": self.old_timestamp,
            "new_timestamp": self.new_timestamp,
        }

    def json(self, pretty=False) -> str:
        """
        Return a JSON representation of this ``DeltaEvent``.

        :param pretty: Indent JSON to be human readable.
        :type pretty: ``bool``
        :rtype: ``str``
        """
        return json.dumps(self.to_dict(), indent=4 if pretty else None)


@dataclass
class DeltaStats:
    """
    Counts gathered while computing a delta.
    """

    #: Records read from the previous snapshot
    previous: int = 0
    #: Records read from the current snapshot
    current: int = 0
    added: int = 0
    removed: int = 0
    modified: int = 0
    unchanged: int = 0

    @property
    def total_changes(self) -> int:
        """The number of delta events emitted."""
        return self.added + self.removed + self.modified

    def __str__(self) -> str:
        return (
            f"Records: {self.previous} previous, {self.current} current\n"
            f"Total changes:     {self.total_changes}\n"
            f"  Paths added:     {self.added}\n"
            f"  Paths removed:   {self.removed}\n"
            f"  Paths modified:  {self.modified}\n"
            f"  Paths unchanged: {self.unchanged}"
        )

    def to_dict(self) -> Dict[str, int]:
        """
        Convert these statistics into a dictionary.

        :rtype: ``Dict[str, int]``
        """
        return asdict(self)


class DeltaResults:
    """Container for collected delta events with formatting methods."""

    def __init__(self, events: List[DeltaEvent], stats: Optional[DeltaStats] = None):
        self._events = events
        self.stats = stats or DeltaStats()

    def __repr__(self) -> str:
        return f"DeltaResults([...], {self.stats!r})"

    def __iter__(self) -> Iterator[DeltaEvent]:
        return iter(self._events)

    def __len__(self):
        return len(self._events)

    def __getitem__(self, index: int) -> DeltaEvent:
        return self._events[index]

    @property
    def added(self) -> List[DeltaEvent]:
        """Events with ``DeltaType.ADDED`` type."""
        return [e for e in self._events if e.delta_type == DeltaType.ADDED]

    @property
    def removed(self) -> List[DeltaEvent]:
        """Events with ``DeltaType.REMOVED`` type."""
        return [e for e in self._events if e.delta_type == DeltaType.REMOVED]

    @property
    def modified(self) -> List[DeltaEvent]:
        """Events with ``DeltaType.MODIFIED`` type."""
        return [e for e in self._events if e.delta_type == DeltaType.MODIFIED]

    def paths(self) -> List[str]:
        """
        Return the changed paths in event (ascending path) order.

        :rtype: ``List[str]``
        """
        return [event.path for event in self._events]

    def report(self) -> str:
        """
        Return the delta report for these events, one line per event.

        :rtype: ``str``
        """
        return "\n".join(str(event) for event in self._events)

    def summary(self) -> str:
        """
        Return a summary of these results.

        :rtype: ``str``
        """
        return str(self.stats)

    def json(self, pretty: bool = False) -> str:
        """
        Return a JSON representation of these results.

        :param pretty: Indent JSON to be human readable.
        :type pretty: ``bool``
        :rtype: ``str``
        """
        return json.dumps(
            {
                "stats": self.stats.to_dict(),
                "events": [event.to_dict() for event in self._events],
            },
            indent=4 if pretty else None,
        )


class _SnapshotCursor:
    """
    Forward-only cursor over one sorted snapshot that enforces strictly
    ascending paths.
    """

    def __init__(self, records: Iterable[Record], side: str):
        self._records = iter(records)
        self.side = side
        self.count = 0
        self.head: Optional[Record] = None
        self._last_path: Optional[str] = None
        self.advance()

    def advance(self):
        """
        Move to the next record; ``head`` is ``None`` once exhausted.
        """
        record = next(self._records, None)
        if record is not None:
            if self._last_path is not None and record.path <= self._last_path:
                problem = "duplicate path" if record.path == self._last_path else (
                    "path out of order"
                )
                raise SyncdirsFormatError(
                    f"{problem} '{record.path}' after '{self._last_path}'",
                    f"{self.side} snapshot",
                    self.count + 1,
                )
            self._last_path = record.path
            self.count += 1
        self.head = record


class DiffEngine:
    """
    Core class for computing snapshot deltas.
    """

    def __init__(self):
        """
        Initialise a new ``DiffEngine`` instance.
        """
        #: Statistics for the most recent delta computation.
        self.stats: DeltaStats = DeltaStats()

    def iter_delta(
        self, previous: Iterable[Record], current: Iterable[Record]
    ) -> Iterator[DeltaEvent]:
        """
        Lazily compute the delta between two sorted snapshots.

        Either snapshot may be empty. Events are produced in ascending path
        order; ``self.stats`` is updated as the comparison proceeds and is
        complete once the iterator is exhausted.

        :param previous: The previous (baseline) snapshot records.
        :type previous: ``Iterable[Record]``
        :param current: The current snapshot records.
        :type current: ``Iterable[Record]``
        :returns: An iterator over the delta events.
        :rtype: ``Iterator[DeltaEvent]``
        :raises SyncdirsFormatError: If either input is not strictly sorted.
        """
        stats = self.stats = DeltaStats()
        _log_debug_diff("Starting merge-diff")
        prev = _SnapshotCursor(previous, "previous")
        curr = _SnapshotCursor(current, "current")

        while prev.head is not None or curr.head is not None:
            p, c = prev.head, curr.head
            if c is None or (p is not None and p.path < c.path):
                _log_debug_diff_extra("Removed path '%s'", p.path)
                stats.removed += 1
                event = DeltaEvent(p.path, DeltaType.REMOVED, old_timestamp=p.timestamp)
                prev.advance()
            elif p is None or p.path > c.path:
                _log_debug_diff_extra("Added path '%s'", c.path)
                stats.added += 1
                event = DeltaEvent(c.path, DeltaType.ADDED, new_timestamp=c.timestamp)
                curr.advance()
            else:
                event = None
                if p.timestamp != c.timestamp:
                    _log_debug_diff_extra(
                        "Modified path '%s' (%d -> %d)", p.path, p.timestamp, c.timestamp
                    )
                    stats.modified += 1
                    event = DeltaEvent(
                        p.path, DeltaType.MODIFIED, p.timestamp, c.timestamp
                    )
                else:
                    stats.unchanged += 1
                prev.advance()
                curr.advance()

            stats.previous, stats.current = prev.count, curr.count
            if event is not None:
                yield event

        stats.previous, stats.current = prev.count, curr.count

    def compute_delta(
        self,
        previous: Iterable[Record],
        current: Iterable[Record],
        sink: "DeltaSink",
    ) -> DeltaStats:
        """
        Compute the delta between two sorted snapshots, emitting each event
        to ``sink``.

        The sink is not closed.

        :param previous: The previous (baseline) snapshot records.
        :type previous: ``Iterable[Record]``
        :param current: The current snapshot records.
        :type current: ``Iterable[Record]``
        :param sink: The sink to receive events.
        :type sink: ``DeltaSink``
        :returns: Statistics for the comparison.
        :rtype: ``DeltaStats``
        """
        start_time = datetime.now()
        for event in self.iter_delta(previous, current):
            sink.emit(event)
        stats = self.stats
        _log_info(
            "Compared %d previous and %d current records in %s: "
            "%d added, %d removed, %d modified",
            stats.previous,
            stats.current,
            datetime.now() - start_time,
            stats.added,
            stats.removed,
            stats.modified,
        )
        return stats


__all__ = [
    "DeltaEvent",
    "DeltaResults",
    "DeltaStats",
    "DeltaType",
    "DiffEngine",
]
