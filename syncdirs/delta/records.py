# Copyright Red Hat
#
# syncdirs/delta/records.py - Snapshot record stream I/O
#
# This file is part of the syncdirs project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Snapshot records and their line-oriented text encoding.

Each record is written as one line::

    <path>\\t<timestamp>\\n

where ``path`` is relative to the snapshot root and ``timestamp`` is a
non-negative integer number of seconds since the epoch.
"""
from typing import Iterable, Iterator, NamedTuple, Optional, TextIO
import logging
import re

from syncdirs import SyncdirsFormatError

_log = logging.getLogger(__name__)

_log_debug = _log.debug

#: Field separator between path and timestamp.
RECORD_SEP = "\t"

_TIMESTAMP_RE = re.compile(r"^[0-9]+$")


class Record(NamedTuple):
    """
    A single ``(path, timestamp)`` snapshot entry.
    """

    #: Root-relative path using ``/`` as the separator.
    path: str
    #: Modification time in whole seconds since the epoch.
    timestamp: int

    def __str__(self) -> str:
        return f"{self.path}{RECORD_SEP}{self.timestamp}"


def is_valid_path(path: str) -> bool:
    """
    Return ``True`` if ``path`` can be represented in a snapshot line.

    :param path: The path to check.
    :type path: ``str``
    :rtype: ``bool``
    """
    return bool(path) and RECORD_SEP not in path and "\n" not in path


def parse_record(line: str, name: Optional[str] = None, lineno: int = 0) -> Record:
    """
    Parse one snapshot line into a ``Record``.

    :param line: The line to parse, with or without its trailing newline.
    :type line: ``str``
    :param name: The name of the stream the line came from, for errors.
    :type name: ``Optional[str]``
    :param lineno: The 1-based line number, for errors.
    :type lineno: ``int``
    :returns: The parsed record.
    :rtype: ``Record``
    :raises SyncdirsFormatError: If the line has no separator, an empty
                                 path, or a non-numeric timestamp.
    """
    line = line.removesuffix("\n")
    path, sep, timestamp_str = line.partition(RECORD_SEP)
    if not sep:
        raise SyncdirsFormatError(
            f"missing path/timestamp separator in line '{line}'", name, lineno
        )
    if not path:
        raise SyncdirsFormatError("empty path", name, lineno)
    if not _TIMESTAMP_RE.match(timestamp_str):
        raise SyncdirsFormatError(
            f"invalid timestamp '{timestamp_str}' for path '{path}'", name, lineno
        )
    return Record(path, int(timestamp_str))


def format_record(record: Record) -> str:
    """
    Encode ``record`` as a snapshot line including the trailing newline.

    :param record: The record to encode.
    :type record: ``Record``
    :returns: The encoded line.
    :rtype: ``str``
    :raises SyncdirsFormatError: If the path cannot be represented.
    """
    if not is_valid_path(record.path):
        raise SyncdirsFormatError(f"cannot encode path {record.path!r}")
    return f"{record.path}{RECORD_SEP}{record.timestamp}\n"


def read_records(stream: TextIO, name: Optional[str] = None) -> Iterator[Record]:
    """
    Lazily parse records from an open text stream.

    :param stream: The stream to read.
    :type stream: ``TextIO``
    :param name: A name for ``stream`` used in error messages.
    :type name: ``Optional[str]``
    :returns: An iterator over the records in ``stream``.
    :rtype: ``Iterator[Record]``
    """
    name = name or getattr(stream, "name", None) or "<stream>"
    for lineno, line in enumerate(stream, start=1):
        yield parse_record(line, name, lineno)


def write_records(stream: TextIO, records: Iterable[Record]) -> int:
    """
    Write ``records`` to ``stream``, one per line.

    :param stream: The stream to write to.
    :type stream: ``TextIO``
    :param records: The records to write.
    :type records: ``Iterable[Record]``
    :returns: The number of records written.
    :rtype: ``int``
    """
    count = 0
    for record in records:
        stream.write(format_record(record))
        count += 1
    return count


__all__ = [
    "RECORD_SEP",
    "Record",
    "format_record",
    "is_valid_path",
    "parse_record",
    "read_records",
    "write_records",
]
