# Copyright Red Hat
#
# syncdirs/_syncdirs.py - Directory sync global definitions
#
# This file is part of the syncdirs project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Global definitions for the top-level syncdirs package.
"""
from typing import Optional, TextIO, Union, TYPE_CHECKING
import logging
import weakref
import math
import sys
import re

if TYPE_CHECKING:
    from .progress import ProgressBase, ThrobberBase

_log = logging.getLogger("syncdirs")

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

# Syncdirs debugging subsystem mask
SYNCDIRS_DEBUG_WALK = 1
SYNCDIRS_DEBUG_SORT = 2
SYNCDIRS_DEBUG_DIFF = 4
SYNCDIRS_DEBUG_SNAPSHOT = 8
SYNCDIRS_DEBUG_COMMAND = 16
SYNCDIRS_DEBUG_ALL = (
    SYNCDIRS_DEBUG_WALK
    | SYNCDIRS_DEBUG_SORT
    | SYNCDIRS_DEBUG_DIFF
    | SYNCDIRS_DEBUG_SNAPSHOT
    | SYNCDIRS_DEBUG_COMMAND
)

# Syncdirs debugging subsystem names
SYNCDIRS_SUBSYSTEM_WALK = "syncdirs.walk"
SYNCDIRS_SUBSYSTEM_SORT = "syncdirs.sort"
SYNCDIRS_SUBSYSTEM_DIFF = "syncdirs.diff"
SYNCDIRS_SUBSYSTEM_SNAPSHOT = "syncdirs.snapshot"
SYNCDIRS_SUBSYSTEM_COMMAND = "syncdirs.command"

_DEBUG_MASK_TO_SUBSYSTEM = {
    SYNCDIRS_DEBUG_WALK: SYNCDIRS_SUBSYSTEM_WALK,
    SYNCDIRS_DEBUG_SORT: SYNCDIRS_SUBSYSTEM_SORT,
    SYNCDIRS_DEBUG_DIFF: SYNCDIRS_SUBSYSTEM_DIFF,
    SYNCDIRS_DEBUG_SNAPSHOT: SYNCDIRS_SUBSYSTEM_SNAPSHOT,
    SYNCDIRS_DEBUG_COMMAND: SYNCDIRS_SUBSYSTEM_COMMAND,
}

_debug_subsystems = set()

# Registry of active progress instances: uses a WeakSet so we don't prevent
# garbage collection.
_active_progress: weakref.WeakSet = weakref.WeakSet()

_SIZE_RE = re.compile(r"^(?P<size>[0-9]+)(?P<units>([KMGTPEZkmgtpez]i{,1})?[Bb]{,1})$")

#: All suffixes are expressed in powers of two.
_SIZE_SUFFIXES = {
    "B": 1,
    "K": 2**10,
    "M": 2**20,
    "G": 2**30,
    "T": 2**40,
    "P": 2**50,
    "E": 2**60,
    "Z": 2**70,
}

#: Location of the meminfo file in procfs
_PROC_MEMINFO: str = "/proc/meminfo"


def _read_meminfo(key: str) -> int:
    """
    Return the value of ``key`` from ``/proc/meminfo`` in bytes, or 0 if
    the value is unavailable.

    :param key: The meminfo key to look up, for e.g. "MemAvailable".
    :type key: ``str``
    :returns: The value in bytes.
    :rtype: ``int``
    """
    try:
        with open(_PROC_MEMINFO, "r", encoding="utf8") as fp:
            for line in fp.readlines():
                if line.startswith(key + ":"):
                    try:
                        _, value_str, _ = line.split()
                        return int(value_str) * 2**10
                    except ValueError as err:
                        _log_debug(
                            "Could not parse %s line '%s': %s", _PROC_MEMINFO, line, err
                        )
    except OSError as err:
        _log_warn("Could not read %s: %s", _PROC_MEMINFO, err)
    return 0


def get_available_memory() -> int:
    """
    Return an estimate of the memory available for starting new work
    without swapping, in bytes, or 0 meaning "MemAvailable" unavailable.

    :returns: Available memory in bytes.
    :rtype: ``int``
    """
    return _read_meminfo("MemAvailable")


class SubsystemFilter(logging.Filter):
    """
    Filters DEBUG records based on a set of enabled subsystem names.
    Non-DEBUG records or DEBUG records without a 'subsystem' attribute
    are always passed through.
    """

    def __init__(self, name=""):
        super().__init__(name)
        self.enabled_subsystems = set(_debug_subsystems)

    def filter(self, record):
        if record.levelno != logging.DEBUG:
            return True

        if not hasattr(record, "subsystem"):
            return True

        return record.subsystem in self.enabled_subsystems

    def set_debug_subsystems(self, subsystems):
        """Sets the collection of subsystems to allow."""
        self.enabled_subsystems = set(subsystems)


def get_debug_mask():
    """
    Return the current debug mask for the ``syncdirs`` package.

    :returns: The current debug mask value
    :rtype: int
    """
    enabled_subsystems = set(_debug_subsystems)
    syncdirs_log = logging.getLogger("syncdirs")

    for handler in syncdirs_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                enabled_subsystems.update(f.enabled_subsystems)

    mask_map = {v: k for k, v in _DEBUG_MASK_TO_SUBSYSTEM.items()}
    mask = 0
    for subsystem_name in enabled_subsystems:
        mask |= mask_map.get(subsystem_name, 0)
    return mask


def set_debug_mask(mask):
    """
    Set the debug mask for the ``syncdirs`` package.

    :param mask: the logical OR of the ``SYNCDIRS_DEBUG_*``
                 values to log.
    :rtype: None
    """
    # pylint: disable=global-statement
    global _debug_subsystems

    if mask < 0 or mask > SYNCDIRS_DEBUG_ALL:
        raise ValueError(f"Invalid syncdirs debug mask: {mask}")

    enabled_subsystems = [
        subsystem_name
        for flag, subsystem_name in _DEBUG_MASK_TO_SUBSYSTEM.items()
        if mask & flag
    ]

    syncdirs_log = logging.getLogger("syncdirs")
    for handler in syncdirs_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                f.set_debug_subsystems(enabled_subsystems)

    _debug_subsystems = set(enabled_subsystems)


def register_progress(progress: Union["ProgressBase", "ThrobberBase"]):
    """Register a progress instance for log coordination."""
    _active_progress.add(progress)
    progress.registered = True


def unregister_progress(progress: Union["ProgressBase", "ThrobberBase"]):
    """Unregister a progress instance."""
    _active_progress.discard(progress)
    progress.registered = False


def notify_log_output(stream: TextIO):
    """
    Notify progress instances that log output occurred on stream.

    Called by ProgressAwareHandler after emitting a record.

    :param stream: The stream that received output.
    :type stream: ``TextIO``
    """
    if stream not in (sys.stdout, sys.stderr):
        return
    for progress in list(_active_progress):
        if hasattr(progress, "reset_position"):
            progress.reset_position()


class ProgressAwareHandler(logging.StreamHandler):
    """
    A logging handler that coordinates with active Progress instances.

    After emitting a log record, notifies any Progress instances writing
    to the same stream so they can avoid erasing the log message.
    """

    def __init__(self, stream: Optional[TextIO] = None, **kwargs):
        super().__init__(stream=stream or sys.stderr, **kwargs)

    def emit(self, record):
        try:
            msg = self.format(record)
            self.stream.write(msg + "\n")
            self.stream.flush()
            notify_log_output(self.stream)
        except Exception:  # pylint: disable=broad-exception-caught
            self.handleError(record)


#
# Syncdirs exception types
#


class SyncdirsError(Exception):
    """
    Base class for directory sync errors.
    """


class SyncdirsSystemError(SyncdirsError):
    """
    An I/O error reading or writing a snapshot, run file or output stream.
    """


class SyncdirsFilesystemError(SyncdirsError):
    """
    A path in the tree being walked could not be read.
    """


class SyncdirsFormatError(SyncdirsError):
    """
    Malformed snapshot data: a line without the path/timestamp separator,
    a non-numeric timestamp, or records out of order.
    """

    def __init__(self, msg: str, name: Optional[str] = None, lineno: int = 0):
        """
        Initialise a new ``SyncdirsFormatError`` exception.

        :param msg: A description of the problem.
        :param name: The name of the stream containing the bad data.
        :param lineno: The 1-based line number of the bad data (0 if unknown).
        """
        self.name, self.lineno = name, lineno
        if name and lineno:
            msg = f"{name}:{lineno}: {msg}"
        elif name:
            msg = f"{name}: {msg}"
        super().__init__(msg)


class SyncdirsResourceError(SyncdirsError):
    """
    A temporary file could not be created.
    """


class SyncdirsNotFoundError(SyncdirsError):
    """
    The requested object does not exist.
    """


class SyncdirsArgumentError(SyncdirsError):
    """
    An invalid argument was passed to a syncdirs API call.
    """


def size_fmt(value):
    """
    Format a size in bytes as a human readable string.

    :param value: The integer value to format.
    :returns: A human readable string reflecting value.
    """
    suffixes = ["B", "KiB", "MiB", "GiB", "TiB", "PiB", "EiB", "ZiB"]
    if value == 0:
        return "0B"
    magnitude = math.floor(math.log(abs(value), 1024))
    val = value / math.pow(1024, magnitude)
    if magnitude > 7:
        return f"{val:.1f}YiB"
    return f"{val:3.1f}{suffixes[magnitude]}"


def parse_size_with_units(value):
    """
    Parse a size string with optional unit suffix and return a value in bytes,

    :param value: The size string to parse.
    :returns: an integer size in bytes.
    :raises: ``SyncdirsArgumentError`` if the string could not be parsed as a
             valid size value.
    """
    match = _SIZE_RE.search(value)
    if match is None:
        raise SyncdirsArgumentError(f"Malformed size expression: '{value}'")
    (size, unit) = (match.group("size"), match.group("units").upper())
    return int(size) * _SIZE_SUFFIXES[unit[0] if unit else "B"]


__all__ = [
    "SYNCDIRS_DEBUG_WALK",
    "SYNCDIRS_DEBUG_SORT",
    "SYNCDIRS_DEBUG_DIFF",
    "SYNCDIRS_DEBUG_SNAPSHOT",
    "SYNCDIRS_DEBUG_COMMAND",
    "SYNCDIRS_DEBUG_ALL",
    "SYNCDIRS_SUBSYSTEM_WALK",
    "SYNCDIRS_SUBSYSTEM_SORT",
    "SYNCDIRS_SUBSYSTEM_DIFF",
    "SYNCDIRS_SUBSYSTEM_SNAPSHOT",
    "SYNCDIRS_SUBSYSTEM_COMMAND",
    "get_available_memory",
    "SubsystemFilter",
    "get_debug_mask",
    "set_debug_mask",
    "register_progress",
    "unregister_progress",
    "notify_log_output",
    "ProgressAwareHandler",
    "SyncdirsError",
    "SyncdirsSystemError",
    "SyncdirsFilesystemError",
    "SyncdirsFormatError",
    "SyncdirsResourceError",
    "SyncdirsNotFoundError",
    "SyncdirsArgumentError",
    "size_fmt",
    "parse_size_with_units",
]
