# Copyright Red Hat
#
# syncdirs/delta/snapshot.py - Snapshot files and the baseline store
#
# This file is part of the syncdirs project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Snapshot file access.

Snapshot files are line-oriented record streams, optionally compressed.
The compression format is chosen from the file name extension:

    ========  ===========
    ``.zst``  zstandard
    ``.xz``   lzma
    ``.gz``   gzip
    other     plain text
    ========  ===========
"""
from typing import Iterable, Iterator, Optional, TextIO, Tuple
import logging
import tempfile
import gzip
import lzma
import zlib
import stat
import io
import os

try:
    import zstandard as zstd

    _HAVE_ZSTD = True
except ModuleNotFoundError:
    _HAVE_ZSTD = False

from syncdirs import (
    SYNCDIRS_SUBSYSTEM_SNAPSHOT,
    SyncdirsArgumentError,
    SyncdirsNotFoundError,
    SyncdirsResourceError,
    SyncdirsSystemError,
)

from .records import Record, format_record, read_records

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_snapshot(msg, *args, **kwargs):
    """A wrapper for snapshot subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": SYNCDIRS_SUBSYSTEM_SNAPSHOT}, **kwargs)


#: Compression types and their file name extensions
_COMPRESSION_EXTENSIONS = {
    "zstd": ".zst",
    "xz": ".xz",
    "gz": ".gz",
    "none": "",
}

#: Exceptions raised by the compression libraries on corrupt data
if _HAVE_ZSTD:
    _COMPRESS_ERRORS: Tuple[type, ...] = (
        EOFError,
        lzma.LZMAError,
        gzip.BadGzipFile,
        zlib.error,
        zstd.ZstdError,
    )
else:
    _COMPRESS_ERRORS = (EOFError, lzma.LZMAError, gzip.BadGzipFile, zlib.error)

#: Mode for newly created snapshot files
_SNAPSHOT_FILE_MODE = 0o644

#: Text encoding for snapshot files: undecodable file names round-trip.
_ENCODING = "utf-8"
_ERRORS = "surrogateescape"

#: Routed output base name for records the previous side must receive.
ROUTE_TO_FIRST = "modified"

#: Routed output base name for records the current side must receive.
ROUTE_TO_SECOND = "deleted"


def default_compression() -> str:
    """
    Return the compression type used for new snapshot files when the caller
    does not choose one.

    :returns: "zstd" if the zstandard module is available, else "xz".
    :rtype: ``str``
    """
    return "zstd" if _HAVE_ZSTD else "xz"


def compression_for_path(path: str) -> str:
    """
    Determine the compression type of ``path`` from its extension.

    :param path: The snapshot file path.
    :type path: ``str``
    :returns: One of "zstd", "xz", "gz" or "none".
    :rtype: ``str``
    """
    for compression, ext in _COMPRESSION_EXTENSIONS.items():
        if ext and path.endswith(ext):
            return compression
    return "none"


def snapshot_extension(compression: str) -> str:
    """
    Return the file name extension for ``compression``.

    :param compression: The compression type.
    :type compression: ``str``
    :returns: The extension including the leading dot, or "" for "none".
    :rtype: ``str``
    """
    try:
        return _COMPRESSION_EXTENSIONS[compression]
    except KeyError as err:
        raise SyncdirsArgumentError(f"Unknown compression type: {compression}") from err


def route_paths(route_dir: str, compression: Optional[str] = None) -> Tuple[str, str]:
    """
    Return the paths of the two routed output snapshots in ``route_dir``.

    :param route_dir: The directory holding routed output.
    :type route_dir: ``str``
    :param compression: The compression type for the files.
    :type compression: ``Optional[str]``
    :returns: A 2-tuple ``(to_first, to_second)``.
    :rtype: ``Tuple[str, str]``
    """
    ext = snapshot_extension(compression or default_compression())
    return (
        os.path.join(route_dir, ROUTE_TO_FIRST + ext),
        os.path.join(route_dir, ROUTE_TO_SECOND + ext),
    )


def open_snapshot(path: str, mode: str = "r", compression: Optional[str] = None) -> TextIO:
    """
    Open a snapshot file as a text stream.

    :param path: The path to open.
    :type path: ``str``
    :param mode: "r" to read or "w" to write.
    :type mode: ``str``
    :param compression: The compression type, or ``None`` to use the file
                        name extension.
    :type compression: ``Optional[str]``
    :returns: An open text stream.
    :rtype: ``TextIO``
    """
    if mode not in ("r", "w"):
        raise SyncdirsArgumentError(f"Invalid snapshot open mode: {mode}")

    compression = compression or compression_for_path(path)
    _log_debug_snapshot("Opening snapshot %s (mode=%s, compression=%s)", path, mode, compression)

    if compression == "zstd":
        if not _HAVE_ZSTD:
            raise SyncdirsArgumentError(
                f"Cannot open {path}: zstd support not available"
            )
        fp = open(path, mode + "b")  # pylint: disable=consider-using-with
        try:
            if mode == "r":
                binary = zstd.ZstdDecompressor().stream_reader(fp, closefd=True)
            else:
                binary = zstd.ZstdCompressor().stream_writer(fp, closefd=True)
        except BaseException:
            fp.close()
            raise
        return io.TextIOWrapper(binary, encoding=_ENCODING, errors=_ERRORS, newline="\n")
    if compression == "xz":
        return lzma.open(
            path, mode + "t", encoding=_ENCODING, errors=_ERRORS, newline="\n"
        )
    if compression == "gz":
        return gzip.open(
            path, mode + "t", encoding=_ENCODING, errors=_ERRORS, newline="\n"
        )
    if compression == "none":
        # pylint: disable=consider-using-with
        return open(path, mode, encoding=_ENCODING, errors=_ERRORS, newline="\n")
    raise SyncdirsArgumentError(f"Unknown compression type: {compression}")


def iter_snapshot(
    path: str, compression: Optional[str] = None, missing_ok: bool = False
) -> Iterator[Record]:
    """
    Lazily read the records of the snapshot file at ``path``.

    The file is opened on the first call to ``next()`` and closed when the
    iterator is exhausted or closed.

    :param path: The snapshot file to read.
    :type path: ``str``
    :param compression: The compression type, or ``None`` to use the file
                        name extension.
    :type compression: ``Optional[str]``
    :param missing_ok: Treat a missing file as an empty snapshot.
    :type missing_ok: ``bool``
    :returns: An iterator over the records in the file.
    :rtype: ``Iterator[Record]``
    :raises SyncdirsNotFoundError: If ``path`` does not exist and
                                   ``missing_ok`` is ``False``.
    :raises SyncdirsSystemError: On I/O or decompression errors.
    """
    try:
        stream = open_snapshot(path, "r", compression)
    except FileNotFoundError as err:
        if missing_ok:
            _log_debug_snapshot("No snapshot at %s: using empty stream", path)
            return
        raise SyncdirsNotFoundError(f"Snapshot file not found: {path}") from err
    except OSError as err:
        raise SyncdirsSystemError(f"Failed to open snapshot {path}: {err}") from err

    with stream:
        try:
            yield from read_records(stream, name=path)
        except (OSError, *_COMPRESS_ERRORS) as err:
            raise SyncdirsSystemError(f"Error reading snapshot {path}: {err}") from err


class SnapshotWriter:
    """
    Write records to a (possibly compressed) snapshot file.
    """

    def __init__(self, path: str, compression: Optional[str] = None):
        """
        Initialise a new ``SnapshotWriter`` and open ``path`` for writing.

        :param path: The file to write.
        :type path: ``str``
        :param compression: The compression type, or ``None`` to use the
                            file name extension.
        :type compression: ``Optional[str]``
        """
        self.path: str = path
        self.compression: str = compression or compression_for_path(path)
        self.count: int = 0
        try:
            self._stream: Optional[TextIO] = open_snapshot(
                self._target(), "w", self.compression
            )
        except OSError as err:
            raise SyncdirsSystemError(
                f"Failed to open {self._target()} for writing: {err}"
            ) from err

    def _target(self) -> str:
        return self.path

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    @property
    def closed(self) -> bool:
        """``True`` if the underlying stream has been closed."""
        return self._stream is None

    def write(self, record: Record):
        """
        Append ``record`` to the snapshot.

        :param record: The record to write.
        :type record: ``Record``
        """
        if self._stream is None:
            raise SyncdirsSystemError(f"Write to closed snapshot {self._target()}")
        try:
            self._stream.write(format_record(record))
        except (OSError, *_COMPRESS_ERRORS) as err:
            raise SyncdirsSystemError(
                f"Error writing snapshot {self._target()}: {err}"
            ) from err
        self.count += 1

    def write_records(self, records: Iterable[Record]) -> int:
        """
        Append all of ``records`` to the snapshot.

        :param records: The records to write.
        :type records: ``Iterable[Record]``
        :returns: The number of records written by this call.
        :rtype: ``int``
        """
        start = self.count
        for record in records:
            self.write(record)
        return self.count - start

    def close(self):
        """
        Flush and close the snapshot file.
        """
        if self._stream is None:
            return
        stream, self._stream = self._stream, None
        try:
            stream.close()
        except (OSError, *_COMPRESS_ERRORS) as err:
            raise SyncdirsSystemError(
                f"Error closing snapshot {self._target()}: {err}"
            ) from err
        _log_debug_snapshot("Wrote %d records to %s", self.count, self._target())


class AtomicSnapshotWriter(SnapshotWriter):
    """
    A ``SnapshotWriter`` that writes to a temporary file in the destination
    directory and only replaces the destination on ``commit()``.
    """

    def __init__(self, path: str, compression: Optional[str] = None):
        """
        Initialise a new ``AtomicSnapshotWriter`` for ``path``.

        :param path: The final snapshot path.
        :type path: ``str``
        :param compression: The compression type, or ``None`` to use the
                            file name extension of ``path``.
        :type compression: ``Optional[str]``
        """
        dirname = os.path.dirname(os.path.abspath(path))
        try:
            fd, self.temp_path = tempfile.mkstemp(
                prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=dirname
            )
            os.close(fd)
        except OSError as err:
            raise SyncdirsResourceError(
                f"Failed to create temporary snapshot in {dirname}: {err}"
            ) from err
        self.committed: bool = False
        try:
            super().__init__(path, compression=compression or compression_for_path(path))
        except BaseException:
            self._unlink_temp()
            raise

    def _target(self) -> str:
        return self.temp_path

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type is None:
            self.commit()
        else:
            self.abort()

    def _unlink_temp(self):
        try:
            os.unlink(self.temp_path)
        except FileNotFoundError:
            pass
        except OSError as err:
            _log_error("Error removing temporary snapshot %s: %s", self.temp_path, err)

    def _file_mode(self) -> int:
        try:
            return stat.S_IMODE(os.stat(self.path).st_mode)
        except FileNotFoundError:
            return _SNAPSHOT_FILE_MODE

    def commit(self):
        """
        Close the temporary file and rename it over the destination path.
        """
        if self.committed:
            return
        try:
            self.close()
            os.chmod(self.temp_path, self._file_mode())
            os.replace(self.temp_path, self.path)
        except OSError as err:
            self._unlink_temp()
            raise SyncdirsSystemError(
                f"Failed to replace snapshot {self.path}: {err}"
            ) from err
        except BaseException:
            self._unlink_temp()
            raise
        self.committed = True
        _log_info("Updated snapshot %s (%d records)", self.path, self.count)

    def abort(self):
        """
        Discard the temporary file, leaving the destination untouched.
        """
        if self.committed:
            return
        try:
            self.close()
        except SyncdirsSystemError as err:
            _log_debug_snapshot("Ignoring error closing aborted snapshot: %s", err)
        self._unlink_temp()


class SnapshotStore:
    """
    The persisted baseline snapshot for one synchronised tree.
    """

    def __init__(self, path: str):
        """
        Initialise a new ``SnapshotStore`` for the baseline at ``path``.

        :param path: The baseline snapshot file path. The file need not
                     exist yet (first run).
        :type path: ``str``
        """
        self.path: str = path

    def __repr__(self):
        return f"SnapshotStore({self.path!r})"

    @property
    def exists(self) -> bool:
        """``True`` if a baseline snapshot has been stored."""
        return os.path.exists(self.path)

    @property
    def compression(self) -> str:
        """The compression type of the baseline file."""
        return compression_for_path(self.path)

    def records(self) -> Iterator[Record]:
        """
        Return an iterator over the baseline records: empty if no baseline
        exists yet.

        :rtype: ``Iterator[Record]``
        """
        return iter_snapshot(self.path, missing_ok=True)

    def new_snapshot(self) -> AtomicSnapshotWriter:
        """
        Begin writing a replacement baseline.

        :returns: A writer whose ``commit()`` atomically replaces the
                  baseline.
        :rtype: ``AtomicSnapshotWriter``
        """
        return AtomicSnapshotWriter(self.path)


__all__ = [
    "ROUTE_TO_FIRST",
    "ROUTE_TO_SECOND",
    "AtomicSnapshotWriter",
    "SnapshotStore",
    "SnapshotWriter",
    "compression_for_path",
    "default_compression",
    "iter_snapshot",
    "open_snapshot",
    "route_paths",
    "snapshot_extension",
]
