# Copyright Red Hat
#
# syncdirs/delta/options.py - Directory sync options
#
# This file is part of the syncdirs project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Directory sync options.
"""
from dataclasses import dataclass, field, fields
from typing import Optional, Tuple, Union
from argparse import Namespace
import logging

from syncdirs import SyncdirsArgumentError

_log = logging.getLogger(__name__)

_log_debug = _log.debug

#: Default maximum number of temporary run files for one sort.
DEFAULT_MAX_TMP_FILES = 1024

#: Known compression names for snapshot files.
COMPRESSION_TYPES = ("zstd", "xz", "gz", "none")


@dataclass(frozen=True)
class SyncOptions:
    """
    Snapshot, sort and diff options.
    """

    #: Maximum number of temporary run files created by the external sort
    max_tmp_files: int = DEFAULT_MAX_TMP_FILES
    #: Fixed sort block size in bytes (0 to estimate from input and memory)
    block_size: int = 0
    #: Directory for temporary run files (``None`` for the system default)
    tmp_dir: Optional[str] = None
    #: Record directory modification times instead of the zero sentinel
    dir_timestamps: bool = False
    #: Follow symlinks when walking file system trees
    follow_symlinks: bool = False
    #: Relative path patterns to exclude (glob notation)
    exclude_patterns: Tuple[str, ...] = field(default_factory=tuple)
    #: Compression for files created without a recognised extension
    compression: Optional[str] = None
    #: Do not output progress or status updates
    quiet: bool = False

    def __post_init__(self):
        if self.max_tmp_files < 1:
            raise SyncdirsArgumentError(
                f"max_tmp_files must be at least 1: {self.max_tmp_files}"
            )
        if self.block_size < 0:
            raise SyncdirsArgumentError(
                f"block_size cannot be negative: {self.block_size}"
            )
        if self.compression is not None and self.compression not in COMPRESSION_TYPES:
            raise SyncdirsArgumentError(
                f"Unknown compression type: {self.compression}"
            )

    def __str__(self):
        """
        Return a human readable string representation of this
        ``SyncOptions`` instance.

        :returns: A human readable string.
        :rtype: ``str``
        """
        items = [
            (key, val) if not isinstance(val, tuple) else (key, " ".join(val))
            for key, val in self.__dict__.items()
        ]
        return "\n".join(f"{key}={val}" for key, val in items)

    @classmethod
    def from_cmd_args(cls, cmd_args: Namespace) -> "SyncOptions":
        """
        Initialise SyncOptions from command line arguments.

        Arguments that are absent from ``cmd_args``, or that are ``None``,
        take the field default.

        :param cmd_args: The command line arguments.
        :type cmd_args: ``Namespace``
        :returns: A new ``SyncOptions`` instance
        :rtype: ``SyncOptions``
        """

        def get_value(name: str) -> Union[bool, int, Optional[str], Tuple[str, ...]]:
            attr = getattr(cmd_args, name)
            if isinstance(attr, list):
                return tuple(attr)
            return attr

        field_names = {f.name for f in fields(cls)}
        kwargs = {
            name: get_value(name)
            for name in field_names
            if getattr(cmd_args, name, None) is not None
        }
        options = cls(**kwargs)
        _log_debug("Initialised SyncOptions from arguments: %s", repr(options))
        return options
