# Copyright Red Hat
#
# syncdirs/command.py - Directory sync command interface
#
# This file is part of the syncdirs project.
#
# SPDX-License-Identifier: Apache-2.0
"""The ``syncdirs.command`` module provides both the syncdirs command line
interface infrastructure, and a simple procedural interface to the
``syncdirs`` library modules.

The procedural interface is used by the ``syncdirs`` command line tool,
and may be used by application programs, or interactively in the
Python shell.
"""
from argparse import ArgumentParser
from typing import Optional
from os.path import basename
import logging
import sys

from syncdirs import (
    SYNCDIRS_DEBUG_WALK,
    SYNCDIRS_DEBUG_SORT,
    SYNCDIRS_DEBUG_DIFF,
    SYNCDIRS_DEBUG_SNAPSHOT,
    SYNCDIRS_DEBUG_COMMAND,
    SYNCDIRS_DEBUG_ALL,
    SYNCDIRS_SUBSYSTEM_COMMAND,
    SubsystemFilter,
    set_debug_mask,
    ProgressAwareHandler,
    parse_size_with_units,
    __version__,
)
from .delta import DeltaSink, ReportSink, SyncOptions, SyncSummary, Syncer
from .delta.options import COMPRESSION_TYPES

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_command(msg, *args, **kwargs):
    """A wrapper for command subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": SYNCDIRS_SUBSYSTEM_COMMAND}, **kwargs)


_DEFAULT_LOG_LEVEL = logging.WARNING
_CONSOLE_HANDLER = None


def scan_tree(
    root: str,
    baseline: Optional[str] = None,
    route_dir: Optional[str] = None,
    options: Optional[SyncOptions] = None,
    sink: Optional[DeltaSink] = None,
) -> SyncSummary:
    """
    Snapshot a directory tree and compare it with a stored baseline.

    :param root: The directory tree to snapshot.
    :param baseline: The baseline snapshot file to compare with and update.
    :param route_dir: Directory to receive the routed output snapshots.
    :param options: Options for the walk, sort and diff.
    :param sink: A sink to receive the delta events.
    :returns: A ``SyncSummary`` for the run.
    """
    syncer = Syncer(options)
    return syncer.sync(root, baseline=baseline, sink=sink, route_dir=route_dir)


def sort_snapshot(
    input_path: str, output_path: str, options: Optional[SyncOptions] = None
) -> SyncSummary:
    """
    Sort a snapshot file by path.

    :param input_path: The unsorted snapshot file.
    :param output_path: The sorted snapshot file to write.
    :param options: Options for the external sort.
    :returns: A ``SyncSummary`` with the number of records sorted.
    """
    syncer = Syncer(options)
    return syncer.sort_snapshot(input_path, output_path)


def diff_snapshots(
    previous: str,
    current: str,
    route_dir: Optional[str] = None,
    options: Optional[SyncOptions] = None,
    sink: Optional[DeltaSink] = None,
) -> SyncSummary:
    """
    Compare two sorted snapshot files.

    :param previous: The previous snapshot file (may be absent).
    :param current: The current snapshot file.
    :param route_dir: Directory to receive the routed output snapshots.
    :param options: Options for the diff.
    :param sink: A sink to receive the delta events.
    :returns: A ``SyncSummary`` for the comparison.
    """
    syncer = Syncer(options)
    return syncer.diff_snapshots(previous, current, sink=sink, route_dir=route_dir)


def _options_from_args(cmd_args) -> SyncOptions:
    """
    Build ``SyncOptions`` from parsed arguments, converting size strings.
    """
    if getattr(cmd_args, "block_size", None) is not None:
        if isinstance(cmd_args.block_size, str):
            cmd_args.block_size = parse_size_with_units(cmd_args.block_size)
    return SyncOptions.from_cmd_args(cmd_args)


def _print_summary(summary: SyncSummary):
    print(str(summary))


def _scan_cmd(cmd_args):
    """
    Scan command handler.

    Snapshot a tree, print the delta against the baseline and update the
    baseline.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    options = _options_from_args(cmd_args)
    _log_debug_command("Scan options:\n%s", options)
    sink = None if cmd_args.no_report else ReportSink(sys.stdout)
    summary = scan_tree(
        cmd_args.root,
        baseline=cmd_args.baseline,
        route_dir=cmd_args.route_dir,
        options=options,
        sink=sink,
    )
    _print_summary(summary)
    return 0


def _sort_cmd(cmd_args):
    """
    Sort command handler.

    Externally sort a snapshot file.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    options = _options_from_args(cmd_args)
    summary = sort_snapshot(cmd_args.input, cmd_args.output, options=options)
    _print_summary(summary)
    return 0


def _diff_cmd(cmd_args):
    """
    Diff command handler.

    Compare two sorted snapshot files.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    if cmd_args.previous == cmd_args.current:
        _log_error("Cannot compare '%s' to itself.", cmd_args.previous)
        return 1
    options = _options_from_args(cmd_args)
    sink = None if cmd_args.no_report else ReportSink(sys.stdout)
    summary = diff_snapshots(
        cmd_args.previous,
        cmd_args.current,
        route_dir=cmd_args.route_dir,
        options=options,
        sink=sink,
    )
    _print_summary(summary)
    return 0


def setup_logging(cmd_args):
    """
    Set up syncdirs logging.
    """
    # pylint: disable=global-statement
    global _CONSOLE_HANDLER
    level = _DEFAULT_LOG_LEVEL
    if cmd_args.verbose and cmd_args.verbose > 1:
        level = logging.DEBUG
    elif cmd_args.verbose and cmd_args.verbose > 0:
        level = logging.INFO

    syncdirs_log = logging.getLogger("syncdirs")
    formatter = logging.Formatter("%(levelname)s - %(message)s")
    syncdirs_log.setLevel(level)
    if syncdirs_log.hasHandlers():
        syncdirs_log.handlers.clear()

    # Subsystem log filtering
    _syncdirs_subsystem_filter = SubsystemFilter("syncdirs")

    # Main console handler
    _CONSOLE_HANDLER = ProgressAwareHandler()

    _CONSOLE_HANDLER.setLevel(level)
    _CONSOLE_HANDLER.setFormatter(formatter)
    _CONSOLE_HANDLER.addFilter(_syncdirs_subsystem_filter)

    syncdirs_log.addHandler(_CONSOLE_HANDLER)


def shutdown_logging():
    """
    Shut down syncdirs logging.
    """
    logging.shutdown()


def set_debug(debug_arg):
    """
    Set debugging mask from command line argument.
    """
    if not debug_arg:
        return

    mask_map = {
        "walk": SYNCDIRS_DEBUG_WALK,
        "sort": SYNCDIRS_DEBUG_SORT,
        "diff": SYNCDIRS_DEBUG_DIFF,
        "snapshot": SYNCDIRS_DEBUG_SNAPSHOT,
        "command": SYNCDIRS_DEBUG_COMMAND,
        "all": SYNCDIRS_DEBUG_ALL,
    }

    mask = 0
    for name in debug_arg.split(","):
        if name not in mask_map:
            raise ValueError(f"Unknown debug option: {name}")
        mask |= mask_map[name]
    set_debug_mask(mask)


def _add_sort_args(parser):
    parser.add_argument(
        "--max-tmp-files",
        type=int,
        help="Maximum number of temporary run files used by the external sort",
    )
    parser.add_argument(
        "--block-size",
        type=str,
        help="Size of each sorted run (for example 64M or 1GiB)",
    )
    parser.add_argument(
        "--tmp-dir",
        type=str,
        help="Directory for temporary run files",
    )


def _add_output_args(parser):
    parser.add_argument(
        "-r",
        "--route-dir",
        metavar="ROUTE_DIR",
        type=str,
        help="Write routed output snapshots to ROUTE_DIR",
    )
    parser.add_argument(
        "-n",
        "--no-report",
        action="store_true",
        help="Do not print the delta report",
    )
    parser.add_argument(
        "--compression",
        choices=COMPRESSION_TYPES,
        help="Compression for routed output snapshots",
    )


def _add_walk_args(parser):
    parser.add_argument(
        "--dir-timestamps",
        action="store_true",
        help="Record directory modification times",
    )
    parser.add_argument(
        "-F",
        "--follow-symlinks",
        action="store_true",
        help="Follow symlinks when walking file system trees",
    )
    parser.add_argument(
        "-e",
        "--exclude",
        metavar="PATTERN",
        dest="exclude_patterns",
        action="append",
        help="Exclude relative paths matching PATTERN (may be repeated)",
    )


def _add_quiet_arg(parser):
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Do not output progress or status updates",
    )


SCAN_CMD = "scan"
SORT_CMD = "sort"
DIFF_CMD = "diff"


def _add_command_subparsers(subparsers):
    # scan subcommand
    scan_parser = subparsers.add_parser(
        SCAN_CMD,
        help="Snapshot a directory tree and report changes since the baseline",
    )
    scan_parser.add_argument(
        "root",
        metavar="ROOT",
        type=str,
        help="The directory tree to scan",
    )
    scan_parser.add_argument(
        "-b",
        "--baseline",
        metavar="BASELINE",
        type=str,
        help="The baseline snapshot file to compare with and update",
    )
    _add_output_args(scan_parser)
    _add_walk_args(scan_parser)
    _add_sort_args(scan_parser)
    _add_quiet_arg(scan_parser)
    scan_parser.set_defaults(func=_scan_cmd)

    # sort subcommand
    sort_parser = subparsers.add_parser(
        SORT_CMD,
        help="Sort a snapshot file by path",
    )
    sort_parser.add_argument(
        "input",
        metavar="INPUT",
        type=str,
        help="The snapshot file to sort",
    )
    sort_parser.add_argument(
        "output",
        metavar="OUTPUT",
        type=str,
        help="The sorted snapshot file to write",
    )
    _add_sort_args(sort_parser)
    _add_quiet_arg(sort_parser)
    sort_parser.set_defaults(func=_sort_cmd)

    # diff subcommand
    diff_parser = subparsers.add_parser(
        DIFF_CMD,
        help="Compare two sorted snapshot files",
    )
    diff_parser.add_argument(
        "previous",
        metavar="PREVIOUS",
        type=str,
        help="The previous snapshot file (may be absent on the first run)",
    )
    diff_parser.add_argument(
        "current",
        metavar="CURRENT",
        type=str,
        help="The current snapshot file",
    )
    _add_output_args(diff_parser)
    _add_quiet_arg(diff_parser)
    diff_parser.set_defaults(func=_diff_cmd)


def main(args):
    """
    Main entry point for syncdirs.
    """
    parser = ArgumentParser(
        description="Directory snapshot and sync tool", prog=basename(args[0])
    )

    # Global arguments
    parser.add_argument(
        "-d",
        "--debug",
        metavar="DEBUGOPTS",
        type=str,
        help="A list of debug options to enable",
    )
    parser.add_argument("-v", "--verbose", help="Enable verbose output", action="count")
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        help="Report the version number of syncdirs",
        version=__version__,
    )
    # Subparser for command
    command_subparser = parser.add_subparsers(dest="command", help="Command")

    _add_command_subparsers(command_subparser)

    cmd_args = parser.parse_args(args[1:])

    status = 1

    try:
        set_debug(cmd_args.debug)
    except ValueError as err:
        print(err)
        parser.print_help()
        return status

    setup_logging(cmd_args)

    _log_debug_command("Parsed %s", " ".join(args[1:]))

    if "func" not in cmd_args:
        parser.print_help()
        shutdown_logging()
        return status

    if cmd_args.debug:
        status = cmd_args.func(cmd_args)
    else:
        try:
            status = cmd_args.func(cmd_args)
        # pylint: disable=broad-except
        except KeyboardInterrupt:  # pragma: no cover
            _log_info("Exiting on user cancel")
        except Exception as err:
            _log_error("Command failed: %s", err)

    shutdown_logging()
    return status


def run():
    """
    Console script entry point.
    """
    sys.exit(main(sys.argv))


# vim: set et ts=4 sw=4 :
