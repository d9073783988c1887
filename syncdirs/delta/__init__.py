# Copyright Red Hat
#
# syncdirs/delta/__init__.py - Directory sync delta package
#
# This file is part of the syncdirs project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Snapshot delta package.

Provides directory snapshots, external sorting of snapshot records and
merge-diffing of sorted snapshots into routed sync outputs. The main entry
points are ``Syncer`` and ``SyncOptions``.
"""
from .difftypes import DeltaType
from .engine import DeltaEvent, DeltaResults, DeltaStats, DiffEngine
from .extsort import ExternalSorter
from .options import SyncOptions
from .records import Record
from .sinks import CollectSink, DeltaSink, MultiSink, ReportSink, RouteSink
from .snapshot import SnapshotStore
from .syncer import SyncSummary, Syncer
from .treewalk import TreeWalker

__all__ = [
    "CollectSink",
    "DeltaEvent",
    "DeltaResults",
    "DeltaSink",
    "DeltaStats",
    "DeltaType",
    "DiffEngine",
    "ExternalSorter",
    "MultiSink",
    "Record",
    "ReportSink",
    "RouteSink",
    "SnapshotStore",
    "SyncOptions",
    "SyncSummary",
    "Syncer",
    "TreeWalker",
]
