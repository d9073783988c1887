# Copyright Red Hat
#
# syncdirs/delta/difftypes.py - Directory sync delta types
#
# This file is part of the syncdirs project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Delta event types
"""
from enum import Enum


class DeltaType(Enum):
    """
    Enum for the kinds of change between two snapshots. The values are the
    kind strings used in delta reports.
    """

    ADDED = "add"
    REMOVED = "del"
    MODIFIED = "mod"
