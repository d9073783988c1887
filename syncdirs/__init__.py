# Copyright Red Hat
#
# syncdirs/__init__.py - Directory sync package initialisation
#
# This file is part of the syncdirs project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Syncdirs top-level package.
"""
from ._syncdirs import *  # noqa: F401, F403
from ._syncdirs import __all__  # noqa: F401

__version__ = "0.1.0"
