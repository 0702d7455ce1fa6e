# Copyright Red Hat
#
# autosnap/__init__.py - Automatic snapshot package initialisation
#
# This file is part of the autosnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Autosnap top-level package.
"""
from ._autosnap import *  # noqa: F401, F403
from ._autosnap import __all__  # noqa: F401

__version__ = "0.1.0"
