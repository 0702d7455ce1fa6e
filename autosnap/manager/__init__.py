# Copyright Red Hat
#
# autosnap/manager/__init__.py - Automatic snapshot manager
#
# This file is part of the autosnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Top level interface to the automatic snapshot manager.
"""

from ._manager import Manager, check_target_names
from ._mounts import ProcMountsReader

__all__ = [
    "Manager",
    "ProcMountsReader",
    "check_target_names",
]
