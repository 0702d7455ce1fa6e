# Copyright Red Hat
#
# autosnap/manager/plugins/__init__.py - Automatic snapshot plugins
#
# This file is part of the autosnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Automatic snapshot provider plugin interface.
"""
from ._plugin import *  # noqa: F401, F403
from ._plugin import __all__  # noqa: F401
