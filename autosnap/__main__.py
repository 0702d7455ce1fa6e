# Copyright Red Hat
#
# autosnap/__main__.py - Automatic snapshot module entry point
#
# This file is part of the autosnap project.
#
# SPDX-License-Identifier: Apache-2.0
from autosnap.command import run

run()
