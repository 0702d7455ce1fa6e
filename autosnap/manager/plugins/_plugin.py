# Copyright Red Hat
#
# autosnap/manager/plugins/_plugin.py - Automatic snapshot plugins
#
# This file is part of the autosnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Automatic snapshot provider plugin interface.
"""
import shlex

from autosnap import LOG_NOTICE


def _decode_stderr(err):
    """
    Decode and strip the stderr member of a ``CalledProcessError`` and
    return the result as a string.

    :param err: A ``CalledProcessError`` like exception.
    :returns: A stripped string representation of the exception's stderr
              member.
    """
    if not err.stderr:
        return ""
    if isinstance(err.stderr, bytes):
        return err.stderr.decode("utf8", errors="replace").strip()
    return err.stderr.strip()


def format_command(cmd_args):
    """
    Format a command argument list for display.
    """
    return shlex.join(cmd_args)


class Plugin:
    """
    Abstract base class for autosnap snapshot providers.
    """

    def __init__(self, logger, dry_run=False):
        self.logger = logger
        self.dry_run = dry_run

    def _log_notice(self, *args):
        """
        Log at notice level.
        """
        self.logger.log(LOG_NOTICE, *args)

    def create_snapshot(self, source, destination, writable=False):
        """
        Create a snapshot of the volume mounted at ``source`` at the path
        ``destination``.

        :param source: The mount point of the volume to snapshot.
        :param destination: The path of the new snapshot.
        :param writable: ``True`` to create a writable snapshot, or
                         ``False`` for a read-only snapshot.
        """
        raise NotImplementedError

    def list_snapshots(self, volume):
        """
        List the snapshots found below the volume mounted at ``volume``.

        :param volume: The mount point of the volume to inspect.
        :returns: A list of ``SnapshotEntry`` objects in the order reported
                  by the provider. Entry paths are relative to the top
                  level subvolume of the file system.
        """
        raise NotImplementedError

    def delete_snapshot(self, path):
        """
        Delete the snapshot at ``path``.

        :param path: The path of the snapshot to be removed.
        """
        raise NotImplementedError


__all__ = [
    "Plugin",
    "format_command",
]
