# Copyright Red Hat
#
# autosnap/manager/plugins/btrfs.py - Btrfs snapshot provider
#
# This file is part of the autosnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Btrfs snapshot provider using the btrfs-progs command line tool.
"""
from subprocess import run, CalledProcessError
from shutil import which
from os import environ
import re

from packaging.version import InvalidVersion, Version

from autosnap import (
    AUTOSNAP_SUBSYSTEM_BTRFS,
    AutosnapCalloutError,
    AutosnapPluginError,
    SnapshotEntry,
)
from ._plugin import Plugin, _decode_stderr, format_command

BTRFS_CMD = "btrfs"
BTRFS_VERSION = "--version"
BTRFS_SUBVOLUME = "subvolume"

# btrfs subvolume snapshot options
SUBVOLUME_SNAPSHOT = "snapshot"
SNAPSHOT_READONLY = "-r"

# btrfs subvolume list options
SUBVOLUME_LIST = "list"
LIST_BELOW = "-o"
LIST_SNAPSHOTS_ONLY = "-s"
LIST_GENERATION = "-g"
LIST_SORT_GEN = "--sort=gen"

# btrfs subvolume delete options
SUBVOLUME_DELETE = "delete"
DELETE_COMMIT_AFTER = "--commit-after"

MINIMUM_BTRFS_VERSION = Version("4.0")

_BTRFS_VERSION_RE = re.compile(r"btrfs-progs v?(?P<version>[0-9][0-9A-Za-z.+-]*)")

# ID 258 gen 12 cgen 12 top level 5 otime 2024-05-01 10:00:00 path @/snap
_SUBVOLUME_LIST_RE = re.compile(
    r"^ID (?P<id>[0-9]+) gen (?P<gen>[0-9]+) "
    r"(?:cgen [0-9]+ )?"
    r"top level [0-9]+ "
    r"(?:otime .+? )?"
    r"path (?P<path>.+)$"
)


def _check_btrfs_present():
    """
    Check for the presence of the btrfs command.

    :raises: ``AutosnapPluginError`` if the command is not found.
    """
    if not which(BTRFS_CMD):
        raise AutosnapPluginError(f"{BTRFS_CMD} command not found")


def parse_subvolume_list(output, logger=None):
    """
    Parse ``btrfs subvolume list -g`` output into a list of
    ``SnapshotEntry`` objects, preserving the order of the output.

    :param output: The decoded standard output of the command.
    :param logger: An optional logger for malformed lines.
    :returns: A list of ``SnapshotEntry`` objects.
    """
    entries = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        match = _SUBVOLUME_LIST_RE.match(line)
        if not match:
            if logger:
                logger.warning("Skipping malformed subvolume list line: %s", line)
            continue
        entries.append(
            SnapshotEntry(
                int(match.group("id")),
                int(match.group("gen")),
                match.group("path"),
            )
        )
    return entries


class Btrfs(Plugin):
    """
    Snapshot provider for btrfs subvolumes.
    """

    def __init__(self, logger, dry_run=False):
        super().__init__(logger, dry_run=dry_run)

        # Export LC_ALL=C so that command output can be parsed.
        self._env = dict(environ, LC_ALL="C", LANG="C")

        _check_btrfs_present()

        self._check_btrfs_version()

    def _log_debug_btrfs(self, msg, *args):
        """A wrapper for btrfs subsystem debug logs."""
        self.logger.debug(msg, *args, extra={"subsystem": AUTOSNAP_SUBSYSTEM_BTRFS})

    def _run(self, cmd_args):
        """
        Run a btrfs command and return the ``CompletedProcess``.

        :param cmd_args: The command and its arguments.
        :raises AutosnapCalloutError: If the command cannot be run or exits
                                      with a non-zero status.
        """
        self._log_debug_btrfs("Calling %s", format_command(cmd_args))
        try:
            return run(cmd_args, capture_output=True, check=True, env=self._env)
        except CalledProcessError as err:
            raise AutosnapCalloutError(
                f"{format_command(cmd_args)} failed with: {_decode_stderr(err)}"
            ) from err
        except OSError as err:
            raise AutosnapCalloutError(
                f"Error calling {cmd_args[0]}: {err}"
            ) from err

    def _run_mutating(self, cmd_args):
        """
        Run a btrfs command that modifies the file system, or log the
        command without running it in dry run mode.
        """
        if self.dry_run:
            self._log_notice("Dry run: %s", format_command(cmd_args))
            return None
        return self._run(cmd_args)

    def _get_btrfs_version(self):
        """
        Return the installed version of btrfs-progs.

        :returns: A ``packaging.version.Version`` object.
        """
        btrfs_cmd = self._run([BTRFS_CMD, BTRFS_VERSION])
        output = btrfs_cmd.stdout.decode("utf8").strip()
        match = _BTRFS_VERSION_RE.search(output)
        if not match:
            raise AutosnapPluginError(f"Could not parse btrfs-progs version: {output}")
        try:
            return Version(match.group("version"))
        except InvalidVersion as err:
            raise AutosnapPluginError(
                f"Could not parse btrfs-progs version: {output}"
            ) from err

    def _check_btrfs_version(self):
        """
        Check for the required minimum btrfs-progs version.
        """
        try:
            btrfs_version = self._get_btrfs_version()
        except AutosnapCalloutError as err:
            raise AutosnapPluginError(f"Error getting btrfs-progs version: {err}") from err
        if btrfs_version < MINIMUM_BTRFS_VERSION:
            raise AutosnapPluginError(
                f"Unsupported btrfs-progs version: {btrfs_version} "
                f"< {MINIMUM_BTRFS_VERSION}"
            )
        self._log_debug_btrfs("Found btrfs-progs version %s", btrfs_version)

    def create_snapshot(self, source, destination, writable=False):
        snapshot_cmd = [BTRFS_CMD, BTRFS_SUBVOLUME, SUBVOLUME_SNAPSHOT]
        if not writable:
            snapshot_cmd.append(SNAPSHOT_READONLY)
        snapshot_cmd.extend([source, destination])
        self._run_mutating(snapshot_cmd)

    def list_snapshots(self, volume):
        list_cmd = [
            BTRFS_CMD,
            BTRFS_SUBVOLUME,
            SUBVOLUME_LIST,
            LIST_BELOW,
            LIST_SNAPSHOTS_ONLY,
            LIST_GENERATION,
            LIST_SORT_GEN,
            volume,
        ]
        list_out = self._run(list_cmd)
        entries = parse_subvolume_list(
            list_out.stdout.decode("utf8", errors="replace"), logger=self.logger
        )
        self._log_debug_btrfs("Found %d snapshot(s) below %s", len(entries), volume)
        return entries

    def delete_snapshot(self, path):
        delete_cmd = [BTRFS_CMD, BTRFS_SUBVOLUME, SUBVOLUME_DELETE, DELETE_COMMIT_AFTER, path]
        self._run_mutating(delete_cmd)


__all__ = [
    "Btrfs",
    "parse_subvolume_list",
    "MINIMUM_BTRFS_VERSION",
]
