# Copyright Red Hat
#
# autosnap/manager/_mounts.py - Automatic snapshot mount table support
#
# This file is part of the autosnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Mount table integration for autosnap
"""
from typing import Iterator, List
import collections
import logging

from autosnap import (
    AUTOSNAP_SUBSYSTEM_MOUNTS,
    AutosnapSystemError,
)

_log = logging.getLogger(__name__)

_log_warn = _log.warning


def _log_debug_mounts(msg, *args, **kwargs):
    """A wrapper for mounts subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": AUTOSNAP_SUBSYSTEM_MOUNTS}, **kwargs)


#: Path to /proc/self/mounts
PROC_MOUNTS = "/proc/self/mounts"

#: Path to /proc/self/mountinfo
PROC_MOUNTINFO = "/proc/self/mountinfo"


def _unescape_mounts(escaped: str) -> str:
    """
    Unescape octal escapes in values read from /proc/*mounts

    :param escaped: The string to unescape.
    :type escaped: str
    :returns: The unescaped string with octal values replaced by literal
              character values.
    :rtype: str
    """
    return (
        escaped.replace("\\040", " ")
        .replace("\\011", "\t")
        .replace("\\012", "\n")
        .replace("\\134", "\\")
    )


def normalize_mount_point(mount_point: str) -> str:
    """
    Strip any trailing '/' from a mount point path other than the root
    directory.
    """
    if mount_point != "/":
        return mount_point.rstrip("/") or "/"
    return mount_point


def _mount_table_lines(path: str) -> Iterator[str]:
    """
    Yield the stripped, non-blank lines of a /proc mount table file.

    :raises AutosnapSystemError: If the file does not exist or cannot be
                                 read.
    """
    try:
        with open(path, "r", encoding="utf8") as fp:
            for line in fp:
                line = line.strip()
                if line:
                    yield line
    except OSError as err:
        raise AutosnapSystemError(f"Could not read mount table {path}: {err}") from err


class ProcMountsReader:
    """Reader for /proc/mounts format files."""

    # Define a named tuple to give structure to each /proc/mounts entry.
    MountsEntry = collections.namedtuple(
        "MountsEntry", ["what", "where", "fstype", "options", "freq", "passno"]
    )

    def __init__(self, path=PROC_MOUNTS, mountinfo_path=PROC_MOUNTINFO):
        """Initialize with the path to a mounts file.

        :param path: Path to the mounts file (e.g., '/proc/mounts')
        :param mountinfo_path: Path to the matching mountinfo file.
        """
        self.path = path
        self.mountinfo_path = mountinfo_path

    def __iter__(self) -> Iterator["ProcMountsReader.MountsEntry"]:
        """
        Iterate over the entries of the mounts file in file order.

        :yields: A ``MountsEntry`` for each well formed line.
        :raises AutosnapSystemError: If the mounts file cannot be read.
        """
        for line in _mount_table_lines(self.path):
            parts = line.split()
            if len(parts) != 6:
                _log_warn("Skipping malformed %s line: %s", self.path, line)
                continue

            what, where, fstype, options, freq, passno = parts
            yield self.MountsEntry(
                _unescape_mounts(what),
                _unescape_mounts(where),
                fstype,
                _unescape_mounts(options),
                freq,
                passno,
            )

    def mounted_volumes(self, fstype: str) -> List[str]:
        """
        Return the mount points of every file system of type ``fstype``.

        :param fstype: The file system type to match, e.g. "btrfs".
        :returns: A list of mount point paths in mount table order.
        """
        volumes = [entry.where for entry in self if entry.fstype == fstype]
        _log_debug_mounts(
            "Found %d %s mount(s) in %s: %s",
            len(volumes),
            fstype,
            self.path,
            ", ".join(volumes),
        )
        return volumes

    def mount_root(self, mount_point: str) -> str:
        """
        Return the path, within its file system, of the directory mounted
        at ``mount_point``.

        This is the root field of the mountinfo entry. For btrfs it is the
        subvolume path below the top level subvolume, extended by the
        directory path for bind mounts of a directory. When mounts are
        stacked the last entry, which is the visible one, wins.

        :param mount_point: A mounted path.
        :returns: An absolute path such as ``/@home`` or ``/``.
        :raises AutosnapSystemError: If the mountinfo file cannot be read
                                     or has no entry for ``mount_point``.
        """
        wanted = normalize_mount_point(mount_point)
        root = None
        for line in _mount_table_lines(self.mountinfo_path):
            fields = line.split()
            # id parent major:minor root mount-point options [optional...] - ...
            if len(fields) < 10 or "-" not in fields[6:]:
                _log_warn("Skipping malformed %s line: %s", self.mountinfo_path, line)
                continue
            if normalize_mount_point(_unescape_mounts(fields[4])) == wanted:
                root = _unescape_mounts(fields[3])
        if root is None:
            raise AutosnapSystemError(
                f"No entry for {mount_point} in {self.mountinfo_path}"
            )
        _log_debug_mounts("Mount root of %s is %s", mount_point, root)
        return root

    def __repr__(self):
        """
        Return a machine readable string representation of this
        ProcMountsReader.
        """
        return f"ProcMountsReader(path='{self.path}')"


__all__ = [
    "PROC_MOUNTS",
    "PROC_MOUNTINFO",
    "ProcMountsReader",
    "normalize_mount_point",
]
