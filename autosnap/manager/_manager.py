# Copyright Red Hat
#
# autosnap/manager/_manager.py - Automatic snapshot manager
#
# This file is part of the autosnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Manager interface for automatic btrfs snapshots.
"""
from datetime import datetime, timezone
from os.path import dirname, exists, join, normpath
from typing import List, Optional
import logging
import os

from autosnap import (
    AUTOSNAP_SUBSYSTEM_MANAGER,
    ALL_VOLUMES,
    BTRFS_FSTYPE,
    LOG_NOTICE,
    ON_ERROR_ABORT,
    AutosnapError,
    AutosnapCalloutError,
    AutosnapEmptyTargetsError,
    AutosnapExistsError,
    AutosnapNotFoundError,
    AutosnapSystemError,
    AutosnapWildcardError,
    Configuration,
    SnapshotEntry,
    format_snapshot_name,
    parse_snapshot_name,
)
from ._mounts import ProcMountsReader, normalize_mount_point
from .plugins.btrfs import Btrfs

_log = logging.getLogger(__name__)

_log_info = _log.info
_log_error = _log.error


def _log_notice(msg, *args, **kwargs):
    """Log at notice level."""
    _log.log(LOG_NOTICE, msg, *args, **kwargs)


def _log_debug_manager(msg, *args, **kwargs):
    """A wrapper for manager subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": AUTOSNAP_SUBSYSTEM_MANAGER}, **kwargs)


def check_target_names(names: List[str]):
    """
    Check the list of target names given on the command line.

    :param names: The positional target arguments.
    :raises AutosnapEmptyTargetsError: If ``names`` is empty.
    :raises AutosnapWildcardError: If the all volumes token is combined with
                                   other target names.
    """
    if not names:
        raise AutosnapEmptyTargetsError("Argument list empty")
    if len(names) > 1 and ALL_VOLUMES in names:
        raise AutosnapWildcardError(
            f"The {ALL_VOLUMES} must be the only argument if it is given."
        )


class Manager:
    """
    Snapshot Manager: resolve target volumes, take one snapshot of each
    and prune old snapshots according to a ``Configuration``.

    The mount table reader and the snapshot provider may be replaced by
    passing ``mounts`` and ``plugin`` objects with the same interface as
    ``ProcMountsReader`` and ``Plugin``.
    """

    def __init__(
        self,
        config: Configuration,
        plugin=None,
        mounts=None,
        timestamp: Optional[datetime] = None,
    ):
        self.config = config
        self.mounts = mounts if mounts is not None else ProcMountsReader()
        if plugin is None:
            plugin = Btrfs(logging.getLogger("autosnap.btrfs"), dry_run=config.dry_run)
        self.plugin = plugin
        self.timestamp = timestamp or datetime.now(timezone.utc)
        self.failures: List[str] = []

    @property
    def snapshot_name(self) -> str:
        """The name of the snapshots taken by this run."""
        return format_snapshot_name(
            self.config.prefix, self.config.label, self.timestamp
        )

    def _snapshot_store(self, volume: str) -> str:
        return join(volume, self.config.snapshot_dir)

    def _handle_failure(self, action: str, err: AutosnapError):
        """
        Apply the configured error policy to a failed operation.
        """
        if self.config.on_error == ON_ERROR_ABORT:
            raise err
        _log_error("Failed to %s: %s", action, err)
        self.failures.append(f"{action}: {err}")

    def resolve_targets(self, names: List[str]) -> List[str]:
        """
        Resolve the list of target names to a list of volumes.

        :param names: The positional target arguments.
        :returns: The list of btrfs mount points to snapshot.
        :raises AutosnapNotFoundError: If a name is not a mounted btrfs
                                       volume.
        """
        check_target_names(names)
        mounted = self.mounts.mounted_volumes(BTRFS_FSTYPE)

        if names == [ALL_VOLUMES]:
            # Stacked mounts list one mount point more than once.
            targets = []
            seen = set()
            for mount in mounted:
                key = normalize_mount_point(mount)
                if key not in seen:
                    seen.add(key)
                    targets.append(mount)
            _log_debug_manager("Expanded %s to %s", ALL_VOLUMES, ", ".join(targets))
        else:
            targets = list(names)

        mounted_set = {normalize_mount_point(mount) for mount in mounted}
        for target in targets:
            if normalize_mount_point(target) not in mounted_set:
                raise AutosnapNotFoundError(
                    f"{target} is not a mounted {BTRFS_FSTYPE} volume"
                )
        return targets

    def check_create_snapshots(self, volumes: List[str]):
        """
        Check that the snapshots for ``volumes`` can be created without
        reusing an existing name.

        :raises AutosnapExistsError: If a snapshot path already exists or a
                                     volume is listed more than once.
        """
        seen = set()
        for volume in volumes:
            destination = join(self._snapshot_store(volume), self.snapshot_name)
            key = normalize_mount_point(volume)
            if key in seen:
                raise AutosnapExistsError(
                    f"Snapshot {destination} would be created more than once"
                )
            seen.add(key)
            if exists(destination):
                raise AutosnapExistsError(f"Snapshot {destination} already exists")

    def _ensure_snapshot_store(self, store: str):
        if os.path.isdir(store):
            return
        if self.config.dry_run:
            _log_notice("Dry run: mkdir %s", store)
            return
        _log_debug_manager("Creating snapshot directory %s", store)
        try:
            os.makedirs(store, exist_ok=True)
        except OSError as err:
            raise AutosnapSystemError(
                f"Could not create snapshot directory {store}: {err}"
            ) from err

    def create_snapshots(self, volumes: List[str]) -> List[str]:
        """
        Create a snapshot of each volume in ``volumes``.

        :param volumes: The list of resolved target volumes.
        :returns: The list of snapshot paths created (or that would have
                  been created in dry run mode).
        """
        self.check_create_snapshots(volumes)
        created = []
        for volume in volumes:
            store = self._snapshot_store(volume)
            destination = join(store, self.snapshot_name)
            try:
                self._ensure_snapshot_store(store)
                self.plugin.create_snapshot(
                    volume, destination, writable=self.config.writable
                )
            except (AutosnapCalloutError, AutosnapSystemError) as err:
                self._handle_failure(f"snapshot {volume}", err)
                continue
            if not self.config.dry_run:
                _log_notice(
                    "Created %s snapshot %s",
                    "writable" if self.config.writable else "read-only",
                    destination,
                )
            created.append(destination)
        return created

    def listed_store(self, volume: str) -> str:
        """
        Return the path of the snapshot directory of ``volume`` in the form
        used by ``btrfs subvolume list``: relative to the top level
        subvolume, with no leading '/'.
        """
        root = self.mounts.mount_root(volume)
        return normpath(join(root, self.config.snapshot_dir)).lstrip("/")

    def _is_managed_snapshot(self, entry: SnapshotEntry, store_path: str) -> bool:
        """
        Return ``True`` if ``entry`` lives directly in ``store_path`` and was
        named by this prefix and label.
        """
        if dirname(entry.path) != store_path:
            return False
        parsed = parse_snapshot_name(entry.name, self.config.prefix)
        if parsed is None:
            return False
        (label, _) = parsed
        return label == self.config.label

    def managed_snapshots(
        self, entries: List[SnapshotEntry], store_path: str
    ) -> List[SnapshotEntry]:
        """
        Filter ``entries`` to the snapshots in ``store_path`` managed by this
        prefix and label and return them newest (highest generation) first.
        """
        ordered = sorted(entries, key=lambda entry: entry.generation, reverse=True)
        return [
            entry for entry in ordered if self._is_managed_snapshot(entry, store_path)
        ]

    def prune_snapshots(self, volumes: List[str]) -> List[str]:
        """
        Delete matching snapshots beyond the configured retention count.

        :param volumes: The list of resolved target volumes.
        :returns: The list of snapshot paths deleted (or that would have
                  been deleted in dry run mode).
        """
        if self.config.keep is None:
            return []

        deleted = []
        for volume in volumes:
            try:
                store_path = self.listed_store(volume)
                entries = self.plugin.list_snapshots(volume)
            except (AutosnapCalloutError, AutosnapSystemError) as err:
                self._handle_failure(f"list snapshots of {volume}", err)
                continue

            matching = self.managed_snapshots(entries, store_path)
            _log_debug_manager(
                "Found %d matching snapshot(s) on %s (keep=%d)",
                len(matching),
                volume,
                self.config.keep,
            )

            countdown = self.config.keep
            for entry in matching:
                countdown -= 1
                if countdown >= 0:
                    continue
                path = join(self._snapshot_store(volume), entry.name)
                try:
                    self.plugin.delete_snapshot(path)
                except AutosnapCalloutError as err:
                    self._handle_failure(f"delete snapshot {path}", err)
                    continue
                if not self.config.dry_run:
                    _log_notice("Deleted snapshot %s", path)
                deleted.append(path)
        return deleted

    def run(self, names: List[str]):
        """
        Resolve ``names``, snapshot each volume and prune old snapshots.

        :param names: The positional target arguments.
        :raises AutosnapCalloutError: If any btrfs operation failed while
                                      the error policy is "continue".
        """
        volumes = self.resolve_targets(names)
        _log_info("Snapshotting %s", ", ".join(volumes))
        self.create_snapshots(volumes)
        self.prune_snapshots(volumes)
        if self.failures:
            raise AutosnapCalloutError(
                f"{len(self.failures)} operation(s) failed: "
                + "; ".join(self.failures)
            )


__all__ = [
    "Manager",
    "check_target_names",
]
