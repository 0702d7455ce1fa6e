# Copyright Red Hat
#
# tests/__init__.py - Automatic snapshot test package
#
# This file is part of the autosnap project.
#
# SPDX-License-Identifier: Apache-2.0
import logging
import os
import time

import autosnap.manager.plugins as plugins
from autosnap import AutosnapCalloutError, AutosnapSystemError, SnapshotEntry

log = logging.getLogger()
log.setLevel(logging.DEBUG)
formatter = logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s')
file_handler = logging.FileHandler("test.log")
file_handler.setFormatter(formatter)
console_handler = logging.StreamHandler()
console_handler.setFormatter(formatter)
log.addHandler(file_handler)
log.addHandler(console_handler)

os.environ["TZ"] = "UTC"
time.tzset()


class MockMounts(object):
    """
    Mount table reader returning a fixed list of btrfs mount points.

    Each volume is mounted from subvolume ``@<basename>`` unless ``roots``
    maps its mount point to another mount root.
    """

    def __init__(self, volumes=None, roots=None):
        self.volumes = list(volumes or [])
        self.roots = dict(roots or {})
        self.calls = 0

    def mounted_volumes(self, fstype):
        self.calls += 1
        return list(self.volumes) if fstype == "btrfs" else []

    def mount_root(self, mount_point):
        mount_point = mount_point.rstrip("/") or "/"
        if mount_point in self.roots:
            return self.roots[mount_point]
        if mount_point not in self.volumes:
            raise AutosnapSystemError(f"No entry for {mount_point}")
        return "/@" + os.path.basename(mount_point)


class MockPlugin(plugins.Plugin):
    """Snapshot provider that records calls instead of running btrfs"""

    def __init__(self, snapshots=None, fail_create=(), fail_delete=(), dry_run=False):
        super().__init__(log, dry_run=dry_run)
        self.snapshots = dict(snapshots or {})
        self.fail_create = set(fail_create)
        self.fail_delete = set(fail_delete)
        self.created = []
        self.deleted = []

    def create_snapshot(self, source, destination, writable=False):
        if source in self.fail_create:
            raise AutosnapCalloutError(f"snapshot of {source} failed")
        if self.dry_run:
            return
        self.created.append((source, destination, writable))

    def list_snapshots(self, volume):
        return list(self.snapshots.get(volume, []))

    def delete_snapshot(self, path):
        if path in self.fail_delete:
            raise AutosnapCalloutError(f"delete of {path} failed")
        if self.dry_run:
            return
        self.deleted.append(path)


def snapshot_entries(store_path, names_by_gen):
    """
    Build a list of ``SnapshotEntry`` objects below ``store_path`` from a
    ``{generation: name}`` dictionary, in dictionary order.
    """
    return [
        SnapshotEntry(256 + i, gen, os.path.join(store_path, name))
        for i, (gen, name) in enumerate(names_by_gen.items())
    ]

