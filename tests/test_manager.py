# Copyright Red Hat
#
# tests/test_manager.py - Manager core unit tests
#
# This file is part of the autosnap project.
#
# SPDX-License-Identifier: Apache-2.0
from datetime import datetime, timezone
import unittest
import logging
import tempfile
import os.path
import os

log = logging.getLogger()

import autosnap
from autosnap.manager import Manager, check_target_names

from tests import MockMounts, MockPlugin, snapshot_entries

_TIMESTAMP = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class CheckTargetNamesTests(unittest.TestCase):
    """Test target name validation"""

    def test_check_target_names_empty(self):
        with self.assertRaises(autosnap.AutosnapEmptyTargetsError):
            check_target_names([])

    def test_check_target_names_wildcard_with_others(self):
        for names in (["//", "/home"], ["/home", "//"], ["//", "//"]):
            with self.subTest(names=names):
                with self.assertRaises(autosnap.AutosnapWildcardError):
                    check_target_names(names)

    def test_check_target_names_ok(self):
        check_target_names(["//"])
        check_target_names(["/home", "/srv", "/home"])


class ManagerTestsBase(unittest.TestCase):
    """Common set up for Manager tests using temporary volume directories"""

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        tmpdir = tempfile.TemporaryDirectory(suffix="_test_manager")
        self.addCleanup(tmpdir.cleanup)
        self.root = tmpdir.name
        self.vol_a = os.path.join(self.root, "a")
        self.vol_b = os.path.join(self.root, "b")
        self.vol_c = os.path.join(self.root, "c")
        for vol in (self.vol_a, self.vol_b, self.vol_c):
            os.makedirs(vol)
        self.mounts = MockMounts([self.vol_a, self.vol_b, self.vol_c])

    def tearDown(self):
        log.debug("Tearing down %s", self._testMethodName)

    def store(self, volume, config=None):
        config = config or autosnap.Configuration()
        return os.path.join(volume, config.snapshot_dir)

    def listed(self, volume, config=None):
        """Return the snapshot directory of ``volume`` as btrfs lists it."""
        config = config or autosnap.Configuration()
        return "@" + os.path.basename(volume) + "/" + config.snapshot_dir

    def manager(self, plugin=None, **kwargs):
        config = autosnap.Configuration(**kwargs)
        return Manager(
            config,
            plugin=plugin if plugin is not None else MockPlugin(dry_run=config.dry_run),
            mounts=self.mounts,
            timestamp=_TIMESTAMP,
        )


class ManagerResolveTests(ManagerTestsBase):
    """Test target resolution"""

    def test_resolve_all_volumes(self):
        manager = self.manager()
        self.assertEqual(
            manager.resolve_targets(["//"]), [self.vol_a, self.vol_b, self.vol_c]
        )

    def test_resolve_all_volumes_stacked_mounts(self):
        self.mounts.volumes = [self.vol_a, self.vol_b, self.vol_a, self.vol_b + "/"]
        manager = self.manager()
        self.assertEqual(manager.resolve_targets(["//"]), [self.vol_a, self.vol_b])

    def test_run_all_volumes_stacked_mounts(self):
        self.mounts.volumes = [self.vol_a, self.vol_a]
        plugin = MockPlugin()
        manager = self.manager(plugin=plugin)
        manager.run(["//"])
        self.assertEqual([c[0] for c in plugin.created], [self.vol_a])

    def test_resolve_named_volumes_verbatim(self):
        manager = self.manager()
        names = [self.vol_c, self.vol_a + "/", self.vol_c]
        self.assertEqual(manager.resolve_targets(names), names)

    def test_resolve_unknown_volume_raises(self):
        manager = self.manager()
        with self.assertRaises(autosnap.AutosnapNotFoundError) as cm:
            manager.resolve_targets([self.vol_a, "/not/a/btrfs/volume"])
        self.assertEqual(cm.exception.exit_status, autosnap.EXIT_NOT_FOUND)

    def test_resolve_wildcard_with_others_before_scan(self):
        manager = self.manager()
        with self.assertRaises(autosnap.AutosnapWildcardError):
            manager.resolve_targets(["//", self.vol_a])
        self.assertEqual(self.mounts.calls, 0)

    def test_resolve_no_volumes_mounted(self):
        self.mounts.volumes = []
        manager = self.manager()
        self.assertEqual(manager.resolve_targets(["//"]), [])

    def test_unknown_volume_aborts_before_snapshot(self):
        plugin = MockPlugin()
        manager = self.manager(plugin=plugin)
        with self.assertRaises(autosnap.AutosnapNotFoundError):
            manager.run([self.vol_a, os.path.join(self.root, "nope")])
        self.assertEqual(plugin.created, [])
        self.assertFalse(os.path.exists(self.store(self.vol_a)))


class ManagerCreateTests(ManagerTestsBase):
    """Test snapshot creation"""

    def test_snapshot_name(self):
        manager = self.manager(label="hourly")
        self.assertEqual(manager.snapshot_name, "btrfs-auto-snap_hourly-2024-05-01-1200")

    def test_create_snapshots(self):
        plugin = MockPlugin()
        manager = self.manager(plugin=plugin, label="daily")
        created = manager.create_snapshots([self.vol_a, self.vol_b])
        name = "btrfs-auto-snap_daily-2024-05-01-1200"
        expected = [
            os.path.join(self.store(self.vol_a), name),
            os.path.join(self.store(self.vol_b), name),
        ]
        self.assertEqual(created, expected)
        self.assertEqual(
            plugin.created,
            [(self.vol_a, expected[0], False), (self.vol_b, expected[1], False)],
        )
        self.assertTrue(os.path.isdir(self.store(self.vol_a)))
        self.assertTrue(os.path.isdir(self.store(self.vol_b)))

    def test_create_snapshots_writable(self):
        plugin = MockPlugin()
        manager = self.manager(plugin=plugin, writable=True)
        manager.create_snapshots([self.vol_a])
        self.assertTrue(plugin.created[0][2])

    def test_create_snapshots_existing_store(self):
        os.makedirs(self.store(self.vol_a))
        plugin = MockPlugin()
        manager = self.manager(plugin=plugin)
        self.assertEqual(len(manager.create_snapshots([self.vol_a])), 1)

    def test_create_snapshots_custom_store(self):
        plugin = MockPlugin()
        manager = self.manager(plugin=plugin, snapshot_dir=".btrfs")
        manager.create_snapshots([self.vol_a])
        self.assertTrue(os.path.isdir(os.path.join(self.vol_a, ".btrfs")))

    def test_create_snapshots_name_collision_raises(self):
        plugin = MockPlugin()
        manager = self.manager(plugin=plugin, label="hourly")
        os.makedirs(os.path.join(self.store(self.vol_b), manager.snapshot_name))
        with self.assertRaises(autosnap.AutosnapExistsError) as cm:
            manager.create_snapshots([self.vol_a, self.vol_b])
        self.assertEqual(cm.exception.exit_status, autosnap.EXIT_EXISTS)
        self.assertEqual(plugin.created, [])

    def test_create_snapshots_duplicate_volume_raises(self):
        plugin = MockPlugin()
        manager = self.manager(plugin=plugin)
        with self.assertRaises(autosnap.AutosnapExistsError):
            manager.create_snapshots([self.vol_a, self.vol_a + "/"])
        self.assertEqual(plugin.created, [])

    def test_create_snapshots_failure_continues(self):
        plugin = MockPlugin(fail_create=[self.vol_b])
        manager = self.manager(plugin=plugin)
        created = manager.create_snapshots([self.vol_a, self.vol_b, self.vol_c])
        self.assertEqual(len(created), 2)
        self.assertEqual([c[0] for c in plugin.created], [self.vol_a, self.vol_c])
        self.assertEqual(len(manager.failures), 1)

    def test_create_snapshots_failure_aborts(self):
        plugin = MockPlugin(fail_create=[self.vol_b])
        manager = self.manager(plugin=plugin, on_error=autosnap.ON_ERROR_ABORT)
        with self.assertRaises(autosnap.AutosnapCalloutError):
            manager.create_snapshots([self.vol_a, self.vol_b, self.vol_c])
        self.assertEqual([c[0] for c in plugin.created], [self.vol_a])

    def test_run_failure_raises_after_all_volumes(self):
        plugin = MockPlugin(fail_create=[self.vol_a])
        manager = self.manager(plugin=plugin)
        with self.assertRaises(autosnap.AutosnapCalloutError) as cm:
            manager.run(["//"])
        self.assertEqual(cm.exception.exit_status, autosnap.EXIT_CALLOUT)
        self.assertEqual([c[0] for c in plugin.created], [self.vol_b, self.vol_c])

    def test_create_snapshots_dry_run(self):
        plugin = MockPlugin(dry_run=True)
        manager = self.manager(plugin=plugin, dry_run=True)
        with self.assertLogs("autosnap", level="NOTICE") as cm:
            created = manager.create_snapshots([self.vol_a])
        self.assertEqual(len(created), 1)
        self.assertEqual(plugin.created, [])
        self.assertFalse(os.path.exists(self.store(self.vol_a)))
        self.assertIn("Dry run: mkdir", cm.output[0])


class ManagerPruneTests(ManagerTestsBase):
    """Test retention pruning"""

    def _hourly_entries(self, volume, extra=None):
        store = self.listed(volume)
        names = {
            8: "btrfs-auto-snap_hourly-2024-05-01-0900",
            10: "btrfs-auto-snap_hourly-2024-05-01-1100",
            7: "btrfs-auto-snap_hourly-2024-05-01-0800",
            9: "btrfs-auto-snap_hourly-2024-05-01-1000",
        }
        names.update(extra or {})
        return snapshot_entries(store, names)

    def test_prune_without_keep_does_nothing(self):
        plugin = MockPlugin({self.vol_a: self._hourly_entries(self.vol_a)})
        manager = self.manager(plugin=plugin, label="hourly")
        self.assertEqual(manager.prune_snapshots([self.vol_a]), [])
        self.assertEqual(plugin.deleted, [])

    def test_prune_keep_two(self):
        entries = self._hourly_entries(
            self.vol_a, extra={11: "unrelated-snapshot", 12: "btrfs-auto-snap_daily-2024-05-01-0000"}
        )
        plugin = MockPlugin({self.vol_a: entries})
        manager = self.manager(plugin=plugin, label="hourly", keep=2)
        deleted = manager.prune_snapshots([self.vol_a])
        store = self.store(self.vol_a)
        expected = [
            os.path.join(store, "btrfs-auto-snap_hourly-2024-05-01-0900"),
            os.path.join(store, "btrfs-auto-snap_hourly-2024-05-01-0800"),
        ]
        self.assertEqual(deleted, expected)
        self.assertEqual(plugin.deleted, expected)

    def test_prune_keeps_highest_generations(self):
        entries = self._hourly_entries(self.vol_a)
        for keep in range(1, 6):
            with self.subTest(keep=keep):
                plugin = MockPlugin({self.vol_a: entries})
                manager = self.manager(plugin=plugin, label="hourly", keep=keep)
                manager.prune_snapshots([self.vol_a])
                deleted = {os.path.basename(path) for path in plugin.deleted}
                kept = [e for e in entries if e.name not in deleted]
                self.assertEqual(len(kept), min(keep, len(entries)))
                self.assertEqual(
                    sorted(e.generation for e in kept),
                    sorted(e.generation for e in entries)[-len(kept):],
                )

    def test_prune_fewer_than_keep(self):
        plugin = MockPlugin({self.vol_a: self._hourly_entries(self.vol_a)})
        manager = self.manager(plugin=plugin, label="hourly", keep=10)
        self.assertEqual(manager.prune_snapshots([self.vol_a]), [])

    def test_prune_other_prefix_untouched(self):
        plugin = MockPlugin({self.vol_a: self._hourly_entries(self.vol_a)})
        manager = self.manager(plugin=plugin, label="hourly", prefix="other", keep=1)
        self.assertEqual(manager.prune_snapshots([self.vol_a]), [])

    def test_prune_other_directory_untouched(self):
        entries = snapshot_entries(
            "@/elsewhere",
            {20: "btrfs-auto-snap_hourly-2024-05-02-0000", 21: "btrfs-auto-snap_hourly-2024-05-02-0100"},
        )
        plugin = MockPlugin({self.vol_a: entries})
        manager = self.manager(plugin=plugin, label="hourly", keep=1)
        self.assertEqual(manager.prune_snapshots([self.vol_a]), [])

    def test_prune_top_level_mount(self):
        self.mounts.roots[self.vol_a] = "/"
        entries = snapshot_entries(
            ".snapshot-store",
            {5: "btrfs-auto-snap_-2024-05-02-0000", 6: "btrfs-auto-snap_-2024-05-02-0100"},
        ) + snapshot_entries(
            "@a/.snapshot-store", {7: "btrfs-auto-snap_-2024-05-02-0200"}
        )
        plugin = MockPlugin({self.vol_a: entries})
        manager = self.manager(plugin=plugin, keep=1)
        self.assertEqual(
            manager.prune_snapshots([self.vol_a]),
            [os.path.join(self.store(self.vol_a), "btrfs-auto-snap_-2024-05-02-0000")],
        )

    def _srv_listing(self):
        # Both mounts share subvolume @srv: /srv mounts it, /srv/data is a
        # bind mount of its "data" directory.
        return snapshot_entries(
            "@srv/.snapshot-store", {30: "btrfs-auto-snap_hourly-2024-05-01-1100"}
        ) + snapshot_entries(
            "@srv/data/.snapshot-store",
            {
                40: "btrfs-auto-snap_hourly-2024-05-01-1200",
                50: "btrfs-auto-snap_hourly-2024-05-01-1300",
            },
        )

    def _srv_mounts(self):
        srv = os.path.join(self.root, "srv")
        data = os.path.join(srv, "data")
        self.mounts = MockMounts([srv, data], roots={srv: "/@srv", data: "/@srv/data"})
        return (srv, data)

    def test_prune_ignores_nested_store(self):
        (srv, _) = self._srv_mounts()
        plugin = MockPlugin({srv: self._srv_listing()})
        manager = self.manager(plugin=plugin, label="hourly", keep=2)
        self.assertEqual(manager.prune_snapshots([srv]), [])
        self.assertEqual(plugin.deleted, [])

    def test_prune_bind_mounted_store(self):
        (srv, data) = self._srv_mounts()
        plugin = MockPlugin({srv: self._srv_listing(), data: self._srv_listing()})
        manager = self.manager(plugin=plugin, label="hourly", keep=1)
        deleted = manager.prune_snapshots([srv, data])
        self.assertEqual(
            deleted,
            [os.path.join(data, ".snapshot-store", "btrfs-auto-snap_hourly-2024-05-01-1200")],
        )
        self.assertEqual(plugin.deleted, deleted)

    def test_prune_mount_root_failure_continues(self):
        plugin = MockPlugin(
            {
                self.vol_a: self._hourly_entries(self.vol_a),
                self.vol_b: self._hourly_entries(self.vol_b),
            }
        )
        manager = self.manager(plugin=plugin, label="hourly", keep=3)
        missing = os.path.join(self.root, "gone")
        deleted = manager.prune_snapshots([missing, self.vol_b])
        self.assertEqual(
            deleted,
            [os.path.join(self.store(self.vol_b), "btrfs-auto-snap_hourly-2024-05-01-0800")],
        )
        self.assertEqual(len(manager.failures), 1)

    def test_prune_per_volume(self):
        plugin = MockPlugin(
            {
                self.vol_a: self._hourly_entries(self.vol_a),
                self.vol_b: self._hourly_entries(self.vol_b),
            }
        )
        manager = self.manager(plugin=plugin, label="hourly", keep=3)
        deleted = manager.prune_snapshots([self.vol_a, self.vol_b, self.vol_c])
        self.assertEqual(
            deleted,
            [
                os.path.join(self.store(self.vol_a), "btrfs-auto-snap_hourly-2024-05-01-0800"),
                os.path.join(self.store(self.vol_b), "btrfs-auto-snap_hourly-2024-05-01-0800"),
            ],
        )

    def test_prune_generation_ties_keep_listing_order(self):
        entries = snapshot_entries(
            self.listed(self.vol_a),
            {1: "btrfs-auto-snap_-2024-05-01-0100"},
        ) + snapshot_entries(
            self.listed(self.vol_a),
            {1: "btrfs-auto-snap_-2024-05-01-0200"},
        )
        plugin = MockPlugin({self.vol_a: entries})
        manager = self.manager(plugin=plugin, keep=1)
        deleted = manager.prune_snapshots([self.vol_a])
        self.assertEqual(
            deleted,
            [os.path.join(self.store(self.vol_a), "btrfs-auto-snap_-2024-05-01-0200")],
        )

    def test_prune_delete_failure_continues(self):
        store = self.store(self.vol_a)
        failing = os.path.join(store, "btrfs-auto-snap_hourly-2024-05-01-0900")
        plugin = MockPlugin(
            {self.vol_a: self._hourly_entries(self.vol_a)}, fail_delete=[failing]
        )
        manager = self.manager(plugin=plugin, label="hourly", keep=1)
        deleted = manager.prune_snapshots([self.vol_a])
        self.assertEqual(len(deleted), 2)
        self.assertNotIn(failing, deleted)
        self.assertEqual(len(manager.failures), 1)

    def test_prune_delete_failure_aborts(self):
        store = self.store(self.vol_a)
        failing = os.path.join(store, "btrfs-auto-snap_hourly-2024-05-01-1000")
        plugin = MockPlugin(
            {self.vol_a: self._hourly_entries(self.vol_a)}, fail_delete=[failing]
        )
        manager = self.manager(
            plugin=plugin, label="hourly", keep=1, on_error=autosnap.ON_ERROR_ABORT
        )
        with self.assertRaises(autosnap.AutosnapCalloutError):
            manager.prune_snapshots([self.vol_a])
        self.assertEqual(plugin.deleted, [])

    def test_prune_dry_run(self):
        plugin = MockPlugin({self.vol_a: self._hourly_entries(self.vol_a)}, dry_run=True)
        manager = self.manager(plugin=plugin, label="hourly", keep=2, dry_run=True)
        deleted = manager.prune_snapshots([self.vol_a])
        self.assertEqual(len(deleted), 2)
        self.assertEqual(plugin.deleted, [])

    def test_run_create_then_prune(self):
        plugin = MockPlugin({self.vol_a: self._hourly_entries(self.vol_a)})
        manager = self.manager(plugin=plugin, label="hourly", keep=3)
        manager.run([self.vol_a])
        self.assertEqual(len(plugin.created), 1)
        self.assertEqual(
            [os.path.basename(path) for path in plugin.deleted],
            ["btrfs-auto-snap_hourly-2024-05-01-0800"],
        )
