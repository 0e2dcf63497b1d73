# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import os

from storagelinks.errors import ResolverError, SymlinkCheckError
from storagelinks.fs_utils import Path, temp_dir
from storagelinks.symlink_checker import (
    check_all,
    find_violations,
    iter_symlinks,
    missing_links,
    snapshot,
    ViolationKind,
)
from storagelinks.tests.common import DevTree, FakeResolver, StorageLinksTestCase


class SymlinkCheckerTestCase(StorageLinksTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._td_ctx = temp_dir()
        self.tree = DevTree(self._td_ctx.__enter__())
        self.addCleanup(self._td_ctx.__exit__, None, None, None)

    def _healthy_links(self):
        return [
            self.tree.link("by-id", "scsi-0QEMU_disk", "sda"),
            self.tree.link("by-id", "scsi-0QEMU_disk-part1", "sda1"),
            self.tree.link("by-partlabel", "test1", "sda1"),
            self.tree.link("by-uuid", "1234-abcd", "sdb"),
        ]

    def _violations(self, resolver=None):
        return find_violations(
            self.tree.disk, resolver or FakeResolver(), dev_root=self.tree.dev
        )

    def test_healthy(self) -> None:
        self._healthy_links()
        self.assertEqual([], self._violations())
        check_all(self.tree.disk, FakeResolver(), dev_root=self.tree.dev)

    def test_empty_namespace(self) -> None:
        self.assertEqual([], self._violations())

    def test_enumerates_recursively_and_sorted(self) -> None:
        links = self._healthy_links()
        os.makedirs(self.tree.disk / "by-path/nested")
        nested = self.tree.disk / "by-path/nested/pci-0000"
        os.symlink("../../../sdb", nested)
        # Regular files are not links, and are not reported
        (self.tree.disk / "by-id/not-a-link").touch()
        self.assertEqual(sorted(links + [nested]), iter_symlinks(self.tree.disk))
        self.assertEqual([], self._violations())

    def test_dangling_link(self) -> None:
        self._healthy_links()
        self.tree.remove_device("sdb")
        (v,) = self._violations()
        self.assertEqual(ViolationKind.DANGLING_LINK, v.kind)
        self.assertEqual(self.tree.disk / "by-uuid/1234-abcd", v.path)
        self.assertEqual(self.tree.dev / "sdb", v.target)
        self.assertIn("doesn't exist", v.describe())

    def test_link_to_missing_name(self) -> None:
        link = self.tree.link("by-label", "gone", "sdz")
        (v,) = self._violations()
        self.assertEqual(ViolationKind.DANGLING_LINK, v.kind)
        self.assertEqual(link, v.path)

    def test_name_mismatch(self) -> None:
        links = self._healthy_links()
        resolver = FakeResolver(names={links[2]: "sdb"})
        (v,) = self._violations(resolver)
        self.assertEqual(ViolationKind.NAME_MISMATCH, v.kind)
        self.assertEqual(links[2], v.path)
        self.assertEqual(self.tree.dev / "sda1", v.target)
        self.assertEqual(self.tree.dev / "sdb", v.expected)
        self.assertIn("'" + str(self.tree.dev / "sdb") + "' was expected", v.describe())

    def test_resolver_failure_on_live_link(self) -> None:
        links = self._healthy_links()
        (v,) = self._violations(FakeResolver(failing=[links[0]]))
        self.assertEqual(ViolationKind.NAME_MISMATCH, v.kind)
        self.assertIn("no device for", v.detail)

    def test_reports_every_violation(self) -> None:
        links = self._healthy_links()
        dangling = self.tree.link("by-partuuid", "dead", "sdq")
        resolver = FakeResolver(names={links[0]: "sdb", links[3]: "sda"})
        violations = self._violations(resolver)
        self.assertEqual(
            [
                (links[0], ViolationKind.NAME_MISMATCH),
                (dangling, ViolationKind.DANGLING_LINK),
                (links[3], ViolationKind.NAME_MISMATCH),
            ],
            sorted((v.path, v.kind) for v in violations),
        )
        with self.assertRaises(SymlinkCheckError) as ctx:
            check_all(self.tree.disk, resolver, dev_root=self.tree.dev)
        self.assertEqual(3, len(ctx.exception.violations))
        self.assertIn("3 bad symlink(s)", str(ctx.exception))

    def test_idempotent(self) -> None:
        links = self._healthy_links()
        self.tree.link("by-label", "gone", "sdz")
        resolver = FakeResolver(names={links[1]: "sdb"})
        self.assertEqual(self._violations(resolver), self._violations(resolver))

    def test_read_only(self) -> None:
        links = self._healthy_links()
        before = {p: p.readlink() for p in links}
        self._violations(FakeResolver(names={links[0]: "sdb"}))
        self.assertEqual(before, {p: p.readlink() for p in links})

    def test_snapshot(self) -> None:
        links = self._healthy_links()
        self.tree.remove_device("sdb")
        entries = snapshot(self.tree.disk, FakeResolver(failing=[links[3]]))
        self.assertEqual(links[:3], [e.path for e in entries[:3]])
        by_path = {e.path: e for e in entries}
        self.assertEqual(self.tree.dev / "sda1", by_path[links[1]].target)
        self.assertEqual("sda1", by_path[links[1]].canonical_name)
        self.assertIsNone(by_path[links[3]].target)
        self.assertIsNone(by_path[links[3]].canonical_name)
        self.assertEqual(self.tree.dev / "sdb", by_path[links[3]].resolved)
        # Dangling links are never handed to the daemon
        self.assertIsNone(by_path[links[3]].resolver_error)

    def test_missing_links(self) -> None:
        links = self._healthy_links()
        self.tree.remove_device("sda1")
        self.assertEqual([links[1], links[2]], missing_links(links))
        self.assertEqual([Path("/nonexistent/x")], missing_links([Path("/nonexistent/x")]))

    def test_link_removed_while_being_resolved(self) -> None:
        links = self._healthy_links()

        class RacingResolver(FakeResolver):
            def canonical_name(self, link):
                if link == links[2]:
                    self.queried.append(link)
                    link.unlink()
                    raise ResolverError(f"no device for {link}")
                return super().canonical_name(link)

        resolver = RacingResolver()
        (v,) = self._violations(resolver)
        self.assertEqual(ViolationKind.DANGLING_LINK, v.kind)
        self.assertEqual(links[2], v.path)
        self.assertEqual(self.tree.dev / "sda1", v.target)
        self.assertEqual("link disappeared while being checked", v.detail)
        # Each link is resolved exactly once
        self.assertEqual(links, resolver.queried)

    def test_resolver_error_kept_in_snapshot(self) -> None:
        links = self._healthy_links()
        entries = snapshot(self.tree.disk, FakeResolver(failing=[links[0]]))
        (entry,) = [e for e in entries if e.path == links[0]]
        self.assertEqual(self.tree.dev / "sda", entry.target)
        self.assertIsNone(entry.canonical_name)
        self.assertIn("no device for", entry.resolver_error)
