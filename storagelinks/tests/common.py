# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import os
import unittest
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional

from storagelinks.errors import BarrierTimeout, ResolverError
from storagelinks.fs_utils import Path
from storagelinks.multipath import (
    Device,
    DeviceState,
    MultipathGroup,
    ScsiAddress,
)
from storagelinks.symlink_checker import NAMESPACES


class StorageLinksTestCase(unittest.TestCase):
    """
    This base class improves test failure output -- use `super().setUp()`.
    Also supplies some testing helpers.
    """

    def setUp(self) -> None:
        # `unittest`'s output shortening makes violation lists unreadable.
        unittest.util._MAX_LENGTH = 20000
        self.maxDiff = 20000

    def assert_call_count(self, mock, expected_count) -> None:
        self.assertEqual(
            len(mock.mock_calls),
            expected_count,
            f"Mock had {len(mock.mock_calls)} calls but we expected it to have "
            f"{expected_count}: {mock.mock_calls}",
        )

    def assert_call_equality(self, mock, expected_calls, **kwargs) -> None:
        """Helper to ensure a given mock had *only* the expected calls by also
        asserting the length of the iterable.
        """
        self.assert_call_count(mock, len(expected_calls))
        mock.assert_has_calls(expected_calls, **kwargs)


class DevTree:
    """
    A fake `/dev` in a temporary directory: regular files stand in for
    device nodes, and `disk/by-*` hold relative symlinks to them, the way
    udev lays them out.
    """

    def __init__(self, root: Path, devices: Iterable[str] = ("sda", "sda1", "sdb")):
        self.dev = Path(root).realpath() / "dev"
        self.disk = self.dev / "disk"
        for ns in NAMESPACES:
            os.makedirs(self.disk / ns)
        for d in devices:
            self.add_device(d)

    def add_device(self, name: str) -> Path:
        return (self.dev / name).touch()

    def remove_device(self, name: str) -> None:
        (self.dev / name).unlink()

    def link(self, namespace: str, name: str, device: str) -> Path:
        path = self.disk / namespace / name
        os.symlink(f"../../{device}", path)
        return path


class FakeResolver:
    """
    Answers like udev would for a healthy `DevTree`: the owner of a link is
    whatever it points at.  `names` overrides the answer for a link, and
    links in `failing` make the query fail.
    """

    def __init__(
        self,
        names: Optional[Dict[Path, str]] = None,
        failing: Iterable[Path] = (),
    ) -> None:
        self.names = dict(names or {})
        self.failing = set(failing)
        self.queried: List[Path] = []

    def canonical_name(self, link: Path) -> str:
        self.queried.append(link)
        if link in self.failing:
            raise ResolverError(f"no device for {link}")
        if link in self.names:
            return self.names[link]
        return link.realpath().basename().decode()


class FakeSettle:
    def __init__(self, fail_on_call: Optional[int] = None) -> None:
        self.calls = 0
        self._fail_on_call = fail_on_call

    def settle(self, timeout_s: Optional[float] = None) -> None:
        self.calls += 1
        if self.calls == self._fail_on_call:
            raise BarrierTimeout(timeout_s or 1.0, "fake")


class FakeMultipath:
    """
    Status query and device control for one multipath group, backed by a
    dict of H:C:T:L -> state.  Setting a device offline is reflected in the
    next `query`.
    """

    def __init__(self, wwid: str, hctls: Iterable[str], mapped: bool = True) -> None:
        self.wwid = wwid
        # Writes to these paths are accepted but have no effect.
        self.stuck = set()
        self.states = {h: DeviceState.RUNNING for h in hctls}
        self.transitions: List[str] = []
        self.mapped = mapped
        # Called after each transition, to let tests break things mid-run.
        self.on_transition = None

    def query(self, path: Path) -> MultipathGroup:
        return MultipathGroup(
            wwid=self.wwid,
            members=tuple(
                Device(address=ScsiAddress.parse(h), name=f"sd{i}", state=s)
                for i, (h, s) in enumerate(sorted(self.states.items()))
            ),
            active_path_symlink=Path(path),
        )

    def is_multipath(self, dm_path: Path) -> bool:
        return self.mapped

    def set_state(self, address: ScsiAddress, state: DeviceState) -> None:
        if str(address) not in self.stuck:
            self.states[str(address)] = state
        self.transitions.append(str(address))
        if self.on_transition:
            self.on_transition(str(address))

    def get_state(self, address: ScsiAddress) -> DeviceState:
        return self.states[str(address)]


class FakeMount:
    "Stands in for `MountedPartition`, using a plain directory."

    def __init__(self, directory: Path) -> None:
        self._dir = Path(directory)
        self.mounted: List[Path] = []
        self.exited = 0

    @contextmanager
    def __call__(self, device: Path):
        self.mounted.append(device)
        try:
            yield self
        finally:
            self.exited += 1

    def dir(self) -> Path:
        return self._dir


class FakeTable:
    "Records `PartitionTable` operations instead of running `sfdisk`."

    def __init__(self) -> None:
        self.ops = []

    def create(self, device: Path, spec) -> None:
        self.ops.append(("create", device, len(spec.partitions)))

    def delete(self, device: Path) -> None:
        self.ops.append(("delete", device))
