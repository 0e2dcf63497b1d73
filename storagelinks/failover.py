#!/usr/bin/env python3
# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Multipath failover under a mounted filesystem.

A multipath group is a set of SCSI paths (H:C:T:L) to one LUN.  The
validator mounts a partition of that LUN, then takes all but
`reserved_count` paths offline one at a time, in a seeded random order.
After every transition it checks that:

  - the counter it last wrote is still readable, and a new value can be
    written (I/O survived the failover),
  - the kernel reports the path offline,
  - the group link and every alias of the partition (by-id,
    by-partlabel, by-partuuid, by-label, by-uuid) still exist.

At the end the group must report exactly `reserved_count` running and
`deactivated` offline paths.  At no point is the last running path taken
down; the group would have no way to do I/O, and the scenario would be
testing something else entirely.

Paths are not brought back: a scenario owns the group until the machine
is torn down.
"""
import random
from typing import Callable, ContextManager, List, Sequence

from storagelinks.common import get_logger
from storagelinks.errors import FailoverInvariantViolation
from storagelinks.fs_utils import Path
from storagelinks.multipath import (
    Device,
    DeviceState,
    MultipathGroup,
    MultipathStatus,
    ScsiDeviceControl,
)
from storagelinks.symlink_checker import missing_links


log = get_logger()

COUNTER_FILE = "test"


class FailoverValidator:
    def __init__(
        self,
        group_path: Path,
        alias_links: Sequence[Path],
        *,
        rng: random.Random,
        status: MultipathStatus,
        control: ScsiDeviceControl,
        mount_factory: Callable[[Path], ContextManager],
        expected_members: int = 4,
        reserved_count: int = 1,
    ) -> None:
        """
        `group_path` is the link the group is queried by (e.g.
        `/dev/disk/by-id/wwn-0x...`).  `alias_links` all name the same data
        partition; one of them, chosen by `rng`, is what gets mounted.
        `mount_factory(device)` returns a context manager whose value has
        a `dir()` method, see `mount.MountedPartition`.
        """
        if not alias_links:
            raise ValueError("Need at least one alias of the data partition")
        if not 1 <= reserved_count < expected_members:
            raise ValueError(
                f"reserved_count must be in [1, {expected_members}), "
                f"got {reserved_count}"
            )
        self._group_path = Path(group_path)
        self._alias_links = [Path(p) for p in alias_links]
        self._rng = rng
        self._status = status
        self._control = control
        self._mount_factory = mount_factory
        self._expected_members = expected_members
        self._reserved_count = reserved_count

    def _fail(self, msg: str) -> FailoverInvariantViolation:
        log.error(msg)
        return FailoverInvariantViolation(f"{self._group_path}: {msg}")

    def _check_aliases(self, when: str) -> None:
        "The group link and every partition alias must keep resolving."
        missing = missing_links([self._group_path, *self._alias_links])
        if missing:
            raise self._fail(
                f"{when}: missing symlink(s) {', '.join(str(p) for p in missing)}"
            )

    def _query(self) -> MultipathGroup:
        return self._status.query(self._group_path)

    def _select(self, group: MultipathGroup) -> List[Device]:
        """
        Shuffles the members so each run cuts off a different set of paths,
        then holds back the last `reserved_count` of them.
        """
        order = sorted(group.members, key=lambda d: str(d.address))
        self._rng.shuffle(order)
        return order[: len(order) - self._reserved_count]

    def run(self) -> None:
        # Get all devices attached to the multipath device
        group = self._query()
        if len(group.members) != self._expected_members:
            raise self._fail(
                f"expected {self._expected_members} devices attached to "
                f"WWID={group.wwid}, got {len(group.members)} instead"
            )
        if group.running_count != self._expected_members:
            raise self._fail(
                f"expected all {self._expected_members} paths running, got "
                f"{group.running_count}"
            )

        # All the aliases should exist before anything is touched
        self._check_aliases("before failover")
        # Mount a different alias each time, for better coverage
        part = self._rng.choice(self._alias_links)
        to_deactivate = self._select(group)
        log.info(
            f"Failing over {group.wwid} via {part}: taking "
            f"{', '.join(str(d.address) for d in to_deactivate)} offline"
        )

        with self._mount_factory(part) as mnt:
            counter = mnt.dir() / COUNTER_FILE
            expected = 0
            self._write_counter(counter, expected, "initial write")
            # Sanity check we actually wrote what we wanted
            self._check_counter(counter, expected, "after initial write")

            running = group.running_count
            for device in to_deactivate:
                if running <= 1:
                    raise self._fail(
                        f"refusing to take {device.address} offline: it is "
                        "the last running path"
                    )
                self._control.set_state(device.address, DeviceState.OFFLINE)
                running -= 1

                when = f"after {device.address} went offline"
                state = self._control.get_state(device.address)
                if state != DeviceState.OFFLINE:
                    raise self._fail(f"{when}: sysfs reports it {state.value}")
                self._check_counter(counter, expected, when)
                expected += 1
                self._write_counter(counter, expected, when)
                self._check_aliases(when)

            group = self._query()
            deactivated = len(to_deactivate)
            if (group.running_count, group.offline_count) != (
                self._reserved_count,
                deactivated,
            ):
                raise self._fail(
                    f"expected {self._reserved_count} running and "
                    f"{deactivated} offline paths, got {group.running_count} "
                    f"running and {group.offline_count} offline"
                )
        log.info(f"Failover of {group.wwid} OK")

    def _check_counter(self, counter: Path, expected: int, when: str) -> None:
        try:
            got = counter.read_text()
        except OSError as ex:
            raise self._fail(f"{when}: cannot read {counter}: {ex}") from ex
        if got != str(expected):
            raise self._fail(f"{when}: read {got!r} from {counter}, expected {expected}")

    def _write_counter(self, counter: Path, value: int, when: str) -> None:
        try:
            counter.write_text(str(value))
        except OSError as ex:
            raise self._fail(f"{when}: cannot write {counter}: {ex}") from ex
