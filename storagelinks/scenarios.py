#!/usr/bin/env python3
# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Named scenarios, and the registry the orchestrator dispatches through.

A scenario is a function taking a `ScenarioContext`.  It passes by
returning, and fails by raising; `VerificationError`s are the expected way
to fail.  The built-in scenarios below assume a VM whose disks were laid
out for them (device counts, WWIDs, labels), and are registered on
`REGISTRY`.
"""
import glob
import os
import random
import stat
from typing import Callable, Dict, List, NamedTuple, Optional

from storagelinks.churn import run_churn
from storagelinks.common import get_logger
from storagelinks.config import harness_config_t
from storagelinks.errors import (
    DeviceCountError,
    FailoverInvariantViolation,
    InfraError,
    UnknownScenario,
)
from storagelinks.failover import FailoverValidator
from storagelinks.fs_utils import Path
from storagelinks.lsblk import (
    count_by_name_prefix,
    count_by_partlabel,
    count_scsi_devices,
)
from storagelinks.mount import MountedPartition
from storagelinks.multipath import MultipathStatus, ScsiDeviceControl
from storagelinks.partition_table import MiB, PartitionSpec, PartitionTable
from storagelinks.symlink_checker import check_all
from storagelinks.udev import NameResolver, SettleBarrier


log = get_logger()


class ScenarioContext(NamedTuple):
    config: harness_config_t
    resolver: NameResolver
    settle: SettleBarrier
    rng: random.Random

    def check_all(self) -> None:
        "Full symlink check of the configured namespace."
        check_all(self.config.namespace_root, self.resolver, self.config.dev_root)


ScenarioHandler = Callable[[ScenarioContext], None]


class ScenarioRegistry:
    def __init__(self) -> None:
        self._handlers: Dict[str, ScenarioHandler] = {}

    def register(self, name: str, handler: ScenarioHandler) -> None:
        if name in self._handlers:
            raise AssertionError(f"Scenario {name} registered twice")
        self._handlers[name] = handler

    def scenario(self, name: str) -> Callable[[ScenarioHandler], ScenarioHandler]:
        def wrapper(fn: ScenarioHandler) -> ScenarioHandler:
            self.register(name, fn)
            return fn

        return wrapper

    def get(self, name: str) -> ScenarioHandler:
        try:
            return self._handlers[name]
        except KeyError:
            raise UnknownScenario(name, self._handlers.keys()) from None

    def names(self) -> List[str]:
        return sorted(self._handlers)


REGISTRY = ScenarioRegistry()


MIN_SCSI_DEVICES = 128
MIN_NVME_DEVICES = 28

DUPLICATE_PARTLABEL = "Hello world"
DUPLICATE_PARTLABEL_DISKS = 16
DUPLICATE_PARTLABEL_PARTS_PER_DISK = 8

MULTIPATH_GROUPS = 64
MULTIPATH_PATHS_PER_GROUP = 4
MULTIPATH_WWID_PREFIX = "deaddeadbeef"
# Group 0 carries a partitioned disk with an ext4 data partition.
FAILOVER_FS_TYPE = "ext4"
FAILOVER_PARTLABEL = "failover_part"
FAILOVER_PARTUUID = "deadbeef-dead-dead-beef-000000000000"
FAILOVER_FS_LABEL = "failover_vol"
FAILOVER_FS_UUID = "deadbeef-dead-dead-beef-111111111111"

CHURN_DISK_GLOB = "scsi-*_deadbeeftest"
CHURN_PARTITIONS = 50
CHURN_PARTITION_SIZE = 2 * MiB
CHURN_ITERATIONS = 100
CHURN_CHECK_EVERY = 10


def _expect_at_least(what: str, got: int, want: int) -> None:
    if got < want:
        raise DeviceCountError(f"Expected at least {want} {what}, got {got}")


def _multipath_wwid(i: int) -> str:
    return f"{MULTIPATH_WWID_PREFIX}{i:04d}"


@REGISTRY.scenario("megasas2_basic")
def megasas2_basic(ctx: ScenarioContext) -> None:
    _expect_at_least("SCSI devices", count_scsi_devices(), MIN_SCSI_DEVICES)


@REGISTRY.scenario("nvme_basic")
def nvme_basic(ctx: ScenarioContext) -> None:
    _expect_at_least("NVMe devices", count_by_name_prefix("nvme"), MIN_NVME_DEVICES)


@REGISTRY.scenario("virtio_scsi_identically_named_partitions")
def virtio_scsi_identically_named_partitions(ctx: ScenarioContext) -> None:
    want = DUPLICATE_PARTLABEL_DISKS * DUPLICATE_PARTLABEL_PARTS_PER_DISK
    got = count_by_partlabel(DUPLICATE_PARTLABEL)
    if got != want:
        raise DeviceCountError(
            f"Expected exactly {want} partitions labeled "
            f"{DUPLICATE_PARTLABEL!r}, got {got}"
        )


def failover_part_links(namespace_root: Path, wwid: str) -> List[Path]:
    "All of these name the data partition, and must stay valid throughout."
    return [
        namespace_root / f"by-id/wwn-0x{wwid}-part2",
        namespace_root / f"by-partlabel/{FAILOVER_PARTLABEL}",
        namespace_root / f"by-partuuid/{FAILOVER_PARTUUID}",
        namespace_root / f"by-label/{FAILOVER_FS_LABEL}",
        namespace_root / f"by-uuid/{FAILOVER_FS_UUID}",
    ]


@REGISTRY.scenario("multipath_basic_failover")
def multipath_basic_failover(
    ctx: ScenarioContext,
    status: Optional[MultipathStatus] = None,
    control: Optional[ScsiDeviceControl] = None,
) -> None:
    status = status or MultipathStatus()
    control = control or ScsiDeviceControl(ctx.config.sysfs_root)
    by_id = ctx.config.namespace_root / "by-id"

    for i in range(MULTIPATH_GROUPS):
        path = by_id / f"wwn-0x{_multipath_wwid(i)}"
        dm_path = path.realpath()
        if not status.is_multipath(dm_path):
            raise FailoverInvariantViolation(f"{dm_path} ({path}) is not a multipath map")
        group = status.query(path)
        # We should have 4 active paths for each multipath device
        if group.running_count != MULTIPATH_PATHS_PER_GROUP:
            raise FailoverInvariantViolation(
                f"{path}: expected {MULTIPATH_PATHS_PER_GROUP} running paths, "
                f"got {group.running_count}"
            )
        log.info(f"{group.wwid}: {group.running_count} paths running")

    # Test failover with the first multipath device, which is partitioned
    wwid = _multipath_wwid(0)
    FailoverValidator(
        by_id / f"wwn-0x{wwid}",
        failover_part_links(ctx.config.namespace_root, wwid),
        rng=ctx.rng,
        status=status,
        control=control,
        mount_factory=lambda dev: MountedPartition(
            dev, fs_type=FAILOVER_FS_TYPE, mount_root=ctx.config.mount_root
        ),
        expected_members=MULTIPATH_PATHS_PER_GROUP,
    ).run()


def find_churn_disk(namespace_root: Path) -> Path:
    matches = sorted(glob.glob(namespace_root / "by-id" / CHURN_DISK_GLOB))
    if not matches:
        raise InfraError(f"failed to find the test SCSI block device {CHURN_DISK_GLOB}")
    link = Path(matches[0])
    blockdev = link.realpath()
    try:
        is_blk = stat.S_ISBLK(os.stat(blockdev).st_mode)
    except FileNotFoundError:
        is_blk = False
    if not is_blk:
        raise InfraError(f"{link} resolves to {blockdev}, not a block device")
    return blockdev


@REGISTRY.scenario("simultaneous_events")
def simultaneous_events(
    ctx: ScenarioContext, table: Optional[PartitionTable] = None
) -> None:
    # On unpatched udev versions the delete-recreate cycle may trigger a
    # race leading to dead symlinks in /dev/disk/
    run_churn(
        find_churn_disk(ctx.config.namespace_root),
        PartitionSpec.numbered("test", CHURN_PARTITIONS, CHURN_PARTITION_SIZE),
        CHURN_ITERATIONS,
        CHURN_CHECK_EVERY,
        table=table or PartitionTable(),
        settle=ctx.settle,
        check_all=ctx.check_all,
    )
