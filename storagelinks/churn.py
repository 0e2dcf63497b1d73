#!/usr/bin/env python3
# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Partition table churn: delete a device's partitions and immediately
recreate them, over and over.  Each cycle makes the naming daemon retract
and republish a symlink per partition in a tight window, which is where
naming races show up as dead links in `/dev/disk`.

Every `check_every` cycles we wait for the daemon to settle and run the
symlink checker.  The first bad snapshot ends the run: one dangling link is
already a defect in the daemon, so there is nothing to gain by retrying.
"""
from typing import Callable, List

from storagelinks.common import get_logger
from storagelinks.errors import ChurnFailure, SymlinkCheckError
from storagelinks.fs_utils import Path
from storagelinks.partition_table import PartitionSpec, PartitionTable
from storagelinks.shape import Shape
from storagelinks.udev import SettleBarrier


log = get_logger()


class ChurnIteration(Shape):
    index: int
    partition_spec: PartitionSpec


def run_churn(
    device: Path,
    partition_spec: PartitionSpec,
    iterations: int,
    check_every: int,
    *,
    table: PartitionTable,
    settle: SettleBarrier,
    check_all: Callable[[], None],
) -> List[int]:
    """
    Returns the (1-based) iterations at which the checker ran clean.
    `check_all` must raise `SymlinkCheckError` on a bad snapshot.
    """
    if iterations < 1:
        raise ValueError(f"iterations must be positive, got {iterations}")
    if check_every < 1:
        raise ValueError(f"check_every must be positive, got {check_every}")

    log.info(
        f"Churning {len(partition_spec.partitions)} partitions on {device} "
        f"{iterations} times, checking every {check_every}"
    )
    # Initial partition table
    table.create(device, partition_spec)

    checked = []
    for i in range(1, iterations + 1):
        it = ChurnIteration(index=i, partition_spec=partition_spec)
        table.delete(device)
        table.create(device, it.partition_spec)

        if it.index % check_every == 0:
            settle.settle()
            try:
                check_all()
            except SymlinkCheckError as ex:
                raise ChurnFailure(it.index, ex.violations) from ex
            log.info(f"Iteration {it.index}/{iterations}: symlinks OK")
            checked.append(it.index)
    return checked
