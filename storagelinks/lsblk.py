#!/usr/bin/env python3
# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"Block device enumeration via `lsblk --json`."
import json
from typing import List, Optional

from storagelinks.common import get_logger, run_capture
from storagelinks.errors import InfraError
from storagelinks.shape import Shape


log = get_logger()

_COLUMNS = "NAME,TYPE,TRAN,PARTLABEL"


class BlockDevice(Shape):
    name: str
    type: Optional[str] = None
    # Transport (`sata`, `sas`, `nvme`, `iscsi`, ...); unset for partitions
    # and virtual devices.
    tran: Optional[str] = None
    partlabel: Optional[str] = None
    # 0 for top-level devices, 1 for their partitions, and so on.
    depth: int = 0


def _flatten(nodes, depth: int, out: List[BlockDevice]) -> None:
    for node in nodes:
        out.append(
            BlockDevice(
                name=node["name"],
                type=node.get("type"),
                tran=node.get("tran"),
                partlabel=node.get("partlabel"),
                depth=depth,
            )
        )
        _flatten(node.get("children", ()), depth + 1, out)


def list_block_devices(*, scsi_only: bool = False) -> List[BlockDevice]:
    """
    All block devices, including empty ones (`--all`), with partitions
    flattened in after their parent disk.  `scsi_only` is `lsblk --scsi`,
    which lists SCSI-attached disks without their partitions.
    """
    cmd = ["lsblk", "--json", "--all", "--output", _COLUMNS]
    if scsi_only:
        cmd.append("--scsi")
    rc, out, err = run_capture(cmd)
    if rc != 0:
        raise InfraError(f"`{' '.join(cmd)}` exited {rc}: {err.strip()}")
    try:
        nodes = json.loads(out)["blockdevices"]
    except (ValueError, KeyError) as ex:
        raise InfraError(f"Cannot parse lsblk output: {ex}") from ex
    devices: List[BlockDevice] = []
    _flatten(nodes, 0, devices)
    return devices


def count_scsi_devices() -> int:
    n = len(list_block_devices(scsi_only=True))
    log.info(f"lsblk reports {n} SCSI devices")
    return n


def count_by_name_prefix(prefix: str) -> int:
    "Top-level devices only, so an NVMe disk's partitions are not counted."
    n = sum(
        1 for d in list_block_devices() if d.depth == 0 and d.name.startswith(prefix)
    )
    log.info(f"lsblk reports {n} devices named {prefix}*")
    return n


def count_by_partlabel(label: str) -> int:
    n = sum(1 for d in list_block_devices() if d.partlabel == label)
    log.info(f"lsblk reports {n} partitions labeled {label!r}")
    return n
