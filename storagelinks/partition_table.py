#!/usr/bin/env python3
# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
GPT partition tables as data, applied to a block device with `sfdisk`.

A `PartitionSpec` is replaced wholesale: `create` writes a fresh GPT from
it, `delete` removes every partition.  Each call makes the kernel
re-read the table, which is exactly the burst of remove/add events the
churn scenario wants the naming daemon to chew on.
"""
import subprocess
from typing import List, Tuple

from pydantic import field_validator

from storagelinks.common import get_logger, run_stdout_to_err
from storagelinks.errors import PartitionTableError
from storagelinks.fs_utils import Path
from storagelinks.shape import Shape


log = get_logger()
KiB = 2**10
MiB = 2**20


class PartitionEntry(Shape):
    name: str
    # Bytes.  `sfdisk` is given KiB, so this must be a whole number of them.
    size: int

    @field_validator("name")
    @classmethod
    def name_is_quotable(cls, v):
        if not v or '"' in v or "\n" in v:
            raise ValueError(f"Bad partition name {v!r}")
        return v

    @field_validator("size")
    @classmethod
    def size_is_whole_kib(cls, v):
        if v <= 0 or v % KiB:
            raise ValueError(f"Partition size must be a positive multiple of 1KiB: {v}")
        return v

    def sfdisk_line(self) -> str:
        return f'name="{self.name}", size={self.size // KiB}KiB'


class PartitionSpec(Shape):
    partitions: Tuple[PartitionEntry, ...]

    @field_validator("partitions")
    @classmethod
    def not_empty(cls, v):
        if not v:
            raise ValueError("A partition spec needs at least one partition")
        return v

    @classmethod
    def numbered(cls, prefix: str, count: int, size: int) -> "PartitionSpec":
        "`prefix1` .. `prefixN`, all of the same size."
        return cls(
            partitions=tuple(
                PartitionEntry(name=f"{prefix}{i}", size=size)
                for i in range(1, count + 1)
            )
        )

    def sfdisk_script(self) -> str:
        return "".join(p.sfdisk_line() + "\n" for p in self.partitions)

    def names(self) -> List[str]:
        return [p.name for p in self.partitions]


class PartitionTable:
    def __init__(self, sfdisk: str = "sfdisk") -> None:
        self._sfdisk = sfdisk

    def _run(self, device: Path, args: List[str], **kwargs) -> None:
        res = run_stdout_to_err(
            [self._sfdisk, "-q", *args, device],
            stderr=subprocess.PIPE,
            **kwargs,
        )
        if res.returncode != 0:
            err = res.stderr.decode(errors="surrogateescape").strip() if res.stderr else ""
            raise PartitionTableError(
                f"sfdisk {' '.join(args)} {device} exited {res.returncode}: {err}"
            )

    def create(self, device: Path, spec: PartitionSpec) -> None:
        log.debug(f"Writing {len(spec.partitions)} partitions to {device}")
        self._run(device, ["-X", "gpt"], input=spec.sfdisk_script().encode())

    def delete(self, device: Path) -> None:
        log.debug(f"Deleting all partitions on {device}")
        self._run(device, ["--delete"])
