#!/usr/bin/env python3
# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Read-only view of multipath groups (via `multipath -l`) and the one write
the harness performs on a path: flipping a SCSI device's sysfs `state`.

`multipath -l` prints a header naming the map, then one line per path:

    deaddeadbeef0000 dm-0 QEMU,QEMU HARDDISK
    size=16M features='0' hwhandler='0' wp=rw
    |-+- policy='service-time 0' prio=0 status=active
    | `- 2:0:0:0 sda 8:0  active undef running
    `-+- policy='service-time 0' prio=0 status=enabled
      `- 3:0:0:0 sdb 8:16 failed undef offline

With `user_friendly_names` the header is `mpatha (WWID) dm-0 ...` instead.
The last column of a path line is the SCSI device state.
"""
import enum
import re
from typing import Tuple

from storagelinks.common import get_logger, run_capture
from storagelinks.errors import InfraError
from storagelinks.fs_utils import Path
from storagelinks.shape import Shape


log = get_logger()

_PATH_LINE_RE = re.compile(
    r"(?P<hctl>\d+:\d+:\d+:\d+)\s+"
    r"(?P<name>\S+)\s+\d+:\d+\s+(?P<rest>.*\S)"
)
_FRIENDLY_HEADER_RE = re.compile(r"^\S+\s+\((?P<wwid>[^)]+)\)")


@enum.unique
class DeviceState(enum.Enum):
    RUNNING = "running"
    OFFLINE = "offline"
    # `blocked`, `transport-offline`, ...: neither of the states the
    # failover scenario counts.
    OTHER = "other"

    @classmethod
    def parse(cls, s: str) -> "DeviceState":
        try:
            return cls(s)
        except ValueError:
            return cls.OTHER


class ScsiAddress(Shape):
    host: int
    channel: int
    target: int
    lun: int

    @classmethod
    def parse(cls, hctl: str) -> "ScsiAddress":
        host, channel, target, lun = (int(x) for x in hctl.split(":"))
        return cls(host=host, channel=channel, target=target, lun=lun)

    def __str__(self) -> str:
        return f"{self.host}:{self.channel}:{self.target}:{self.lun}"


class Device(Shape):
    address: ScsiAddress
    name: str
    state: DeviceState


class MultipathGroup(Shape):
    wwid: str
    members: Tuple[Device, ...]
    # The link the group was looked up by; it must keep resolving while
    # paths fail underneath it.
    active_path_symlink: Path

    @property
    def running_count(self) -> int:
        return sum(1 for d in self.members if d.state == DeviceState.RUNNING)

    @property
    def offline_count(self) -> int:
        return sum(1 for d in self.members if d.state == DeviceState.OFFLINE)


def parse_multipath_output(out: str, path: Path) -> MultipathGroup:
    lines = [line for line in out.splitlines() if line.strip()]
    if not lines:
        raise InfraError(f"`multipath -l {path}` printed nothing")
    header = lines[0]
    m = _FRIENDLY_HEADER_RE.match(header)
    wwid = m.group("wwid") if m else header.split()[0]

    members = []
    for line in lines[1:]:
        m = _PATH_LINE_RE.search(line)
        if not m:
            continue
        members.append(
            Device(
                address=ScsiAddress.parse(m.group("hctl")),
                name=m.group("name"),
                state=DeviceState.parse(m.group("rest").split()[-1]),
            )
        )
    return MultipathGroup(wwid=wwid, members=tuple(members), active_path_symlink=path)


class MultipathStatus:
    def __init__(self, multipath: str = "multipath") -> None:
        self._multipath = multipath

    def query(self, path: Path) -> MultipathGroup:
        rc, out, err = run_capture([self._multipath, "-l", path])
        if rc != 0:
            raise InfraError(f"`multipath -l {path}` exited {rc}: {err.strip()}")
        group = parse_multipath_output(out, Path(path))
        log.debug(
            f"{group.wwid}: {group.running_count} running, "
            f"{group.offline_count} offline of {len(group.members)}"
        )
        return group

    def is_multipath(self, dm_path: Path) -> bool:
        "`multipath -C`: does this node belong to a multipath map?"
        rc, _, _ = run_capture([self._multipath, "-C", dm_path])
        return rc == 0


class ScsiDeviceControl:
    """
    Paths are taken down by writing to
    `/sys/class/scsi_device/H:C:T:L/device/state`.  The kernel does not
    bring a path back on its own, so within a scenario a transition is
    one-way unless the harness writes `running` again.
    """

    def __init__(self, sysfs_root: Path = Path("/sys")) -> None:
        self._sysfs_root = Path(sysfs_root)

    def state_file(self, address: ScsiAddress) -> Path:
        return self._sysfs_root / "class/scsi_device" / str(address) / "device/state"

    def set_state(self, address: ScsiAddress, state: DeviceState) -> None:
        if state == DeviceState.OTHER:
            raise ValueError(f"Cannot set {address} to an unspecified state")
        log.info(f"Setting SCSI device {address} {state.value}")
        self.state_file(address).write_text(state.value + "\n")

    def get_state(self, address: ScsiAddress) -> DeviceState:
        return DeviceState.parse(self.state_file(address).read_text().strip())

