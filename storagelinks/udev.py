#!/usr/bin/env python3
# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
The two things the harness needs from the device-naming daemon, which is
otherwise a black box:

  - `NameResolver`: which kernel device name owns a given symlink?  This is
    ground truth that the checker compares `readlink -f` against.
  - `SettleBarrier`: block until the daemon has no queued events.  This is
    the only place the harness waits on the system under test, so it is
    always bounded.

The `udevadm` implementations are the production ones; tests substitute
in-memory fakes with the same methods.
"""
import subprocess
from typing import Optional, Protocol

from storagelinks.common import get_logger, run_capture
from storagelinks.errors import BarrierTimeout, ResolverError
from storagelinks.fs_utils import Path


log = get_logger()

# `udevadm settle` enforces its own `--timeout`; the subprocess timeout is
# just a backstop in case `udevadm` itself wedges.
_SUBPROCESS_GRACE_S = 10.0


class NameResolver(Protocol):
    def canonical_name(self, link: Path) -> str:
        ...


class SettleBarrier(Protocol):
    def settle(self, timeout_s: Optional[float] = None) -> None:
        ...


class UdevadmNameResolver:
    def __init__(self, udevadm: str = "udevadm") -> None:
        self._udevadm = udevadm

    def canonical_name(self, link: Path) -> str:
        rc, out, err = run_capture([self._udevadm, "info", "--query=name", link])
        name = out.strip()
        if rc != 0 or not name:
            raise ResolverError(
                f"`udevadm info --query=name {link}` exited {rc}: {err.strip()}"
            )
        return name


class UdevadmSettle:
    def __init__(self, default_timeout_s: float, udevadm: str = "udevadm") -> None:
        self._default_timeout_s = default_timeout_s
        self._udevadm = udevadm

    def settle(self, timeout_s: Optional[float] = None) -> None:
        if timeout_s is None:
            timeout_s = self._default_timeout_s
        log.info(f"Waiting up to {timeout_s}s for device events to settle")
        try:
            rc, _, err = run_capture(
                [self._udevadm, "settle", f"--timeout={timeout_s:g}"],
                timeout=timeout_s + _SUBPROCESS_GRACE_S,
            )
        except subprocess.TimeoutExpired as ex:
            raise BarrierTimeout(timeout_s, "udevadm settle hung") from ex
        if rc != 0:
            raise BarrierTimeout(timeout_s, err.strip())
