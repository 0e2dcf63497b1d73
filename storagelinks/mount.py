#!/usr/bin/env python3
# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Mounts a block device on a private, freshly created directory for the
duration of a `with` block.  The failover scenario keeps a small counter
file on this mount to prove that I/O keeps working as paths go away.
"""
import os
import subprocess
import sys
import tempfile
from typing import Iterable, Optional

from storagelinks.common import get_logger, retry_fn, run_stdout_to_err
from storagelinks.errors import InfraError
from storagelinks.fs_utils import Path


log = get_logger()

# `umount` can briefly report EBUSY right after the last file handle on the
# mount was closed.
_UMOUNT_RETRY_DELAYS = (0.5, 1.0, 2.0)


class MountedPartition:
    def __init__(
        self,
        device: Path,
        *,
        fs_type: str,
        mount_root: Path = Path("/mnt"),
        mount_options: Optional[Iterable[str]] = None,
        umount_retry_delays: Iterable[float] = _UMOUNT_RETRY_DELAYS,
    ) -> None:
        self._device = Path(device)
        self._fs_type = fs_type
        self._mount_root = Path(mount_root)
        self._mount_options = list(mount_options or [])
        self._umount_retry_delays = list(umount_retry_delays)
        self._mount_dir: Optional[Path] = None
        self._mounted = False

    def __enter__(self) -> "MountedPartition":
        self._mount_dir = Path(
            tempfile.mkdtemp(prefix=b"mpath", dir=self._mount_root)
        )
        try:
            self.mount()
        except BaseException:
            self.__exit__(*sys.exc_info())
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        """
        Never raises: a failure to clean up must not mask whatever verdict
        the with-block reached, so problems are only logged.
        """
        try:
            self.unmount_if_mounted()
        except Exception:
            log.warning(f"Failed to unmount {self._mount_dir}", exc_info=True)
        if self._mount_dir and not self._mounted:
            try:
                os.rmdir(self._mount_dir)
            except OSError as ex:
                log.warning(f"Failed to remove mount point {self._mount_dir}: {ex}")
        return False

    def mount(self) -> None:
        maybe_opts = ["-o", ",".join(self._mount_options)] if self._mount_options else []
        log.info(f"Mounting {self._fs_type} {self._device} at {self._mount_dir}")
        # Explicitly set filesystem type to detect shenanigans.
        res = run_stdout_to_err(
            [
                "mount",
                "-t",
                self._fs_type,
                *maybe_opts,
                self._device,
                self._mount_dir,
            ],
            stderr=subprocess.PIPE,
        )
        if res.returncode != 0:
            err = res.stderr.decode(errors="surrogateescape").strip() if res.stderr else ""
            raise InfraError(
                f"Failed to mount {self._device} at {self._mount_dir}: {err}"
            )
        self._mounted = True

    def unmount_if_mounted(self) -> None:
        if not self._mounted:
            return
        retry_fn(
            lambda: run_stdout_to_err(["umount", self._mount_dir], check=True),
            delays=self._umount_retry_delays,
            what=f"Unmounting {self._mount_dir}",
            log_exception=False,
        )
        self._mounted = False

    def dir(self) -> Path:
        if self._mount_dir is None:
            raise AssertionError(f"{self._device} was never mounted")
        return self._mount_dir
