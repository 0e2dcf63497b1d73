# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import functools
import json
import os
import sys
from typing import Optional

from pydantic import field_validator

from storagelinks.errors import UserError
from storagelinks.fs_utils import Path
from storagelinks.shape import Shape


CONFIG_ENV_VAR = "STORAGELINKS_CONFIG"


class ConfigNotFound(UserError):
    def __init__(self, path):
        super().__init__(f"harness config not found: {path}")


class harness_config_t(Shape):
    # Device nodes live here; a link is correct iff it resolves to
    # `dev_root / <name reported by udev>`.
    dev_root: Path = Path("/dev")
    # Root of the `by-id`, `by-uuid`, ... link namespaces.
    namespace_root: Path = Path("/dev/disk")
    # Parent of `class/scsi_device/H:C:T:L/device/state`.
    sysfs_root: Path = Path("/sys")
    # Private mount points for the failover scenario are created here.
    mount_root: Path = Path("/mnt")
    # Where `testok` / `failed` are written.  `None` disables markers, and
    # callers only get the returned `ScenarioResult`.
    result_dir: Optional[Path] = None
    # Upper bound on every settle barrier.
    settle_timeout_s: float = 120.0
    # Seeds every randomized choice.  `None` draws a fresh seed per run.
    seed: Optional[int] = None

    @field_validator("settle_timeout_s")
    @classmethod
    def timeout_is_positive(cls, v):
        if v <= 0:
            raise ValueError(f"settle_timeout_s must be positive, got {v}")
        return v


def load_harness_config(path: Path) -> harness_config_t:
    path = Path(path)
    if not path.exists():
        raise ConfigNotFound(path)
    with path.open() as f:
        return harness_config_t(**json.load(f))


# Separated for tests, which mock the environment and thus don't want
# memoization.
def _unmemoized_harness_config() -> harness_config_t:
    path = os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return harness_config_t()
    return load_harness_config(Path(path))


# Memoize so that most callers can just use `harness_config().field`
harness_config = functools.lru_cache(maxsize=None)(_unmemoized_harness_config)


if __name__ == "__main__":  # pragma: no cover
    print(harness_config().model_dump_json(indent=2))
    sys.exit(0)
