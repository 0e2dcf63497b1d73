#!/usr/bin/env python3
# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Runs one named scenario between two full symlink checks, and reduces the
whole run to a single `ScenarioResult`.

    lookup -> mark in-progress -> settle + pre-check -> scenario
           -> settle + post-check -> persist result

  - An unknown name raises `UnknownScenario` before anything is touched.
  - A failed pre-check means the machine was broken before we started, so
    the scenario is not attempted.
  - The post-check runs even if the scenario failed, since a failing
    scenario may well have been the one to break the links.

With `result_dir` configured, the result is also persisted for an outside
test runner: `failed` exists from the start of the run until it passes,
at which point it is replaced by `testok`.  Both hold the result as JSON.
"""
import enum
import json
from typing import List, Optional

from storagelinks.common import get_logger, seeded_rng
from storagelinks.config import harness_config_t
from storagelinks.errors import ChurnFailure, StorageLinksError, SymlinkCheckError
from storagelinks.fs_utils import Path, populate_temp_file_and_rename
from storagelinks.scenarios import REGISTRY, ScenarioContext, ScenarioRegistry
from storagelinks.shape import Shape
from storagelinks.udev import (
    NameResolver,
    SettleBarrier,
    UdevadmNameResolver,
    UdevadmSettle,
)


log = get_logger()

PASS_MARKER = "testok"
FAIL_MARKER = "failed"


@enum.unique
class Outcome(enum.Enum):
    PASS = "pass"
    FAIL = "fail"


class ScenarioResult(Shape):
    name: str
    outcome: Outcome
    failure_detail: Optional[str] = None
    # Replaying with this seed repeats every randomized choice of the run.
    seed: int


def _describe_failure(ex: Exception) -> str:
    if isinstance(ex, (SymlinkCheckError, ChurnFailure)):
        # The checker already logged each bad link
        log.error(f"{type(ex).__name__}: {len(ex.violations)} bad symlink(s)")
    elif isinstance(ex, (StorageLinksError, AssertionError)):
        log.error(str(ex), exc_info=getattr(ex, "backtrace_is_interesting", False))
    else:
        # Not a verdict on the storage stack, but on the harness itself
        log.exception(f"Unexpected {type(ex).__name__}")
    return str(ex)


class Orchestrator:
    def __init__(
        self,
        config: harness_config_t,
        *,
        registry: ScenarioRegistry = REGISTRY,
        resolver: Optional[NameResolver] = None,
        settle: Optional[SettleBarrier] = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._resolver = resolver or UdevadmNameResolver()
        self._settle = settle or UdevadmSettle(config.settle_timeout_s)

    def _check(self, ctx: ScenarioContext, when: str) -> Optional[str]:
        log.info(f"Check if all symlinks under {self._config.namespace_root} are valid ({when})")
        try:
            ctx.settle.settle()
            ctx.check_all()
        except Exception as ex:
            return f"{when} check failed: {_describe_failure(ex)}"
        return None

    def run(self, name: str) -> ScenarioResult:
        handler = self._registry.get(name)
        seed, rng = seeded_rng(self._config.seed)
        ctx = ScenarioContext(
            config=self._config,
            resolver=self._resolver,
            settle=self._settle,
            rng=rng,
        )
        self._mark_in_progress(name, seed)
        log.info(f"Running scenario {name} with seed {seed}")

        failures: List[str] = []
        pre = self._check(ctx, "pre-test")
        if pre is not None:
            failures.append(pre)
        else:
            try:
                handler(ctx)
            except Exception as ex:
                failures.append(f"{name}: {_describe_failure(ex)}")
            post = self._check(ctx, "post-test")
            if post is not None:
                failures.append(post)

        result = ScenarioResult(
            name=name,
            outcome=Outcome.FAIL if failures else Outcome.PASS,
            failure_detail="\n".join(failures) if failures else None,
            seed=seed,
        )
        self._persist(result)
        log.info(f"Scenario {name}: {result.outcome.value.upper()}")
        return result

    def _marker(self, name: str) -> Optional[Path]:
        if self._config.result_dir is None:
            return None
        return self._config.result_dir / name

    def _mark_in_progress(self, name: str, seed: int) -> None:
        ok, failed = self._marker(PASS_MARKER), self._marker(FAIL_MARKER)
        if ok is None or failed is None:
            return
        if ok.lexists():
            ok.unlink()
        with populate_temp_file_and_rename(failed) as f:
            json.dump({"name": name, "seed": seed, "state": "in_progress"}, f)

    def _persist(self, result: ScenarioResult) -> None:
        ok, failed = self._marker(PASS_MARKER), self._marker(FAIL_MARKER)
        if ok is None or failed is None:
            return
        if result.outcome == Outcome.PASS:
            with populate_temp_file_and_rename(ok) as f:
                f.write(result.model_dump_json())
            if failed.lexists():
                failed.unlink()
        else:
            with populate_temp_file_and_rename(failed) as f:
                f.write(result.model_dump_json())
