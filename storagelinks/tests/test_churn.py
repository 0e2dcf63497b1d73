# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

from storagelinks.churn import run_churn
from storagelinks.errors import BarrierTimeout, ChurnFailure, SymlinkCheckError
from storagelinks.fs_utils import Path
from storagelinks.partition_table import MiB, PartitionSpec
from storagelinks.symlink_checker import SymlinkViolation, ViolationKind
from storagelinks.tests.common import FakeSettle, FakeTable, StorageLinksTestCase


_DEVICE = Path("/dev/sdx")
_SPEC = PartitionSpec.numbered("test", 50, 2 * MiB)


class FakeChecker:
    "Fails on the given (1-based) invocations."

    def __init__(self, fail_on=()) -> None:
        self.calls = 0
        self._fail_on = set(fail_on)

    def __call__(self) -> None:
        self.calls += 1
        if self.calls in self._fail_on:
            raise SymlinkCheckError(
                [
                    SymlinkViolation(
                        kind=ViolationKind.DANGLING_LINK,
                        path=Path("/dev/disk/by-partlabel/test7"),
                        target=Path("/dev/sdx7"),
                    )
                ]
            )


class ChurnTestCase(StorageLinksTestCase):
    def _churn(self, iterations=100, check_every=10, checker=None, settle=None):
        self.table = FakeTable()
        self.settle = settle or FakeSettle()
        self.checker = checker or FakeChecker()
        return run_churn(
            _DEVICE,
            _SPEC,
            iterations,
            check_every,
            table=self.table,
            settle=self.settle,
            check_all=self.checker,
        )

    def test_hundred_iterations_checked_every_tenth(self) -> None:
        self.assertEqual(list(range(10, 101, 10)), self._churn())
        self.assertEqual(10, self.settle.calls)
        self.assertEqual(10, self.checker.calls)
        # The initial table, then a delete + recreate per iteration
        self.assertEqual(1 + 2 * 100, len(self.table.ops))
        self.assertEqual(("create", _DEVICE, 50), self.table.ops[0])
        self.assertEqual(
            [("delete", _DEVICE), ("create", _DEVICE, 50)] * 100,
            self.table.ops[1:],
        )

    def test_fewer_iterations_than_check_interval(self) -> None:
        self.assertEqual([], self._churn(iterations=5, check_every=10))
        self.assertEqual(0, self.checker.calls)
        self.assertEqual(11, len(self.table.ops))

    def test_violation_aborts_immediately(self) -> None:
        with self.assertRaises(ChurnFailure) as ctx:
            self._churn(checker=FakeChecker(fail_on=[3]))
        self.assertEqual(30, ctx.exception.iteration)
        self.assertEqual(1, len(ctx.exception.violations))
        self.assertIn("Iteration 30", str(ctx.exception))
        # Nothing ran past the failing barrier
        self.assertEqual(1 + 2 * 30, len(self.table.ops))
        self.assertEqual(3, self.checker.calls)

    def test_barrier_timeout_is_fatal(self) -> None:
        with self.assertRaises(BarrierTimeout):
            self._churn(settle=FakeSettle(fail_on_call=2))
        self.assertEqual(1, self.checker.calls)
        self.assertEqual(1 + 2 * 20, len(self.table.ops))

    def test_bad_arguments(self) -> None:
        with self.assertRaisesRegex(ValueError, "iterations"):
            self._churn(iterations=0)
        with self.assertRaisesRegex(ValueError, "check_every"):
            self._churn(check_every=0)
