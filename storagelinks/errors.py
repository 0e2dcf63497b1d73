# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.


class StorageLinksError(Exception):
    backtrace_is_interesting: bool = False

    def __init__(self, msg, backtrace_is_interesting=None):
        super().__init__(msg)
        if backtrace_is_interesting is not None:
            self.backtrace_is_interesting = backtrace_is_interesting

    def __str__(self):
        # The prefix lets the test runner grep high-signal errors out of the
        # console log.
        clsname = type(self).__name__
        if not clsname.endswith("Error"):
            clsname += "Error"
        return f"StorageLinks{clsname}: " + super().__str__()


class UserError(StorageLinksError):
    """The harness was invoked incorrectly, e.g. with a scenario name that
    is not registered, or a config file that does not exist.  Re-running
    will not help; the invocation has to change.
    """


class InfraError(StorageLinksError):
    """An external tool misbehaved in a way that prevents the harness from
    reaching a verdict: `udevadm` never settled, `sfdisk` refused a table,
    and so on.
    """


class ToolMissingError(InfraError):
    """Raised when an expected CLI tool is missing from the host system"""

    def __init__(self, tool) -> None:
        self.tool = tool
        super().__init__(f"Missing tool '{tool}'")


class VerificationError(StorageLinksError):
    """
    The observed storage stack violated one of the properties the harness
    asserts.  These are the defects the harness exists to find, so they are
    never retried.
    """


class UnknownScenario(UserError):
    def __init__(self, name: str, known) -> None:
        self.name = name
        super().__init__(
            f"Missing verification handler for test case '{name}', "
            f"known: {', '.join(sorted(known))}"
        )


class BarrierTimeout(InfraError):
    def __init__(self, timeout_s, detail: str = "") -> None:
        self.timeout_s = timeout_s
        msg = f"Device events did not settle within {timeout_s} seconds"
        super().__init__(f"{msg}: {detail}" if detail else msg)


class ResolverError(InfraError):
    pass


class PartitionTableError(InfraError):
    pass


class SymlinkCheckError(VerificationError):
    def __init__(self, violations) -> None:
        self.violations = list(violations)
        super().__init__(
            f"{len(self.violations)} bad symlink(s):\n"
            + "\n".join(f"  {v.describe()}" for v in self.violations)
        )


class ChurnFailure(VerificationError):
    def __init__(self, iteration: int, violations) -> None:
        self.iteration = iteration
        self.violations = list(violations)
        super().__init__(
            f"Iteration {iteration}: {len(self.violations)} bad symlink(s):\n"
            + "\n".join(f"  {v.describe()}" for v in self.violations)
        )


class FailoverInvariantViolation(VerificationError):
    pass


class DeviceCountError(VerificationError):
    "The machine does not expose the devices a scenario was built around."
