#!/usr/bin/env python3
# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"Logging, subprocess and retry helpers shared by the whole harness."
import inspect
import logging
import os
import random
import subprocess
import sys
import time
from typing import Callable, Iterable, List, Optional, Tuple, TypeVar

from storagelinks.errors import ToolMissingError


T = TypeVar("T")
_mockable_retry_fn_sleep = time.sleep


# It's possible that `get_logger` is obtained, **and** logs, before
# `init_logging` is called.  Such usage is a minor bug; rather than hide the
# bug by never showing the debug logs, we'll make those logs visible.
_INITIALIZED_LOGGING = False
_ROOT_LOGGER = "storagelinks"


class ColorFormatter(logging.Formatter):
    _base_fmt = (
        "\x1b[90m %(asctime)s.%(msecs)03d %(process)d %(filename)s:%(lineno)d "
        "\x1b[0m%(message)s"
    )
    _level_to_prefix = {
        logging.DEBUG: "\x1b[37mD",  # White
        logging.INFO: "\x1b[94mI",  # Blue
        logging.WARNING: "\x1b[93mW",  # Yellow
        logging.ERROR: "\x1b[91mE",  # Red
        logging.CRITICAL: "\x1b[95mF",  # Magenta
    }

    def __init__(self) -> None:
        super().__init__(datefmt="%Y%m%d %H:%M:%S")

    def format(self, record) -> str:
        try:
            self._style._fmt = self._level_to_prefix[record.levelno] + self._base_fmt
        except KeyError:
            # Fall back to just prepending the log level int
            self._style._fmt = str(record.levelno) + self._base_fmt
        return logging.Formatter.format(self, record)


# NB: Scenario output is consumed by a test runner that captures stdout
# separately, so all logging goes to stderr.
def init_logging(*, debug: bool = False) -> None:
    global _INITIALIZED_LOGGING
    level = logging.DEBUG if debug else logging.INFO
    logger = logging.getLogger(_ROOT_LOGGER)
    logger.setLevel(level)

    if not _INITIALIZED_LOGGING:
        _INITIALIZED_LOGGING = True
        hdlr = logging.StreamHandler()
        hdlr.setFormatter(ColorFormatter())
        logger.addHandler(hdlr)


def get_logger():
    calling_file = os.path.basename(inspect.getframeinfo(sys._getframe(1)).filename)
    # Strip extension from name of logger
    if calling_file.endswith(".py"):
        calling_file = calling_file[: -len(".py")]
    return logging.getLogger(_ROOT_LOGGER + "." + calling_file)


log = get_logger()


def _cmd_to_str(cmd: Iterable) -> List[str]:
    return [c.decode(errors="surrogateescape") if isinstance(c, bytes) else str(c) for c in cmd]


def run_stdout_to_err(
    cmd: Iterable, *, check: bool = False, **kwargs
) -> subprocess.CompletedProcess:
    """
    Runs a mutating command whose stdout is only of diagnostic interest.
    Its output lands on our stderr next to the log lines, which keeps the
    harness's own stdout clean.
    """
    args = _cmd_to_str(cmd)
    log.debug(f"Running {' '.join(args)}")
    try:
        return subprocess.run(args, stdout=2, check=check, **kwargs)
    except FileNotFoundError as ex:
        raise ToolMissingError(args[0]) from ex


def run_capture(
    cmd: Iterable, *, timeout: Optional[float] = None, input: Optional[str] = None
) -> Tuple[int, str, str]:
    """
    Runs a query command and returns `(returncode, stdout, stderr)` as text.
    Unlike `run_stdout_to_err`, a non-zero exit is left for the caller to
    interpret, since e.g. `udevadm settle` signals a timeout that way.
    """
    args = _cmd_to_str(cmd)
    log.debug(f"Querying {' '.join(args)}")
    try:
        res = subprocess.run(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            # Tools echo link names back, and those need not be UTF-8.
            errors="surrogateescape",
            timeout=timeout,
            input=input,
        )
    except FileNotFoundError as ex:
        raise ToolMissingError(args[0]) from ex
    return res.returncode, res.stdout, res.stderr


def retry_fn(
    retryable_fn: Callable[[], T],
    is_exception_retryable: Optional[Callable[[Exception], bool]] = None,
    *,
    delays: Iterable[float],
    what: str,
    log_exception: bool = True,
) -> T:
    """
    Calls `retryable_fn` up to `len(delays) + 1` times, sleeping `delays[i]`
    seconds after the i-th failure.  The final attempt's exception
    propagates.  If `is_exception_retryable` returns False for an
    exception, it is re-raised at once.
    """
    delays = list(delays)
    for i, delay in enumerate(delays):
        try:
            return retryable_fn()
        except Exception as e:
            if is_exception_retryable and not is_exception_retryable(e):
                raise
            log.log(
                logging.ERROR if log_exception else logging.DEBUG,
                f"[Retry {i + 1} of {len(delays)}] {what} -- waiting "
                f"{delay} seconds.",
                exc_info=log_exception,
            )
            _mockable_retry_fn_sleep(delay)
    return retryable_fn()  # With 0 retries, we should still run the function.


def seeded_rng(seed: Optional[int]) -> Tuple[int, random.Random]:
    """
    Returns `(seed, rng)`.  When no seed is given, one is drawn from the OS
    and logged, so that any failing run can be replayed with `--seed`.
    """
    if seed is None:
        seed = int.from_bytes(os.urandom(4), "big")
        log.info(f"No seed given, using random seed {seed}")
    return seed, random.Random(seed)
