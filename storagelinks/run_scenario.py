#!/usr/bin/env python3
# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""\
Run one storage naming scenario, bracketed by full checks of the symlinks
under /dev/disk, and print the result as JSON.

Exits 0 if the scenario passed, 1 if it failed, and 2 if no scenario by
that name exists.
"""
import os
import sys
from typing import Iterable, Optional

from storagelinks.cli import init_cli
from storagelinks.common import get_logger
from storagelinks.errors import UnknownScenario
from storagelinks.fs_utils import MehStr
from storagelinks.orchestrator import Orchestrator, Outcome
from storagelinks.scenarios import REGISTRY


log = get_logger()

SCENARIO_ENV_VAR = "STORAGELINKS_SCENARIO"


def main(argv: Optional[Iterable[MehStr]] = None) -> int:
    with init_cli(__doc__, argv) as cli:
        cli.parser.add_argument(
            "scenario",
            nargs="?",
            default=os.environ.get(SCENARIO_ENV_VAR),
            help=f"Scenario to run -- defaults to the {SCENARIO_ENV_VAR} env "
            f"var. One of: {', '.join(REGISTRY.names())}",
        )
        cli.parser.add_argument(
            "--list",
            action="store_true",
            help="Print the registered scenario names and exit.",
        )
    args = cli.args

    if args.list:
        for name in REGISTRY.names():
            print(name)
        return 0
    if not args.scenario:
        cli.parser.error(f"No scenario given, and {SCENARIO_ENV_VAR} is unset")

    config = cli.config()
    try:
        result = Orchestrator(config).run(args.scenario)
    except UnknownScenario as ex:
        log.error(str(ex))
        return 2
    print(result.model_dump_json())
    return 0 if result.outcome == Outcome.PASS else 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
