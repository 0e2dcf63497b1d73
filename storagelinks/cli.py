#!/usr/bin/env python3
# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Command-line plumbing shared by the harness entry points: logging flags,
and the options that override fields of the harness config.
"""
import argparse
import os
import sys
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional

from storagelinks.common import init_logging
from storagelinks.config import (
    CONFIG_ENV_VAR,
    harness_config,
    harness_config_t,
    load_harness_config,
)
from storagelinks.fs_utils import MehStr, Path


DEBUG_ENV_VAR = "STORAGELINKS_DEBUG"

# Option dests that share a name with the `harness_config_t` field they set
_CONFIG_OVERRIDES = ("seed", "result_dir", "namespace_root")


def add_harness_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=Path.from_argparse,
        help=f"JSON harness config. Defaults to the file named by "
        f"{CONFIG_ENV_VAR}, or built-in defaults.",
    )
    parser.add_argument(
        "--seed",
        type=int,
        help="Seed for every randomized choice; printed in the result of "
        "each run so a failure can be replayed.",
    )
    parser.add_argument(
        "--result-dir",
        type=Path.from_argparse,
        help="Write the `testok` / `failed` markers here.",
    )
    parser.add_argument(
        "--namespace-root",
        type=Path.from_argparse,
        help="Root of the symlink namespaces to check (default /dev/disk).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=bool(os.environ.get(DEBUG_ENV_VAR)),
        help=f"Log more -- also enabled via the {DEBUG_ENV_VAR} env var",
    )


def config_from_args(args: argparse.Namespace) -> harness_config_t:
    """
    `--config` replaces the environment-selected config file, and each
    explicitly passed override replaces one field of whichever was loaded.
    """
    config = load_harness_config(args.config) if args.config else harness_config()
    overrides = {
        k: getattr(args, k)
        for k in _CONFIG_OVERRIDES
        if getattr(args, k) is not None
    }
    return config.model_copy(update=overrides) if overrides else config


class CLI:
    parser: argparse.ArgumentParser
    args: argparse.Namespace

    def config(self) -> harness_config_t:
        return config_from_args(self.args)


@contextmanager
def init_cli(
    description: str, argv: Optional[Iterable[MehStr]] = None
) -> Iterator[CLI]:
    """
    The body of the `with` adds arguments to `cli.parser`; on exit the
    arguments are parsed into `cli.args` and logging is configured.
    """
    cli = CLI()
    cli.parser = argparse.ArgumentParser(
        description=description,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    yield cli
    add_harness_args(cli.parser)
    cli.args = Path.parse_args(cli.parser, argv if argv is not None else sys.argv[1:])
    init_logging(debug=cli.args.debug)
