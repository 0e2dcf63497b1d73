#!/usr/bin/env python3
# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"Path type and temporary-file helpers for poking at /dev, /sys and mounts."
import argparse
import os
import tempfile
from contextlib import contextmanager
from typing import AnyStr, Generator, IO, Iterable, Iterator, List, Union

from pydantic_core import core_schema


# Lists passed to `subprocess` freely mix `str`, `bytes` and `Path`.
MehStr = Union[str, bytes, "Path"]


def byteme(s: AnyStr) -> bytes:
    "Byte literals are tiring, just promote strings as needed."
    return s.encode() if isinstance(s, str) else s


# Device node and symlink names are bytes on Linux; udev will happily
# publish labels that are not valid UTF-8.
class Path(bytes):
    """
    A `bytes` path that supports joining via the / operator.

      - It is an error to compare it to `str`, preventing a common bug.
      - It formats as a surrogate-escaped string, not as a quoted
        byte-string.  If you need the latter, use `repr()`.

    Most operations (including construction, and `/`) accept `str` and
    `bytes`.  `Path` also validates as a pydantic field, so config and
    result records can hold it directly.
    """

    def __new__(cls, arg, *args, **kwargs):
        return super().__new__(cls, byteme(arg), *args, **kwargs)

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type, handler):
        return core_schema.no_info_plain_validator_function(
            cls._validate,
            serialization=core_schema.plain_serializer_function_ser_schema(str),
        )

    @classmethod
    def _validate(cls, v) -> "Path":
        if not isinstance(v, (str, bytes)):
            raise ValueError(f"expected a path, got {type(v)}")
        return cls(v)

    def __eq__(self, obj) -> bool:
        if not isinstance(obj, (bytes, type(None))):
            raise TypeError(
                f"Cannot compare `Path` {repr(self)} with "
                f"`{type(obj)}` {repr(obj)}."
            )
        return super().__eq__(obj)

    def __ne__(self, obj) -> bool:
        return not self.__eq__(obj)

    def __hash__(self) -> int:
        return super().__hash__()

    def __truediv__(self, right: AnyStr) -> "Path":
        return Path(os.path.join(self, byteme(right)))

    def exists(self) -> bool:
        "Follows symlinks, like `test -e`."
        return os.path.exists(self)

    def lexists(self) -> bool:
        return os.path.lexists(self)

    def islink(self) -> bool:
        return os.path.islink(self)

    def isdir(self) -> bool:
        return os.path.isdir(self)

    def basename(self) -> "Path":
        return Path(os.path.basename(self))

    def dirname(self) -> "Path":
        return Path(os.path.dirname(self))

    def realpath(self) -> "Path":
        "Like `readlink -f`: resolves every link, even if the leaf is gone."
        return Path(os.path.realpath(self))

    def readlink(self) -> "Path":
        return Path(os.readlink(self))

    def listdir(self) -> List["Path"]:
        return [Path(p) for p in os.listdir(self)]

    def decode(self, encoding: str = "utf-8", errors: str = "surrogateescape") -> str:
        return super().decode(encoding, errors)

    @classmethod
    def from_argparse(cls, s: str) -> "Path":
        # Python uses `surrogateescape` for `sys.argv`.
        return Path(s.encode(errors="surrogateescape"))

    @classmethod
    def parse_args(
        cls, parser: argparse.ArgumentParser, argv: Iterable[MehStr]
    ) -> argparse.Namespace:
        """
        Use this instead of `ArgumentParser.parse_args` because,
        inconveniently, it does not accept `bytes`.
        """
        return parser.parse_args(
            [
                a.decode(errors="surrogateescape") if isinstance(a, bytes) else a
                for a in argv
            ]
        )

    def read_text(self) -> str:
        with self.open() as infile:
            return infile.read()

    def write_text(self, text: str) -> None:
        with self.open("w") as outfile:
            outfile.write(text)

    @contextmanager
    def open(self, mode: str = "r") -> Iterator[IO]:
        with open(self, mode=mode) as f:
            yield f

    def touch(self) -> "Path":
        with self.open(mode="a"):
            pass
        return self

    def unlink(self) -> None:
        return os.unlink(self)

    def __format__(self, spec: str) -> str:
        "Allow usage of `Path` in f-strings."
        return self.decode(errors="surrogateescape").__format__(spec)

    def __str__(self) -> str:
        'Matches `__format__` since people expect `f"{p}" == str(p)`.'
        return self.decode(errors="surrogateescape")


@contextmanager
def temp_dir(**kwargs) -> Generator[Path, None, None]:
    with tempfile.TemporaryDirectory(**kwargs) as td:
        yield Path(td)


@contextmanager
def populate_temp_file_and_rename(dest_path: Path, *, mode: str = "w"):
    """
    Opens a temporary file in the same directory as `dest_path` and yields
    it for writing.  On a clean exit the file atomically replaces
    `dest_path`, so a test runner polling for the marker never sees a
    half-written one.  If the with-block raises, the temporary file is
    deleted and `dest_path` is left alone.
    """
    with tempfile.NamedTemporaryFile(
        mode=mode, dir=dest_path.dirname(), delete=False
    ) as tf:
        try:
            yield tf
            tf.flush()
            os.rename(tf.name, dest_path)
        except BaseException:  # Clean up even on Ctrl-C
            os.unlink(tf.name)
            raise
