#!/usr/bin/env python3
# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Checks that every symlink under a device-link namespace (`/dev/disk` by
default) is live and points at the device node that the naming daemon
itself says owns it.

For each link, two independent answers are compared:
  - the filesystem's: `readlink -f LINK`, which must exist, and
  - the daemon's: `/dev/` + `udevadm info --query=name LINK`.

The checker takes a point-in-time snapshot and makes no attempt to be
atomic with respect to whatever is mutating the namespace.  Its purpose is
to catch the windows in which the daemon leaves a stale or dangling link,
so it reports every bad link it sees instead of stopping at the first.
"""
import enum
import os
from typing import Iterable, List, Optional

from storagelinks.common import get_logger
from storagelinks.errors import ResolverError, SymlinkCheckError
from storagelinks.fs_utils import Path
from storagelinks.shape import Shape
from storagelinks.udev import NameResolver


log = get_logger()

# The namespaces the daemon publishes for block devices.
NAMESPACES = ("by-id", "by-uuid", "by-label", "by-partlabel", "by-partuuid")


@enum.unique
class ViolationKind(enum.Enum):
    DANGLING_LINK = "dangling_link"
    NAME_MISMATCH = "name_mismatch"


class SymlinkEntry(Shape):
    path: Path
    # What `readlink -f` gave, whether or not that node exists.
    resolved: Path
    live: bool
    # `None` when the link dangles, or the resolver could not name its owner.
    canonical_name: Optional[str] = None
    resolver_error: Optional[str] = None

    @property
    def target(self) -> Optional[Path]:
        return self.resolved if self.live else None


class SymlinkViolation(Shape):
    kind: ViolationKind
    path: Path
    target: Optional[Path] = None
    expected: Optional[Path] = None
    detail: str = ""

    def describe(self) -> str:
        if self.kind == ViolationKind.DANGLING_LINK:
            msg = f"symlink '{self.path}' points to '{self.target}' which doesn't exist"
        else:
            msg = (
                f"symlink '{self.path}' points to '{self.target}' but "
                f"'{self.expected}' was expected"
            )
        return f"{msg} ({self.detail})" if self.detail else msg


def iter_symlinks(namespace_root: Path) -> List[Path]:
    """
    Every symlink under `namespace_root`, recursively, like
    `find ROOT -type l`.  Directory links are reported but not descended
    into.  A namespace that vanishes mid-walk just yields fewer links.
    """
    links = []
    for dirpath, dirnames, filenames in os.walk(namespace_root):
        dirpath = Path(dirpath)
        for name in dirnames + filenames:
            p = dirpath / name
            if p.islink():
                links.append(p)
    return sorted(links)


def _entry_for(link: Path, resolver: NameResolver) -> SymlinkEntry:
    resolved = link.realpath()
    # Both checks should do virtually the same thing, but a link that is
    # removed between the walk and here fails the first one only.
    if not link.exists() or not resolved.exists():
        return SymlinkEntry(path=link, resolved=resolved, live=False)
    try:
        name = resolver.canonical_name(link)
    except ResolverError as ex:
        log.debug(f"No canonical name for {link}: {ex}")
        return SymlinkEntry(
            path=link,
            resolved=resolved,
            live=link.lexists(),
            resolver_error=str(ex),
        )
    return SymlinkEntry(path=link, resolved=resolved, live=True, canonical_name=name)


def snapshot(namespace_root: Path, resolver: NameResolver) -> List[SymlinkEntry]:
    """
    Resolves every link under `namespace_root` once, both ways.  The
    daemon is only asked about links whose target exists.
    """
    return [_entry_for(link, resolver) for link in iter_symlinks(Path(namespace_root))]


def _check_entry(entry: SymlinkEntry, dev_root: Path) -> Optional[SymlinkViolation]:
    if not entry.live:
        return SymlinkViolation(
            kind=ViolationKind.DANGLING_LINK,
            path=entry.path,
            target=entry.resolved,
            detail=(
                "link disappeared while being checked"
                if entry.resolver_error is not None
                else ""
            ),
        )
    if entry.resolver_error is not None:
        return SymlinkViolation(
            kind=ViolationKind.NAME_MISMATCH,
            path=entry.path,
            target=entry.resolved,
            detail=entry.resolver_error,
        )
    expected = dev_root / entry.canonical_name
    if entry.resolved != expected:
        return SymlinkViolation(
            kind=ViolationKind.NAME_MISMATCH,
            path=entry.path,
            target=entry.resolved,
            expected=expected,
        )
    return None


def find_violations(
    namespace_root: Path,
    resolver: NameResolver,
    dev_root: Path = Path("/dev"),
) -> List[SymlinkViolation]:
    namespace_root = Path(namespace_root)
    dev_root = Path(dev_root)
    entries = snapshot(namespace_root, resolver)
    violations = []
    for entry in entries:
        v = _check_entry(entry, dev_root)
        if v is not None:
            log.error(f"ERROR: {v.describe()}")
            violations.append(v)
    log.info(
        f"Checked {len(entries)} symlinks under {namespace_root}: "
        f"{len(violations)} bad"
    )
    return violations


def check_all(
    namespace_root: Path,
    resolver: NameResolver,
    dev_root: Path = Path("/dev"),
) -> None:
    "Raises `SymlinkCheckError` listing every bad link, if there are any."
    violations = find_violations(namespace_root, resolver, dev_root)
    if violations:
        raise SymlinkCheckError(violations)


def missing_links(links: Iterable[Path]) -> List[Path]:
    "The subset of `links` that `test -e` would reject."
    return [link for link in links if not Path(link).exists()]
