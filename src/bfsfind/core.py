from __future__ import annotations

import os
import re
import stat
import sys
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

SizeOp = tuple[str, int]  # (op: 'lt'|'eq'|'gt', bytes)

_SIZE_OPS = {"-": "lt", "=": "eq", "+": "gt"}
_DIGITS = re.compile(r"[0-9]+")


def as_directory(path: str) -> str:
    if path and not path.endswith(os.sep):
        return path + os.sep
    return path


def join(parent: str, name: str) -> str:
    return as_directory(parent) + name


def parse_size(expr: str) -> SizeOp:
    """Parse ``XN`` where X is one of ``-``, ``=``, ``+`` and N a byte count."""
    if not expr:
        raise ValueError("size expression cannot be empty")

    op = _SIZE_OPS.get(expr[0])
    if op is None:
        raise ValueError(f"invalid size relation: {expr[0]!r}")

    num_part = expr[1:]
    if not _DIGITS.fullmatch(num_part):
        raise ValueError(f"invalid size value: {num_part!r}")

    return op, int(num_part)


@dataclass(frozen=True)
class Predicate:
    """Conjunction of per-entry tests. Unset fields match everything."""

    inode: int | None = None
    nlink: int | None = None
    name: str | None = None
    size: SizeOp | None = None

    def __post_init__(self) -> None:
        for field_name in ("inode", "nlink"):
            value = getattr(self, field_name)
            if value is not None and value < 0:
                raise ValueError(f"{field_name} must be non-negative, got {value}")
        if self.size is not None:
            op, threshold = self.size
            if op not in _SIZE_OPS.values():
                raise ValueError(f"invalid size relation: {op!r}")
            if threshold < 0:
                raise ValueError(f"size must be non-negative, got {threshold}")

    def accept(self, name: str, st: Any) -> bool:
        if self.inode is not None and st.st_ino != self.inode:
            return False
        if self.nlink is not None and st.st_nlink != self.nlink:
            return False
        if self.name is not None and name != self.name:
            return False
        return _match_size(st.st_size, self.size)


def _match_size(size: int, op_and_bytes: SizeOp | None) -> bool:
    if op_and_bytes is None:
        return True
    op, ref = op_and_bytes
    if op == "eq":
        return size == ref
    if op == "lt":
        return size < ref
    if op == "gt":
        return size > ref
    return False


class WalkError(Exception):
    """A filesystem failure met during the walk, reported and then skipped."""

    def __init__(self, context: str, path: str, cause: OSError) -> None:
        super().__init__(context, path, cause)
        self.context = context
        self.path = path
        self.cause = cause

    def __str__(self) -> str:
        reason = self.cause.strerror or str(self.cause)
        return f"ERROR {self.context} '{self.path}': {reason}"


class RootAccessError(WalkError):
    pass


class EntryAccessError(WalkError):
    pass


ErrorSink = Callable[[WalkError], None]


def report_error(err: WalkError) -> None:
    print(err, file=sys.stderr)


@dataclass
class WalkFrame:
    handle: Iterator[os.DirEntry]
    path: str
    closed: bool = False

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.handle.close()  # type: ignore[attr-defined]


def walk(root: str, predicate: Predicate, on_error: ErrorSink | None = None) -> list[str]:
    return list(search(root, predicate, on_error))


def search(
    root: str,
    predicate: Predicate,
    on_error: ErrorSink | None = None,
) -> Iterator[str]:
    """Yield non-directory entries below ``root`` accepted by ``predicate``.

    Directories are visited breadth-first: every entry of one level is
    produced before any entry of the next, and entries within a directory
    keep the order the directory read returns them in. Symbolic links are
    never descended into. Per-entry failures go to ``on_error`` and the walk
    carries on; if ``root`` itself cannot be opened nothing is yielded.
    """
    report = on_error or report_error

    try:
        handle = os.scandir(root)
    except OSError as e:
        report(RootAccessError("Unable to access root directory", root, e))
        return

    queue: deque[WalkFrame] = deque([WalkFrame(handle, root)])
    frame: WalkFrame | None = None
    try:
        while queue:
            frame = queue.popleft()
            yield from _scan_frame(frame, predicate, queue, report)
            frame.close()
            frame = None
    finally:
        # abandoned walk: release whatever is still open
        if frame is not None:
            frame.close()
        while queue:
            queue.popleft().close()


def _scan_frame(
    frame: WalkFrame,
    predicate: Predicate,
    queue: deque[WalkFrame],
    report: ErrorSink,
) -> Iterator[str]:
    it = iter(frame.handle)
    while True:
        try:
            entry = next(it)
        except StopIteration:
            return
        except OSError as e:
            report(EntryAccessError("Unable to read directory", frame.path, e))
            return

        name = entry.name
        if name in (".", ".."):
            continue

        path = join(frame.path, name)
        try:
            st = os.lstat(path)
        except OSError as e:
            report(EntryAccessError("Unable to access file", path, e))
            continue

        if stat.S_ISDIR(st.st_mode):
            try:
                handle = os.scandir(path)
            except OSError as e:
                report(EntryAccessError("Unable to open directory", path, e))
                continue
            queue.append(WalkFrame(handle, path))
        elif predicate.accept(name, st):
            yield path
