from __future__ import annotations

import argparse
import contextlib
import os
import re
import subprocess
import sys
from collections.abc import Sequence
from dataclasses import dataclass

from .core import Predicate, RootAccessError, WalkError, parse_size, report_error, walk

_COUNT = re.compile(r"[0-9]+")

# status a child reports when its image could not be replaced
_EXEC_FAILURE = 1

_FLAGS_HELP = """\
flags (each takes exactly one value, all of them must hold):
  -inum N      inode number equals N
  -nlinks N    hard link count equals N
  -name S      final path component equals S exactly
  -path S      same as -name
  -size XN     size in bytes is less than (-), equal to (=) or greater than (+) N
  -exec P      run program P once with every match as an argument
"""


class ArgumentError(ValueError):
    def __init__(self, context: str, reason: str) -> None:
        super().__init__(context, reason)
        self.context = context
        self.reason = reason

    def __str__(self) -> str:
        return f"ERROR {self.context}: {self.reason}"


class ExecError(Exception):
    def __init__(self, context: str, cause: OSError) -> None:
        super().__init__(context, cause)
        self.context = context
        self.cause = cause

    def __str__(self) -> str:
        reason = self.cause.strerror or str(self.cause)
        return f"ERROR {self.context}: {reason}"


class ExecLaunchError(ExecError):
    pass


class ExecChildError(ExecError):
    pass


class ExecWaitError(ExecError):
    pass


@dataclass(frozen=True)
class Request:
    root: str
    predicate: Predicate
    exec_path: str | None = None


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="bfsfind",
        description="Breadth-first search for files below ROOT matching every given flag.",
        epilog=_FLAGS_HELP,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("root", help="Directory to search")
    p.add_argument("flags", nargs=argparse.REMAINDER, help="FLAG VALUE pairs")
    return p


def _parse_count(flag: str, value: str) -> int:
    context = f"Invalid value for {flag} argument"
    if not _COUNT.fullmatch(value):
        raise ArgumentError(context, f"not a non-negative integer: {value!r}")
    try:
        return int(value)
    except ValueError as e:
        # too many digits for int()
        raise ArgumentError(context, str(e)) from e


def parse_flags(flags: Sequence[str]) -> tuple[Predicate, str | None]:
    if len(flags) % 2:
        raise ArgumentError("Invalid number of arguments", f"{flags[-1]} has no value")

    fields: dict[str, object] = {}
    exec_path = None
    for flag, value in zip(flags[::2], flags[1::2]):
        if flag == "-inum":
            fields["inode"] = _parse_count(flag, value)
        elif flag == "-nlinks":
            fields["nlink"] = _parse_count(flag, value)
        elif flag in ("-name", "-path"):
            fields["name"] = value
        elif flag == "-size":
            try:
                fields["size"] = parse_size(value)
            except ValueError as e:
                raise ArgumentError("Invalid value for -size argument", str(e)) from e
        elif flag == "-exec":
            exec_path = value
        # anything else is ignored together with its value

    return Predicate(**fields), exec_path  # type: ignore[arg-type]


def parse_args(argv: Sequence[str] | None = None) -> Request:
    ns = build_parser().parse_args(argv)
    predicate, exec_path = parse_flags(ns.flags)
    return Request(root=ns.root, predicate=predicate, exec_path=exec_path)


def run_exec(program: str, args: Sequence[str]) -> int | None:
    """Run ``program`` once with ``args`` in an empty environment and wait for it.

    Returns the child's exit code, or None when waiting for it failed.
    Raises ExecLaunchError when no child process could be created.
    """
    sys.stdout.flush()
    try:
        proc = subprocess.Popen([program, *args], env={})
    except OSError as e:
        if e.filename is None:
            raise ExecLaunchError("Unable to create child process", e) from e
        # the child ran but could not become ``program``
        print(ExecChildError(f"Execution failed '{program}'", e), file=sys.stderr)
        return _EXEC_FAILURE

    try:
        return proc.wait()
    except OSError as e:
        print(ExecWaitError("Error while waiting", e), file=sys.stderr)
        return None


def _print_matches(matches: Sequence[str]) -> int:
    # names come back from the filesystem as bytes, so write them as bytes
    sys.stdout.flush()
    out = sys.stdout.buffer
    try:
        for path in matches:
            out.write(os.fsencode(path) + b"\n")
        out.flush()
    except BrokenPipeError:
        with contextlib.suppress(Exception):
            sys.stdout.close()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    try:
        request = parse_args(argv)
    except ArgumentError as e:
        print(e, file=sys.stderr)
        return 2

    root_opened = True

    def on_error(err: WalkError) -> None:
        nonlocal root_opened
        if isinstance(err, RootAccessError):
            root_opened = False
        report_error(err)

    matches = walk(request.root, request.predicate, on_error)

    if request.exec_path is None:
        return _print_matches(matches)
    if not root_opened:
        return 0

    try:
        code = run_exec(request.exec_path, matches)
    except ExecLaunchError as e:
        print(e, file=sys.stderr)
        return 1
    if code is not None:
        print(f"Process finished with exit code {code}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
