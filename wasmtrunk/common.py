"""Shared helpers for filesystem work, command execution and URL handling."""

from __future__ import annotations

import os
import shutil
import stat
import subprocess
from collections.abc import Iterable
from pathlib import Path

BUILDING = "📦"
SUCCESS = "✅"
ERROR = "❌"
SERVER = "📡"

_CWD = Path.cwd()

StrPath = str | os.PathLike[str]


class TrunkError(Exception):
    """Raised when a build, configuration or serving step fails."""


def _quoted(path: StrPath) -> str:
    text = os.fspath(path).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def parse_public_url(val: str) -> str:
    """Ensure a public URL value starts and ends with a slash."""
    prefix = "" if val.startswith("/") else "/"
    suffix = "" if val.endswith("/") else "/"
    return f"{prefix}{val}{suffix}"


def path_exists(path: StrPath) -> bool:
    """Return whether the path exists; errors other than "not found" are raised."""
    try:
        os.stat(path)
    except FileNotFoundError:
        return False
    except OSError as err:
        raise TrunkError(f"error checking for existance of path at {_quoted(path)}") from err
    return True


def is_executable(path: StrPath) -> bool:
    """Return whether the path exists, is a regular file and is marked executable."""
    try:
        info = os.stat(path)
    except FileNotFoundError:
        return False
    except OSError as err:
        raise TrunkError(f"error checking file mode for file {_quoted(path)}") from err
    if not stat.S_ISREG(info.st_mode):
        return False
    if os.name != "posix":
        return True
    return bool(info.st_mode & 0o100)


def copy_dir_recursive(from_dir: StrPath, to_dir: StrPath) -> None:
    """Copy the contents of one directory into another, overwriting existing files."""
    if not path_exists(from_dir):
        raise TrunkError(f"directory can not be copied as it does not exist {_quoted(from_dir)}")
    try:
        shutil.copytree(from_dir, to_dir, dirs_exist_ok=True)
    except (OSError, shutil.Error) as err:
        raise TrunkError("error copying directory") from err


def remove_dir_all(path: StrPath) -> None:
    """Recursively delete a directory; a missing directory is not an error."""
    if not path_exists(path):
        return
    try:
        shutil.rmtree(path)
    except OSError as err:
        raise TrunkError("error removing directory") from err


def strip_prefix(target: StrPath) -> Path:
    """Return the path relative to the working directory, or unchanged if outside it."""
    target = Path(target)
    try:
        return target.relative_to(_CWD)
    except ValueError:
        return target


def run_command(name: str, path: StrPath, args: Iterable[StrPath]) -> None:
    """Run a program with inherited output streams, raising if it fails."""
    argv = [os.fspath(path), *(os.fspath(arg) for arg in args)]
    try:
        completed = subprocess.run(argv, check=False)
    except OSError as err:
        raise TrunkError(f"error spawning {name} call") from err
    if completed.returncode != 0:
        raise TrunkError(f"{name} call returned a bad status")