"""Locate external tools, downloading and installing them into a cache when missing."""

from __future__ import annotations

import logging
import os
import shutil
import stat
import subprocess
import sys
import tarfile
import urllib.error
import urllib.request
from enum import Enum
from pathlib import Path, PurePosixPath

import platformdirs

from wasmtrunk.common import TrunkError, is_executable

log = logging.getLogger(__name__)

StrPath = str | os.PathLike[str]


class Application(Enum):
    """An external application; the value is its executable's base name."""

    WASM_BINDGEN = "wasm-bindgen"
    WASM_OPT = "wasm-opt"

    def path(self) -> str:
        """Path of the executable within the downloaded archive."""
        exe = ".exe" if sys.platform == "win32" else ""
        if self is Application.WASM_BINDGEN:
            return f"wasm-bindgen{exe}"
        return f"bin/wasm-opt{exe}"

    def extra_paths(self) -> list[str]:
        """Additional archive files needed to run the main binary."""
        if sys.platform == "darwin" and self is Application.WASM_OPT:
            return ["lib/libbinaryen.dylib"]
        return []

    def default_version(self) -> str:
        """Version used when none is configured."""
        if self is Application.WASM_BINDGEN:
            return "0.2.74"
        return "version_101"

    def target(self) -> str:
        """Platform part of the download URL; raises on unsupported platforms."""
        if sys.platform == "win32":
            return "pc-windows-msvc" if self is Application.WASM_BINDGEN else "windows"
        if sys.platform == "darwin":
            return "apple-darwin" if self is Application.WASM_BINDGEN else "macos"
        if sys.platform.startswith("linux"):
            return "unknown-linux-musl" if self is Application.WASM_BINDGEN else "linux"
        raise TrunkError("unsupported OS")

    def url(self, version: str) -> str:
        """Download URL of the release archive for the given version."""
        target = self.target()
        if self is Application.WASM_BINDGEN:
            return (
                f"https://github.com/rustwasm/wasm-bindgen/releases/download/{version}/"
                f"wasm-bindgen-{version}-x86_64-{target}.tar.gz"
            )
        return (
            f"https://github.com/WebAssembly/binaryen/releases/download/{version}/"
            f"binaryen-{version}-x86_64-{target}.tar.gz"
        )

    def version_test(self) -> str:
        """The flag that makes the application print its version."""
        return "--version"

    def format_version_output(self, text: str) -> str:
        """Extract the version from the application's version output."""
        text = text.strip()
        parts = text.split(" ")
        index = 1 if self is Application.WASM_BINDGEN else 2
        if len(parts) <= index:
            raise TrunkError(f"missing or malformed version output: {text}")
        if self is Application.WASM_BINDGEN:
            return parts[index]
        return f"version_{parts[index]}"


def get(app: Application, version: str | None = None) -> Path:
    """Locate the application, downloading and installing it if needed."""
    version = version if version is not None else app.default_version()

    system_path = find_system(app, version)
    if system_path is not None:
        log.info("using system installed binary %s %s", app.value, version)
        return system_path

    app_dir = cache_dir() / f"{app.value}-{version}"
    bin_path = app_dir / app.path()

    if not is_executable(bin_path):
        try:
            archive_path = download(app, version)
        except TrunkError as err:
            raise TrunkError("failed downloading release archive") from err
        install(app, archive_path, app_dir)
        try:
            archive_path.unlink()
        except OSError as err:
            raise TrunkError("failed deleting temporary archive") from err

    return bin_path


def find_system(app: Application, version: str) -> Path | None:
    """Return the system-installed application if its version matches."""
    found = shutil.which(app.value)
    if found is None:
        log.debug("system version not found for %s: not on PATH", app.value)
        return None
    path = Path(found)
    try:
        output = subprocess.run([found, app.version_test()], capture_output=True, check=False)
    except OSError as err:
        log.debug("system version not found for %s: %s", app.value, err)
        return None
    if output.returncode != 0:
        log.debug("running command `%s %s` failed", path, app.version_test())
        return None
    text = output.stdout.decode("utf-8", errors="replace")
    try:
        system_version = app.format_version_output(text)
    except TrunkError as err:
        log.debug("system version not found for %s: %s", app.value, err)
        return None
    return path if system_version == version else None


def download(app: Application, version: str) -> Path:
    """Download the release archive into the cache directory and return its path."""
    log.info("downloading %s %s", app.value, version)
    try:
        directory = cache_dir()
    except TrunkError as err:
        raise TrunkError("failed getting the cache directory") from err
    temp_out = directory / f"{app.value}-{version}.tmp"
    url = app.url(version)
    try:
        with urllib.request.urlopen(url) as response, temp_out.open("wb") as out:
            shutil.copyfileobj(response, out)
    except urllib.error.HTTPError as err:
        raise TrunkError(f"error downloading archive file: {err.code}\n{url}") from err
    except urllib.error.URLError as err:
        raise TrunkError("error sending HTTP request") from err
    except OSError as err:
        raise TrunkError("error reading chunk from download") from err
    return temp_out


def install(app: Application, archive_path: StrPath, target: StrPath) -> None:
    """Extract the application and its extra files from the archive into ``target``."""
    log.info("installing %s", app.value)
    try:
        archive = tarfile.open(archive_path, "r:gz")
    except (OSError, tarfile.TarError) as err:
        raise TrunkError("failed opening downloaded file") from err
    with archive:
        executable = extract_file(archive, target, app.path())
        set_executable_flag(executable)
        for extra in app.extra_paths():
            extract_file(archive, target, extra)


def extract_file(archive: tarfile.TarFile, target: StrPath, file: StrPath) -> Path:
    """Copy one file out of the archive to the same relative path under ``target``."""
    entry = find_tar_entry(archive, file)
    if entry is None:
        raise TrunkError("file not found in archive")
    source = archive.extractfile(entry)
    if source is None:
        raise TrunkError("file not found in archive")
    out = Path(target) / file
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
    except OSError as err:
        raise TrunkError("failed creating output directory") from err
    try:
        with source, out.open("wb") as dest:
            shutil.copyfileobj(source, dest)
    except OSError as err:
        raise TrunkError("failed copying over final output file from archive") from err
    return out


def cache_dir() -> Path:
    """Return the tool cache directory, creating it if needed."""
    path = Path(platformdirs.user_cache_dir("trunk", "trunkrs"))
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as err:
        raise TrunkError("failed creating cache directory") from err
    return path


def set_executable_flag(path: StrPath) -> None:
    """Mark a file executable by its owner; has no effect outside POSIX systems."""
    if os.name != "posix":
        return
    try:
        mode = os.stat(path).st_mode
        os.chmod(path, stat.S_IMODE(mode) | 0o100)
    except OSError as err:
        raise TrunkError("failed setting the executable flag") from err


def find_tar_entry(archive: tarfile.TarFile, path: StrPath) -> tarfile.TarInfo | None:
    """Find an archive member by path, ignoring the member's leading directory."""
    wanted = PurePosixPath(os.fspath(path).replace("\\", "/")).parts
    for member in archive:
        if PurePosixPath(member.name).parts[1:] == wanted:
            return member
    return None