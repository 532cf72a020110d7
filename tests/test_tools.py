import io
import os
import subprocess
import tarfile
import urllib.error
from pathlib import Path
from unittest import mock

import pytest

from wasmtrunk.common import TrunkError, is_executable
from wasmtrunk.tools import (
    Application,
    cache_dir,
    download,
    extract_file,
    find_system,
    find_tar_entry,
    get,
    install,
    set_executable_flag,
)


@pytest.mark.parametrize(
    "app, text, expected",
    [
        (Application.WASM_OPT, "wasm-opt version 101 (version_101)", "version_101"),
        (Application.WASM_OPT, "wasm-opt version 101", "version_101"),
        (Application.WASM_BINDGEN, "wasm-bindgen 0.2.75", "0.2.75"),
        (Application.WASM_BINDGEN, "wasm-bindgen 0.2.74 (27c7a4d06)", "0.2.74"),
    ],
)
def test_format_version_output(app, text, expected):
    assert app.format_version_output(text) == expected


def test_format_version_output_malformed():
    with pytest.raises(TrunkError, match="missing or malformed version output: wasm-opt"):
        Application.WASM_OPT.format_version_output("wasm-opt\n")


def test_default_versions_and_names():
    assert Application.WASM_BINDGEN.value == "wasm-bindgen"
    assert Application.WASM_OPT.value == "wasm-opt"
    assert Application.WASM_BINDGEN.default_version() == "0.2.74"
    assert Application.WASM_OPT.default_version() == "version_101"
    assert Application.WASM_OPT.version_test() == "--version"


def test_url_shape():
    url = Application.WASM_BINDGEN.url("0.2.74")
    assert url.startswith("https://github.com/rustwasm/wasm-bindgen/releases/download/0.2.74/")
    assert url.endswith(f"wasm-bindgen-0.2.74-x86_64-{Application.WASM_BINDGEN.target()}.tar.gz")
    opt = Application.WASM_OPT.url("version_101")
    assert opt.endswith(f"binaryen-version_101-x86_64-{Application.WASM_OPT.target()}.tar.gz")


def make_archive(path: Path, prefix: str, files: dict[str, bytes]) -> Path:
    with tarfile.open(path, "w:gz") as archive:
        for name, data in files.items():
            info = tarfile.TarInfo(f"{prefix}/{name}")
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return path


@pytest.mark.parametrize("app", list(Application))
def test_install_extracts_binary_and_extras(tmp_path, app):
    files = {app.path(): b"binary"}
    files.update({extra: b"extra" for extra in app.extra_paths()})
    files["README.md"] = b"readme"
    archive = make_archive(tmp_path / "app.tar.gz", "release-dir", files)
    target = tmp_path / "install"
    install(app, archive, target)
    assert (target / app.path()).read_bytes() == b"binary"
    assert is_executable(target / app.path())
    for extra in app.extra_paths():
        assert (target / extra).read_bytes() == b"extra"
    assert not (target / "README.md").exists()


def test_install_missing_file(tmp_path):
    archive = make_archive(tmp_path / "app.tar.gz", "release-dir", {"other": b"x"})
    with pytest.raises(TrunkError, match="file not found in archive"):
        install(Application.WASM_BINDGEN, archive, tmp_path / "install")


def test_find_tar_entry_drops_leading_dir(tmp_path):
    archive_path = make_archive(tmp_path / "a.tar.gz", "top", {"bin/tool": b"data", "tool": b"root"})
    with tarfile.open(archive_path, "r:gz") as archive:
        entry = find_tar_entry(archive, "bin/tool")
        assert entry is not None
        assert entry.name == "top/bin/tool"
        assert find_tar_entry(archive, "top/bin/tool") is None
        out = extract_file(archive, tmp_path / "out", "tool")
    assert out == tmp_path / "out" / "tool"
    assert out.read_bytes() == b"root"


def test_set_executable_flag(tmp_path):
    path = tmp_path / "tool"
    path.write_bytes(b"")
    os.chmod(path, 0o644)
    set_executable_flag(path)
    assert is_executable(path)


def test_cache_dir_created(tmp_path):
    location = tmp_path / "cache" / "trunk"
    with mock.patch("platformdirs.user_cache_dir", return_value=str(location)):
        assert cache_dir() == location
    assert location.is_dir()


def test_find_system_not_on_path():
    with mock.patch("shutil.which", return_value=None):
        assert find_system(Application.WASM_BINDGEN, "0.2.74") is None


@pytest.mark.parametrize("version, found", [("0.2.74", True), ("0.2.75", False)])
def test_find_system_checks_version(tmp_path, version, found):
    exe = str(tmp_path / "wasm-bindgen")
    result = subprocess.CompletedProcess(
        args=[], returncode=0, stdout=b"wasm-bindgen 0.2.74 (27c7a4d06)\n", stderr=b""
    )
    with mock.patch("shutil.which", return_value=exe), mock.patch("subprocess.run", return_value=result):
        path = find_system(Application.WASM_BINDGEN, version)
    assert path == (Path(exe) if found else None)


def test_find_system_failing_command(tmp_path):
    result = subprocess.CompletedProcess(args=[], returncode=1, stdout=b"", stderr=b"")
    with mock.patch("shutil.which", return_value=str(tmp_path / "wasm-opt")), mock.patch(
        "subprocess.run", return_value=result
    ):
        assert find_system(Application.WASM_OPT, "version_101") is None


def test_download_writes_temp_file(tmp_path):
    with mock.patch("platformdirs.user_cache_dir", return_value=str(tmp_path)), mock.patch(
        "urllib.request.urlopen", return_value=io.BytesIO(b"archive-bytes")
    ) as urlopen:
        path = download(Application.WASM_BINDGEN, "0.2.74")
    assert path == tmp_path / "wasm-bindgen-0.2.74.tmp"
    assert path.read_bytes() == b"archive-bytes"
    assert urlopen.call_args.args[0] == Application.WASM_BINDGEN.url("0.2.74")


def test_download_bad_status(tmp_path):
    url = Application.WASM_OPT.url("version_101")
    error = urllib.error.HTTPError(url, 404, "Not Found", None, None)
    with mock.patch("platformdirs.user_cache_dir", return_value=str(tmp_path)), mock.patch(
        "urllib.request.urlopen", side_effect=error
    ):
        with pytest.raises(TrunkError) as info:
            download(Application.WASM_OPT, "version_101")
    assert str(info.value) == f"error downloading archive file: 404\n{url}"


def test_get_uses_cached_binary(tmp_path):
    app = Application.WASM_BINDGEN
    binary = tmp_path / "wasm-bindgen-0.2.74" / app.path()
    binary.parent.mkdir(parents=True)
    binary.write_bytes(b"bin")
    os.chmod(binary, 0o755)
    with mock.patch("platformdirs.user_cache_dir", return_value=str(tmp_path)), mock.patch(
        "shutil.which", return_value=None
    ):
        assert get(app) == binary


def test_get_downloads_and_installs(tmp_path):
    app = Application.WASM_OPT
    archive = make_archive(
        tmp_path / "src.tar.gz",
        "binaryen-version_101",
        {app.path(): b"opt", **{extra: b"lib" for extra in app.extra_paths()}},
    )
    cache = tmp_path / "cache"
    with mock.patch("platformdirs.user_cache_dir", return_value=str(cache)), mock.patch(
        "shutil.which", return_value=None
    ), mock.patch("urllib.request.urlopen", return_value=io.BytesIO(archive.read_bytes())):
        path = get(app, "version_101")
    assert path == cache / "wasm-opt-version_101" / app.path()
    assert path.read_bytes() == b"opt"
    assert not (cache / "wasm-opt-version_101.tmp").exists()