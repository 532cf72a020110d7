import json
import subprocess
from pathlib import Path
from unittest import mock

import pytest

from wasmtrunk.common import TrunkError
from wasmtrunk.config.manifest import CargoMetadata

ROOT_ID = "app 0.1.0 (path+file:///work/app)"

METADATA = {
    "packages": [
        {
            "name": "wasm-bindgen",
            "version": "0.2.74",
            "id": "wasm-bindgen 0.2.74 (registry+https://example.com/index)",
            "manifest_path": "/registry/wasm-bindgen/Cargo.toml",
        },
        {
            "name": "app",
            "version": "0.1.0",
            "id": ROOT_ID,
            "manifest_path": "/work/app/Cargo.toml",
        },
    ],
    "resolve": {"root": ROOT_ID, "nodes": []},
    "target_directory": "/work/app/target",
}


def completed(stdout=b"", returncode=0, stderr=b""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def test_from_metadata_finds_root_package():
    meta = CargoMetadata.from_metadata(METADATA)
    assert meta.package["id"] == ROOT_ID
    assert meta.package["name"] == "app"
    assert meta.manifest_path == "/work/app/Cargo.toml"
    assert meta.target_directory == Path("/work/app/target")
    assert len(meta.packages) == 2


def test_from_metadata_without_resolve():
    data = dict(METADATA, resolve=None)
    with pytest.raises(TrunkError, match="could not find root package of the target crate"):
        CargoMetadata.from_metadata(data)


def test_from_metadata_unknown_root():
    data = dict(METADATA, resolve={"root": "other 1.0.0"})
    with pytest.raises(TrunkError, match="could not find root package"):
        CargoMetadata.from_metadata(data)


def test_load_runs_cargo_metadata():
    payload = json.dumps(METADATA).encode()
    with mock.patch("subprocess.run", return_value=completed(payload)) as run:
        meta = CargoMetadata.load(Path("/work/app/Cargo.toml"))
    argv = run.call_args.args[0]
    assert argv[:2] == ["cargo", "metadata"]
    assert argv[argv.index("--manifest-path") + 1] == str(Path("/work/app/Cargo.toml"))
    assert meta == CargoMetadata.from_metadata(METADATA)


def test_load_failed_command():
    with mock.patch("subprocess.run", return_value=completed(returncode=101, stderr=b"no manifest")):
        with pytest.raises(TrunkError, match="error getting cargo metadata: no manifest"):
            CargoMetadata.load("Cargo.toml")


def test_load_invalid_output():
    with mock.patch("subprocess.run", return_value=completed(b"not json")):
        with pytest.raises(TrunkError, match="error getting cargo metadata"):
            CargoMetadata.load("Cargo.toml")


def test_load_missing_cargo():
    with mock.patch("subprocess.run", side_effect=FileNotFoundError("cargo")):
        with pytest.raises(TrunkError, match="error getting cargo metadata"):
            CargoMetadata.load("Cargo.toml")