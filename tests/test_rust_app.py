import json
import subprocess
from pathlib import Path
from unittest import mock

import pytest
from bs4 import BeautifulSoup

from wasmtrunk.common import TrunkError
from wasmtrunk.config.manifest import CargoMetadata
from wasmtrunk.config.models import ConfigOptsTools
from wasmtrunk.config.rt import RtcBuild
from wasmtrunk.pipelines.assets import content_hash
from wasmtrunk.pipelines.rust_app import (
    RustApp,
    RustAppOutput,
    WasmOptLevel,
    check_target_not_found_err,
    find_artifact,
    find_wasm_bindgen_version,
)

PKG_ID = "app 0.1.0"


def _metadata(root: Path, extra_packages=()) -> dict:
    return {
        "packages": [
            {
                "id": PKG_ID,
                "name": "app",
                "version": "0.1.0",
                "manifest_path": str(root / "Cargo.toml"),
            },
            *extra_packages,
        ],
        "resolve": {"root": PKG_ID},
        "target_directory": str(root / "target"),
    }


def _cfg(root: Path, release: bool = False, tools: ConfigOptsTools | None = None) -> RtcBuild:
    dist = root / "dist"
    return RtcBuild(
        target=root / "index.html",
        target_parent=root,
        release=release,
        public_url="/",
        final_dist=dist,
        staging_dist=dist / ".stage",
        tools=tools or ConfigOptsTools(),
    )


def _manifest(root: Path, extra_packages=()) -> CargoMetadata:
    return CargoMetadata.from_metadata(_metadata(root, extra_packages))


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("", WasmOptLevel.DEFAULT),
        ("0", WasmOptLevel.OFF),
        ("1", WasmOptLevel.ONE),
        ("4", WasmOptLevel.FOUR),
        ("s", WasmOptLevel.S),
        ("S", WasmOptLevel.S),
        ("z", WasmOptLevel.Z),
        ("Z", WasmOptLevel.Z),
    ],
)
def test_wasm_opt_level_parse(value, expected):
    assert WasmOptLevel.parse(value) is expected


def test_wasm_opt_level_round_trip():
    for level in WasmOptLevel:
        assert WasmOptLevel.parse(level.value) is level


def test_wasm_opt_level_unknown():
    with pytest.raises(TrunkError, match="unknown wasm-opt level `5`"):
        WasmOptLevel.parse("5")


def test_bindgen_version_from_config_first(tmp_path: Path):
    (tmp_path / "Cargo.lock").write_text('[[package]]\nname = "wasm-bindgen"\nversion = "0.2.70"\n')
    cfg = ConfigOptsTools(wasm_bindgen="0.2.60")
    assert find_wasm_bindgen_version(cfg, _manifest(tmp_path)) == "0.2.60"


def test_bindgen_version_from_lockfile(tmp_path: Path):
    (tmp_path / "Cargo.lock").write_text(
        '[[package]]\nname = "app"\nversion = "0.1.0"\n\n'
        '[[package]]\nname = "wasm-bindgen"\nversion = "0.2.70"\n'
    )
    extra = [{"id": "wb", "name": "wasm-bindgen", "version": "0.2.50", "manifest_path": "x"}]
    assert find_wasm_bindgen_version(ConfigOptsTools(), _manifest(tmp_path, extra)) == "0.2.70"


def test_bindgen_version_from_manifest_packages(tmp_path: Path):
    extra = [{"id": "wb", "name": "wasm-bindgen", "version": "0.2.50", "manifest_path": "x"}]
    assert find_wasm_bindgen_version(ConfigOptsTools(), _manifest(tmp_path, extra)) == "0.2.50"


def test_bindgen_version_missing(tmp_path: Path):
    assert find_wasm_bindgen_version(ConfigOptsTools(), _manifest(tmp_path)) is None


def test_find_artifact_returns_matching_package():
    messages = [
        {"reason": "compiler-artifact", "package_id": "dep 1.0", "filenames": ["dep.rlib"]},
        {"reason": "compiler-artifact", "package_id": PKG_ID, "filenames": ["app.wasm"]},
        {"reason": "build-finished", "success": True},
    ]
    assert find_artifact(messages, PKG_ID)["filenames"] == ["app.wasm"]


def test_find_artifact_failed_build():
    messages = [
        {"reason": "compiler-artifact", "package_id": PKG_ID, "filenames": ["app.wasm"]},
        {"reason": "build-finished", "success": False},
    ]
    with pytest.raises(TrunkError, match="error while fetching cargo artifact info"):
        find_artifact(messages, PKG_ID)


def test_find_artifact_missing():
    with pytest.raises(TrunkError, match="cargo artifacts not found for target crate"):
        find_artifact([{"reason": "build-finished", "success": True}], PKG_ID)


def test_check_target_not_found_wraps_missing_executable():
    try:
        try:
            raise FileNotFoundError(2, "No such file")
        except FileNotFoundError as inner:
            raise TrunkError("error spawning wasm-opt call") from inner
    except TrunkError as err:
        result = check_target_not_found_err(err, "wasm-opt")
        assert str(result) == "wasm-opt not found"
        assert result.__cause__ is err


def test_check_target_not_found_passes_other_errors():
    err = TrunkError("wasm-opt call returned a bad status")
    assert check_target_not_found_err(err, "wasm-opt") is err


def _dom() -> BeautifulSoup:
    return BeautifulSoup(
        '<html><head><link data-trunk="" data-trunk-id="1" rel="rust"/></head><body></body></html>',
        "html.parser",
    )


def test_output_finalize_with_id(tmp_path: Path):
    dom = _dom()
    RustAppOutput(cfg=_cfg(tmp_path), id=1, js_output="index-ab.js", wasm_output="index-ab_bg.wasm").finalize(dom)
    assert dom.select('link[data-trunk-id="1"]') == []
    assert dom.select_one('link[rel="preload"]')["href"] == "/index-ab_bg.wasm"
    assert dom.select_one('link[rel="modulepreload"]')["href"] == "/index-ab.js"
    script = dom.select_one("head script")
    assert script["type"] == "module"
    assert script.string == "import init from '/index-ab.js';init('/index-ab_bg.wasm');"
    assert dom.select("body script") == []


def test_output_finalize_without_id(tmp_path: Path):
    dom = _dom()
    RustAppOutput(cfg=_cfg(tmp_path), id=None, js_output="a.js", wasm_output="a_bg.wasm").finalize(dom)
    assert len(dom.select('link[data-trunk-id="1"]')) == 1
    assert dom.select_one("body script").string == "import init from '/a.js';init('/a_bg.wasm');"


class _FakeCargo:
    def __init__(self, root: Path, wasm: Path | None = None, build_status: int = 0):
        self.root = root
        self.wasm = wasm
        self.build_status = build_status
        self.calls: list[list[str]] = []

    def __call__(self, argv, **kwargs):
        self.calls.append(list(argv))
        if argv[1] == "metadata":
            return subprocess.CompletedProcess(argv, 0, json.dumps(_metadata(self.root)).encode(), b"")
        if "--message-format=json" in argv:
            lines = [
                "not json",
                json.dumps({"reason": "compiler-artifact", "package_id": PKG_ID,
                            "filenames": [str(self.root / "app.d"), str(self.wasm)]}),
                json.dumps({"reason": "build-finished", "success": True}),
            ]
            return subprocess.CompletedProcess(argv, 0, "\n".join(lines).encode(), b"")
        return subprocess.CompletedProcess(argv, self.build_status)


def test_cargo_build_returns_wasm_and_hashed_name(tmp_path: Path):
    wasm = tmp_path / "app.wasm"
    wasm.write_bytes(b"\0asm-content")
    ignored: list[Path] = []
    app = RustApp(id=0, cfg=_cfg(tmp_path, release=True), manifest=_manifest(tmp_path),
                  ignore_chan=ignored.append, bin="app", cargo_features="a b")
    fake = _FakeCargo(tmp_path, wasm)
    with mock.patch("subprocess.run", side_effect=fake):
        path, hashed = app.cargo_build()
    assert path == wasm
    assert hashed == f"index-{content_hash(wasm.read_bytes()):x}"
    assert ignored == [tmp_path / "target"]
    assert fake.calls[0] == [
        "cargo", "build", "--target=wasm32-unknown-unknown", "--manifest-path",
        str(tmp_path / "Cargo.toml"), "--release", "--bin", "app", "--features", "a b",
    ]
    assert fake.calls[1] == [*fake.calls[0], "--message-format=json"]


def test_cargo_build_failure_still_reports_target_dir(tmp_path: Path):
    ignored: list[Path] = []
    app = RustApp(id=None, cfg=_cfg(tmp_path), manifest=_manifest(tmp_path), ignore_chan=ignored.append)
    fake = _FakeCargo(tmp_path, build_status=101)
    with mock.patch("subprocess.run", side_effect=fake):
        with pytest.raises(TrunkError, match="error during cargo build execution"):
            app.cargo_build()
    assert ignored == [tmp_path / "target"]
    assert len(fake.calls) == 1


def test_create_reads_attributes(tmp_path: Path):
    fake = _FakeCargo(tmp_path)
    attrs = {
        "rel": "rust",
        "href": "crate",
        "data-bin": "main",
        "data-cargo-features": "x",
        "data-keep-debug": "",
        "data-wasm-opt": "z",
    }
    with mock.patch("subprocess.run", side_effect=fake):
        app = RustApp.create(_cfg(tmp_path), tmp_path, None, attrs, 4)
    assert app.id == 4
    assert app.bin == "main"
    assert app.cargo_features == "x"
    assert app.keep_debug is True
    assert app.no_demangle is False
    assert app.wasm_opt is WasmOptLevel.Z
    assert fake.calls[0][-1] == str(tmp_path / "crate" / "Cargo.toml")
    assert app.manifest.package["id"] == PKG_ID


@pytest.mark.parametrize(("release", "expected"), [(True, WasmOptLevel.DEFAULT), (False, WasmOptLevel.OFF)])
def test_create_default_wasm_opt_depends_on_release(tmp_path: Path, release, expected):
    fake = _FakeCargo(tmp_path)
    with mock.patch("subprocess.run", side_effect=fake):
        app = RustApp.create(_cfg(tmp_path, release=release), tmp_path, None, {"rel": "rust"}, 0)
    assert app.wasm_opt is expected
    assert fake.calls[0][-1] == str(tmp_path / "Cargo.toml")


def test_new_default_has_no_id(tmp_path: Path):
    fake = _FakeCargo(tmp_path)
    with mock.patch("subprocess.run", side_effect=fake):
        app = RustApp.new_default(_cfg(tmp_path, release=True), tmp_path, None)
    assert app.id is None
    assert app.wasm_opt is WasmOptLevel.OFF
    assert fake.calls[0][-1] == str(tmp_path / "Cargo.toml")


def test_wasm_opt_skipped_outside_release(tmp_path: Path):
    app = RustApp(id=0, cfg=_cfg(tmp_path), manifest=_manifest(tmp_path), wasm_opt=WasmOptLevel.THREE)
    with mock.patch("subprocess.run") as run:
        app.wasm_opt_build("index-ab_bg.wasm")
    assert run.call_count == 0
    assert not (tmp_path / "target").exists()