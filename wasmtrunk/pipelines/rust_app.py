"""Pipeline building the Rust application to WASM and bundling its JS loader."""

from __future__ import annotations

import errno
import json
import logging
import os
import shutil
import subprocess
import sys
import tomllib
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from bs4 import BeautifulSoup

from wasmtrunk import tools
from wasmtrunk.common import TrunkError, copy_dir_recursive, path_exists, run_command
from wasmtrunk.config.manifest import CargoMetadata
from wasmtrunk.config.models import ConfigOptsTools
from wasmtrunk.config.rt import RtcBuild
from wasmtrunk.pipelines.assets import (
    ATTR_HREF,
    SNIPPETS_DIR,
    LinkAttrs,
    append_html,
    content_hash,
    href_to_path,
    replace_with_html,
    trunk_id_selector,
)
from wasmtrunk.tools import Application

log = logging.getLogger(__name__)

TYPE_RUST_APP = "rust"
CARGO_TOML = "Cargo.toml"

IgnoreSink = Callable[[Path], None]
"""Receives paths that the file watcher should ignore."""


class WasmOptLevel(Enum):
    """Optimisation levels passed to wasm-opt; ``OFF`` skips wasm-opt entirely."""

    DEFAULT = ""
    OFF = "0"
    ONE = "1"
    TWO = "2"
    THREE = "3"
    FOUR = "4"
    S = "s"
    Z = "z"

    @classmethod
    def parse(cls, value: str) -> WasmOptLevel:
        """Parse a level as written in the ``data-wasm-opt`` attribute."""
        normalized = value.lower() if value in ("S", "Z") else value
        try:
            return cls(normalized)
        except ValueError:
            raise TrunkError(f"unknown wasm-opt level `{value}`") from None


def _mode_segment(cfg: RtcBuild) -> str:
    return "release" if cfg.release else "debug"


def _copy(src: Path, dst: Path, message: str) -> None:
    try:
        shutil.copyfile(src, dst)
    except OSError as err:
        raise TrunkError(message) from err


def _error_chain(err: BaseException) -> Iterable[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def check_target_not_found_err(err: Exception, target: str) -> Exception:
    """Add a "not found" message to errors caused by a missing executable."""
    for item in _error_chain(err):
        if isinstance(item, FileNotFoundError) or (
            isinstance(item, OSError) and item.errno == errno.ENOENT
        ):
            wrapped = TrunkError(f"{target} not found")
            wrapped.__cause__ = err
            return wrapped
    return err


def find_artifact(messages: Iterable[Mapping[str, Any]], package_id: str) -> Mapping[str, Any]:
    """Find the compiler artifact of the given package among cargo's JSON messages."""
    result: Mapping[str, Any] | TrunkError | None = None
    for msg in messages:
        reason = msg.get("reason")
        if reason == "compiler-artifact" and msg.get("package_id") == package_id:
            result = msg
        elif reason == "build-finished" and not msg.get("success", False):
            result = TrunkError("error while fetching cargo artifact info")
    if isinstance(result, TrunkError):
        raise result
    if result is None:
        raise TrunkError("cargo artifacts not found for target crate")
    return result


def _parse_messages(stdout: bytes) -> list[Mapping[str, Any]]:
    messages = []
    for line in stdout.decode("utf-8", errors="replace").splitlines():
        try:
            msg = json.loads(line)
        except ValueError:
            continue
        if isinstance(msg, dict):
            messages.append(msg)
    return messages


def find_wasm_bindgen_version(cfg: ConfigOptsTools, manifest: CargoMetadata) -> str | None:
    """Find the wasm-bindgen version: config first, then Cargo.lock, then the manifest."""
    if cfg.wasm_bindgen is not None:
        return cfg.wasm_bindgen

    lock_path = Path(manifest.manifest_path).parent / "Cargo.lock"
    try:
        lock = tomllib.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError):
        lock = None
    if isinstance(lock, dict) and isinstance(lock.get("package"), list):
        for pkg in lock["package"]:
            if isinstance(pkg, dict) and pkg.get("name") == "wasm-bindgen" and "version" in pkg:
                return str(pkg["version"])

    for pkg in manifest.packages:
        if pkg.get("name") == "wasm-bindgen":
            return str(pkg["version"])
    return None


@dataclass(frozen=True)
class RustAppOutput:
    """Result of the Rust application pipeline."""

    cfg: RtcBuild
    id: int | None
    js_output: str
    wasm_output: str

    def finalize(self, dom: BeautifulSoup) -> None:
        """Add preload links to the head and the loader script to the document."""
        base, js, wasm = self.cfg.public_url, self.js_output, self.wasm_output
        preload = (
            f'\n<link rel="preload" href="{base}{wasm}" as="fetch" type="application/wasm" crossorigin>'
            f'\n<link rel="modulepreload" href="{base}{js}">'
        )
        append_html(dom, "html head", preload)
        script = (
            f"<script type=\"module\">import init from '{base}{js}';init('{base}{wasm}');</script>"
        )
        if self.id is not None:
            replace_with_html(dom, trunk_id_selector(self.id), script)
        else:
            append_html(dom, "html body", script)


@dataclass(frozen=True)
class RustApp:
    """Builds a cargo project to WASM, runs wasm-bindgen and optionally wasm-opt."""

    id: int | None
    cfg: RtcBuild
    manifest: CargoMetadata
    ignore_chan: IgnoreSink | None = None
    cargo_features: str | None = None
    bin: str | None = None
    keep_debug: bool = False
    no_demangle: bool = False
    wasm_opt: WasmOptLevel = WasmOptLevel.OFF

    TYPE = TYPE_RUST_APP

    @classmethod
    def create(
        cls,
        cfg: RtcBuild,
        html_dir: str | os.PathLike[str],
        ignore_chan: IgnoreSink | None,
        attrs: LinkAttrs,
        id: int,
    ) -> RustApp:
        """Build the pipeline from a ``rel="rust"`` link's attributes."""
        html_dir = Path(html_dir)
        href = attrs.get(ATTR_HREF)
        if href is None:
            manifest_href = html_dir / CARGO_TOML
        else:
            manifest_href = href_to_path(href)
            if not manifest_href.is_absolute():
                manifest_href = html_dir / manifest_href
            if manifest_href.name != CARGO_TOML:
                manifest_href = manifest_href / CARGO_TOML
        wasm_opt_attr = attrs.get("data-wasm-opt")
        if wasm_opt_attr is not None:
            wasm_opt = WasmOptLevel.parse(wasm_opt_attr)
        else:
            wasm_opt = WasmOptLevel.DEFAULT if cfg.release else WasmOptLevel.OFF
        manifest = CargoMetadata.load(manifest_href)
        return cls(
            id=id,
            cfg=cfg,
            manifest=manifest,
            ignore_chan=ignore_chan,
            cargo_features=attrs.get("data-cargo-features"),
            bin=attrs.get("data-bin"),
            keep_debug="data-keep-debug" in attrs,
            no_demangle="data-no-demangle" in attrs,
            wasm_opt=wasm_opt,
        )

    @classmethod
    def new_default(
        cls, cfg: RtcBuild, html_dir: str | os.PathLike[str], ignore_chan: IgnoreSink | None
    ) -> RustApp:
        """Build the pipeline for the Cargo.toml next to the source HTML."""
        manifest = CargoMetadata.load(Path(html_dir) / CARGO_TOML)
        return cls(id=None, cfg=cfg, manifest=manifest, ignore_chan=ignore_chan)

    def run(self) -> RustAppOutput:
        """Run cargo, wasm-bindgen and wasm-opt in turn."""
        wasm, hashed_name = self.cargo_build()
        output = self.wasm_bindgen_build(wasm, hashed_name)
        self.wasm_opt_build(output.wasm_output)
        return output

    def cargo_build(self) -> tuple[Path, str]:
        """Build with cargo; return the WASM file and a name derived from its hash."""
        log.info("building %s", self.manifest.package.get("name"))
        args = [
            "build",
            "--target=wasm32-unknown-unknown",
            "--manifest-path",
            self.manifest.manifest_path,
        ]
        if self.cfg.release:
            args.append("--release")
        if self.bin is not None:
            args.extend(["--bin", self.bin])
        if self.cargo_features is not None:
            args.extend(["--features", self.cargo_features])

        build_error: TrunkError | None = None
        try:
            run_command("cargo", "cargo", args)
        except TrunkError as err:
            build_error = err

        # The target dir only exists after the build ran, so report it before failing.
        if self.ignore_chan is not None:
            self.ignore_chan(self.manifest.target_directory)

        if build_error is not None:
            raise TrunkError("error during cargo build execution") from build_error

        log.info("fetching cargo artifacts")
        args.append("--message-format=json")
        try:
            artifacts_out = subprocess.run(["cargo", *args], capture_output=True, check=False)
        except OSError as err:
            raise TrunkError("error spawning cargo build artifacts task") from err
        if artifacts_out.returncode != 0:
            print(artifacts_out.stderr.decode("utf-8", errors="replace"), file=sys.stderr)
            raise TrunkError("bad status returned from cargo artifacts request")

        artifact = find_artifact(_parse_messages(artifacts_out.stdout), self.manifest.package["id"])
        wasm = next(
            (Path(name) for name in artifact.get("filenames", []) if Path(name).suffix == ".wasm"),
            None,
        )
        if wasm is None:
            raise TrunkError("could not find WASM output after cargo build")

        log.info("processing WASM")
        try:
            wasm_bytes = wasm.read_bytes()
        except OSError as err:
            raise TrunkError("error reading wasm file for hash generation") from err
        return wasm, f"index-{content_hash(wasm_bytes):x}"

    def wasm_bindgen_build(self, wasm: str | os.PathLike[str], hashed_name: str) -> RustAppOutput:
        """Run wasm-bindgen and copy its output into the staging dist."""
        version = find_wasm_bindgen_version(self.cfg.tools, self.manifest)
        wasm_bindgen = tools.get(Application.WASM_BINDGEN, version)

        name = Application.WASM_BINDGEN.value
        bindgen_out = self.manifest.target_directory / name / _mode_segment(self.cfg)
        try:
            bindgen_out.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise TrunkError("error creating wasm-bindgen output dir") from err

        args = [
            "--target=web",
            f"--out-dir={bindgen_out}",
            f"--out-name={hashed_name}",
            "--no-typescript",
            os.fspath(wasm),
        ]
        if self.keep_debug:
            args.append("--keep-debug")
        if self.no_demangle:
            args.append("--no-demangle")

        log.info("calling wasm-bindgen")
        try:
            run_command(name, wasm_bindgen, args)
        except TrunkError as err:
            raise check_target_not_found_err(err, name)

        log.info("copying generated wasm-bindgen artifacts")
        hashed_js_name = f"{hashed_name}.js"
        hashed_wasm_name = f"{hashed_name}_bg.wasm"
        staging = self.cfg.staging_dist
        _copy(bindgen_out / hashed_js_name, staging / hashed_js_name,
              "error copying JS loader file to stage dir")
        _copy(bindgen_out / hashed_wasm_name, staging / hashed_wasm_name,
              "error copying wasm file to stage dir")

        snippets_dir = bindgen_out / SNIPPETS_DIR
        if path_exists(snippets_dir):
            try:
                copy_dir_recursive(snippets_dir, staging / SNIPPETS_DIR)
            except TrunkError as err:
                raise TrunkError("error copying snippets dir to stage dir") from err

        return RustAppOutput(
            cfg=self.cfg, id=self.id, js_output=hashed_js_name, wasm_output=hashed_wasm_name
        )

    def wasm_opt_build(self, hashed_name: str) -> None:
        """Optimise the staged WASM file with wasm-opt in release builds."""
        if not self.cfg.release or self.wasm_opt is WasmOptLevel.OFF:
            return

        wasm_opt = tools.get(Application.WASM_OPT, self.cfg.tools.wasm_opt)

        name = Application.WASM_OPT.value
        output_dir = self.manifest.target_directory / name / _mode_segment(self.cfg)
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise TrunkError("error creating wasm-opt output dir") from err

        output = output_dir / hashed_name
        target_wasm = self.cfg.staging_dist / hashed_name
        args = [f"--output={output}", f"-O{self.wasm_opt.value}", os.fspath(target_wasm)]

        log.info("calling wasm-opt")
        try:
            run_command(name, wasm_opt, args)
        except TrunkError as err:
            raise check_target_not_found_err(err, name)

        log.info("copying generated wasm-opt artifacts")
        _copy(output, target_wasm, "error copying wasm file to dist dir")