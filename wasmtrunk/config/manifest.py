"""Metadata of the cargo project being built."""

from __future__ import annotations

import json
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from wasmtrunk.common import TrunkError


@dataclass(frozen=True)
class CargoMetadata:
    """The parsed output of ``cargo metadata`` and the root package within it."""

    metadata: dict[str, Any]
    package: dict[str, Any]
    manifest_path: str

    @classmethod
    def load(cls, manifest: str | os.PathLike[str]) -> CargoMetadata:
        """Run ``cargo metadata`` for the given Cargo.toml and parse its output."""
        argv = ["cargo", "metadata", "--format-version", "1", "--manifest-path", os.fspath(manifest)]
        try:
            completed = subprocess.run(argv, capture_output=True, check=False)
        except OSError as err:
            raise TrunkError("error getting cargo metadata") from err
        if completed.returncode != 0:
            stderr = completed.stderr.decode("utf-8", errors="replace").strip()
            raise TrunkError(f"error getting cargo metadata: {stderr}")
        try:
            metadata = json.loads(completed.stdout)
        except ValueError as err:
            raise TrunkError("error getting cargo metadata: invalid JSON output") from err
        return cls.from_metadata(metadata)

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any]) -> CargoMetadata:
        """Wrap already parsed metadata, locating its root package."""
        resolve = metadata.get("resolve") or {}
        root = resolve.get("root")
        package = None
        if root is not None:
            package = next((pkg for pkg in metadata.get("packages", []) if pkg.get("id") == root), None)
        if package is None:
            raise TrunkError("could not find root package of the target crate")
        return cls(metadata=metadata, package=package, manifest_path=str(package["manifest_path"]))

    @property
    def target_directory(self) -> Path:
        """Cargo's target directory."""
        return Path(self.metadata["target_directory"])

    @property
    def packages(self) -> list[dict[str, Any]]:
        """All packages known to the project, dependencies included."""
        return list(self.metadata.get("packages", []))