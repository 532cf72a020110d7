"""Shared pieces of the asset pipelines: asset files, content hashing and DOM edits."""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from pathlib import Path

from bs4 import BeautifulSoup

from wasmtrunk.common import TrunkError, path_exists

ATTR_INLINE = "data-inline"
ATTR_HREF = "href"
ATTR_TYPE = "type"
ATTR_REL = "rel"
SNIPPETS_DIR = "snippets"
TRUNK_ID = "data-trunk-id"

LinkAttrs = dict[str, str]
"""All attributes of one ``<link data-trunk .../>`` element."""

StrPath = str | os.PathLike[str]


def _quoted(path: StrPath) -> str:
    text = os.fspath(path).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def _split_name(name: str) -> tuple[str, str | None]:
    """Split a file name into stem and extension; dot-files have no extension."""
    if name == "..":
        return name, None
    before, dot, after = name.rpartition(".")
    if not dot or not before:
        return name, None
    return before, after


def href_to_path(href: str) -> Path:
    """Turn a slash-separated ``href`` value into a filesystem path."""
    return Path(*href.split("/"))


def content_hash(data: bytes) -> int:
    """Return a stable 64-bit hash of the given content."""
    return int.from_bytes(hashlib.blake2b(data, digest_size=8).digest(), "big")


def trunk_id_selector(id: int) -> str:
    """CSS selector matching the trunk link with the given ID."""
    return f'link[{TRUNK_ID}="{id}"]'


def _fragment(html: str) -> list:
    return list(BeautifulSoup(html, "html.parser").contents)


def replace_with_html(dom: BeautifulSoup, selector: str, html: str) -> None:
    """Replace every element matching ``selector`` with the parsed HTML fragment."""
    for node in dom.select(selector):
        for item in _fragment(html):
            node.insert_before(item)
        node.extract()


def append_html(dom: BeautifulSoup, selector: str, html: str) -> None:
    """Append the parsed HTML fragment to every element matching ``selector``."""
    for node in dom.select(selector):
        for item in _fragment(html):
            node.append(item)


def remove_nodes(dom: BeautifulSoup, selector: str) -> None:
    """Remove every element matching ``selector``."""
    for node in dom.select(selector):
        node.decompose()


@dataclass(frozen=True)
class HashedFileOutput:
    """A copied file whose name carries the hex hash of its content: ``{stem}-{hash}.{ext}``."""

    hash: int
    file_path: Path
    file_name: str


@dataclass(frozen=True)
class AssetFile:
    """An existing file on disk that a pipeline processes."""

    path: Path
    file_name: str
    file_stem: str
    ext: str | None

    @classmethod
    def create(cls, rel_dir: StrPath, path: StrPath) -> AssetFile:
        """Resolve ``path`` (relative to ``rel_dir`` if not absolute) to an existing file."""
        path = Path(path)
        if not path.is_absolute():
            path = Path(rel_dir) / path
        try:
            canonical = path.resolve(strict=True)
        except (OSError, RuntimeError) as err:
            raise TrunkError(f"error getting canonical path for {_quoted(path)}") from err
        if not path_exists(canonical):
            raise TrunkError(f"target file does not appear to exist on disk {_quoted(canonical)}")
        file_name = canonical.name
        if not file_name:
            raise TrunkError(f"asset has no file name {_quoted(canonical)}")
        file_stem, ext = _split_name(file_name)
        return cls(path=canonical, file_name=file_name, file_stem=file_stem, ext=ext)

    def _read(self) -> bytes:
        try:
            return self.path.read_bytes()
        except OSError as err:
            raise TrunkError(f"error reading file for copying {_quoted(self.path)}") from err

    def _write(self, file_path: Path, data: bytes) -> None:
        try:
            file_path.write_bytes(data)
        except OSError as err:
            raise TrunkError(
                f"error copying file {_quoted(self.path)} to {_quoted(file_path)}"
            ) from err

    def copy(self, to_dir: StrPath) -> Path:
        """Copy the asset into ``to_dir`` under its own name."""
        data = self._read()
        file_path = Path(to_dir) / self.file_name
        self._write(file_path, data)
        return file_path

    def copy_with_hash(self, to_dir: StrPath) -> HashedFileOutput:
        """Copy the asset into ``to_dir`` under a name carrying its content hash."""
        data = self._read()
        digest = content_hash(data)
        file_name = f"{self.file_stem}-{digest:x}.{self.ext or ''}"
        file_path = Path(to_dir) / file_name
        self._write(file_path, data)
        return HashedFileOutput(hash=digest, file_path=file_path, file_name=file_name)

    def read_to_string(self) -> str:
        """Read the asset's content as UTF-8 text."""
        try:
            return self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as err:
            raise TrunkError(f"error reading file {_quoted(self.path)} to string") from err