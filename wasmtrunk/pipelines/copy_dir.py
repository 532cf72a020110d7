"""Pipeline copying a whole directory into the dist output."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from bs4 import BeautifulSoup

from wasmtrunk.common import TrunkError, copy_dir_recursive, strip_prefix
from wasmtrunk.config.rt import RtcBuild
from wasmtrunk.pipelines.assets import ATTR_HREF, LinkAttrs, href_to_path, remove_nodes, trunk_id_selector

log = logging.getLogger(__name__)

TYPE_COPY_DIR = "copy-dir"


def _quoted(path: str | os.PathLike[str]) -> str:
    text = os.fspath(path).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


@dataclass(frozen=True)
class CopyDirOutput:
    """Result of a copy-dir pipeline: the link element is simply removed."""

    id: int

    def finalize(self, dom: BeautifulSoup) -> None:
        """Remove the source link element from the document."""
        remove_nodes(dom, trunk_id_selector(self.id))


@dataclass(frozen=True)
class CopyDir:
    """Copies the directory named by a ``rel="copy-dir"`` link into the staging dist."""

    id: int
    cfg: RtcBuild
    path: Path

    TYPE = TYPE_COPY_DIR

    @classmethod
    def create(cls, cfg: RtcBuild, html_dir: str | os.PathLike[str], attrs: LinkAttrs, id: int) -> CopyDir:
        """Build the pipeline from the link's attributes."""
        href = attrs.get(ATTR_HREF)
        if href is None:
            raise TrunkError(
                'required attr `href` missing for <link data-trunk rel="copydir" .../> element'
            )
        path = href_to_path(href)
        if not path.is_absolute():
            path = Path(html_dir) / path
        return cls(id=id, cfg=cfg, path=path)

    def run(self) -> CopyDirOutput:
        """Copy the directory into the staging dist under its own name."""
        rel_path = strip_prefix(self.path)
        log.info("copying directory %s", rel_path)
        try:
            canonical = self.path.resolve(strict=True)
        except (OSError, RuntimeError) as err:
            raise TrunkError(f"error taking canonical path of directory {_quoted(self.path)}") from err
        if not canonical.name:
            raise TrunkError(f"could not get directory name of dir {_quoted(canonical)}")
        copy_dir_recursive(canonical, self.cfg.staging_dist / canonical.name)
        log.info("finished copying directory %s", rel_path)
        return CopyDirOutput(self.id)