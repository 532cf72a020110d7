"""Pipeline copying a single file into the dist output."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from bs4 import BeautifulSoup

from wasmtrunk.common import TrunkError, strip_prefix
from wasmtrunk.config.rt import RtcBuild
from wasmtrunk.pipelines.assets import (
    ATTR_HREF,
    AssetFile,
    LinkAttrs,
    href_to_path,
    remove_nodes,
    trunk_id_selector,
)

log = logging.getLogger(__name__)

TYPE_COPY_FILE = "copy-file"


@dataclass(frozen=True)
class CopyFileOutput:
    """Result of a copy-file pipeline: the link element is simply removed."""

    id: int

    def finalize(self, dom: BeautifulSoup) -> None:
        """Remove the source link element from the document."""
        remove_nodes(dom, trunk_id_selector(self.id))


@dataclass(frozen=True)
class CopyFile:
    """Copies the file named by a ``rel="copy-file"`` link into the staging dist."""

    id: int
    cfg: RtcBuild
    asset: AssetFile

    TYPE = TYPE_COPY_FILE

    @classmethod
    def create(cls, cfg: RtcBuild, html_dir: str | os.PathLike[str], attrs: LinkAttrs, id: int) -> CopyFile:
        """Build the pipeline from the link's attributes."""
        href = attrs.get(ATTR_HREF)
        if href is None:
            raise TrunkError(
                'required attr `href` missing for <link data-trunk rel="copyfile" .../> element'
            )
        asset = AssetFile.create(html_dir, href_to_path(href))
        return cls(id=id, cfg=cfg, asset=asset)

    def run(self) -> CopyFileOutput:
        """Copy the file into the staging dist under its own name."""
        rel_path = strip_prefix(self.asset.path)
        log.info("copying file %s", rel_path)
        self.asset.copy(self.cfg.staging_dist)
        log.info("finished copying file %s", rel_path)
        return CopyFileOutput(self.id)