"""Pipeline hashing and copying a CSS file into the dist output."""

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
    HashedFileOutput,
    LinkAttrs,
    href_to_path,
    replace_with_html,
    trunk_id_selector,
)

log = logging.getLogger(__name__)

TYPE_CSS = "css"


@dataclass(frozen=True)
class CssOutput:
    """Result of a CSS pipeline."""

    cfg: RtcBuild
    id: int
    file: HashedFileOutput

    def finalize(self, dom: BeautifulSoup) -> None:
        """Replace the source link with a stylesheet link to the hashed file."""
        replace_with_html(
            dom,
            trunk_id_selector(self.id),
            f'<link rel="stylesheet" href="{self.cfg.public_url}{self.file.file_name}"/>',
        )


@dataclass(frozen=True)
class Css:
    """Copies a ``rel="css"`` stylesheet into the staging dist under a hashed name."""

    id: int
    cfg: RtcBuild
    asset: AssetFile

    TYPE = TYPE_CSS

    @classmethod
    def create(cls, cfg: RtcBuild, html_dir: str | os.PathLike[str], attrs: LinkAttrs, id: int) -> Css:
        """Build the pipeline from the link's attributes."""
        href = attrs.get(ATTR_HREF)
        if href is None:
            raise TrunkError('required attr `href` missing for <link data-trunk rel="css" .../> element')
        asset = AssetFile.create(html_dir, href_to_path(href))
        return cls(id=id, cfg=cfg, asset=asset)

    def run(self) -> CssOutput:
        """Copy and hash the stylesheet."""
        rel_path = strip_prefix(self.asset.path)
        log.info("copying & hashing css %s", rel_path)
        hashed = self.asset.copy_with_hash(self.cfg.staging_dist)
        log.info("finished copying & hashing css %s", rel_path)
        return CssOutput(cfg=self.cfg, id=self.id, file=hashed)