"""Pipeline processing the source HTML and driving all asset pipelines found in it."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any

from bs4 import BeautifulSoup

from wasmtrunk.common import TrunkError
from wasmtrunk.config.rt import RtcBuild
from wasmtrunk.pipelines.assets import ATTR_REL, TRUNK_ID, LinkAttrs
from wasmtrunk.pipelines.copy_dir import CopyDir
from wasmtrunk.pipelines.copy_file import CopyFile
from wasmtrunk.pipelines.css import Css
from wasmtrunk.pipelines.icon import Icon
from wasmtrunk.pipelines.inline import Inline
from wasmtrunk.pipelines.rust_app import IgnoreSink, RustApp

log = logging.getLogger(__name__)

PUBLIC_URL_MARKER_ATTR = "data-trunk-public-url"
TYPE_SASS = "sass"
TYPE_SCSS = "scss"
TYPE_RUST_WORKER = "rust-worker"
OUTPUT_HTML = "index.html"


def trunk_link_from_html(
    cfg: RtcBuild,
    html_dir: str | os.PathLike[str],
    ignore_chan: IgnoreSink | None,
    attrs: LinkAttrs,
    id: int,
) -> Any:
    """Build the asset pipeline described by one ``<link data-trunk .../>`` element."""
    rel = attrs.get(ATTR_REL)
    if rel is None:
        raise TrunkError(
            "all <link data-trunk .../> elements must have a `rel` attribute indicating the asset type"
        )
    if rel in (TYPE_SASS, TYPE_SCSS):
        raise TrunkError(
            'the sass/scss asset type `<link data-trunk rel="sass|scss" .../>` is not supported'
        )
    if rel == Icon.TYPE:
        return Icon.create(cfg, html_dir, attrs, id)
    if rel == Inline.TYPE:
        return Inline.create(html_dir, attrs, id)
    if rel == Css.TYPE:
        return Css.create(cfg, html_dir, attrs, id)
    if rel == CopyFile.TYPE:
        return CopyFile.create(cfg, html_dir, attrs, id)
    if rel == CopyDir.TYPE:
        return CopyDir.create(cfg, html_dir, attrs, id)
    if rel == RustApp.TYPE:
        return RustApp.create(cfg, html_dir, ignore_chan, attrs, id)
    if rel == TYPE_RUST_WORKER:
        raise TrunkError(
            'the rust web worker asset type `<link data-trunk rel="rust-worker" .../>` '
            "is not yet supported"
        )
    raise TrunkError(
        f'unknown <link data-trunk .../> attr value `rel="{rel}"`; please ensure the value '
        "is lowercase and is a supported asset type"
    )


class HtmlPipeline:
    """Processes the source HTML, runs the asset pipelines and writes the output HTML."""

    def __init__(self, cfg: RtcBuild, ignore_chan: IgnoreSink | None = None) -> None:
        self.cfg = cfg
        try:
            self.target_html_path = Path(cfg.target).resolve(strict=True)
        except (OSError, RuntimeError) as err:
            raise TrunkError("failed to get canonical path of target HTML file") from err
        self.target_html_dir = self.target_html_path.parent
        self.ignore_chan = ignore_chan

    def run(self) -> None:
        """Build every asset referenced by the source HTML and write the final HTML."""
        log.info("spawning asset pipelines")
        try:
            raw_html = self.target_html_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as err:
            raise TrunkError(f"error reading source HTML {self.target_html_path}") from err
        dom = BeautifulSoup(raw_html, "html.parser", multi_valued_attributes=None)

        rust_app_nodes = len(dom.select('link[data-trunk][rel="rust"]'))
        if rust_app_nodes > 1:
            raise TrunkError('only one <link data-trunk rel="rust" .../> may be specified')

        assets = []
        for id, link in enumerate(dom.select("link[data-trunk]")):
            link[TRUNK_ID] = str(id)
            attrs = {name: str(value) for name, value in link.attrs.items()}
            assets.append(
                trunk_link_from_html(self.cfg, self.target_html_dir, self.ignore_chan, attrs, id)
            )
        if rust_app_nodes == 0:
            assets.append(RustApp.new_default(self.cfg, self.target_html_dir, self.ignore_chan))

        with ThreadPoolExecutor() as pool:
            futures = [pool.submit(asset.run) for asset in assets]
            self.finalize_asset_pipelines(dom, futures)
        self.finalize_html(dom)

        try:
            (Path(self.cfg.staging_dist) / OUTPUT_HTML).write_text(str(dom), encoding="utf-8")
        except OSError as err:
            raise TrunkError("error writing finalized HTML output") from err

    def finalize_asset_pipelines(self, dom: BeautifulSoup, pipelines: Iterable[Future]) -> None:
        """Apply each pipeline's output to the document as the pipelines complete."""
        for future in as_completed(list(pipelines)):
            try:
                output = future.result()
            except Exception as err:
                raise TrunkError("error from asset pipeline") from err
            output.finalize(dom)

    def finalize_html(self, dom: BeautifulSoup) -> None:
        """Write the public URL into marked ``<base>`` elements."""
        for base in dom.select(f"html head base[{PUBLIC_URL_MARKER_ATTR}]"):
            del base[PUBLIC_URL_MARKER_ATTR]
            base["href"] = self.cfg.public_url