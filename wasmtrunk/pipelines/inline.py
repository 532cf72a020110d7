"""Pipeline inlining the content of a file into the output HTML."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum

from bs4 import BeautifulSoup

from wasmtrunk.common import TrunkError, strip_prefix
from wasmtrunk.pipelines.assets import (
    ATTR_HREF,
    ATTR_TYPE,
    AssetFile,
    LinkAttrs,
    href_to_path,
    replace_with_html,
    trunk_id_selector,
)

log = logging.getLogger(__name__)

TYPE_INLINE = "inline"


class ContentType(Enum):
    """How the content of an inlined file is placed into the document."""

    HTML = "html"
    CSS = "css"
    JS = "js"

    @classmethod
    def parse(cls, value: str) -> ContentType:
        """Parse a lowercase content type name."""
        try:
            return cls(value)
        except ValueError:
            raise TrunkError(
                f'unknown `type="{value}"` value for <link data-trunk rel="inline" .../> attr; '
                "please ensure the value is lowercase and is a supported content type"
            ) from None

    @classmethod
    def from_attr_or_ext(cls, attr: str | None, ext: str | None) -> ContentType:
        """Use the ``type`` attribute if given, otherwise the file extension."""
        if attr is not None:
            return cls.parse(attr)
        if ext is not None:
            return cls.parse(ext)
        raise TrunkError(
            'unknown type value for <link data-trunk rel="inline" .../> attr; '
            "please ensure the value is lowercase and is a supported content type"
        )


@dataclass(frozen=True)
class InlineOutput:
    """Result of an inline pipeline: the file content and how to insert it."""

    id: int
    content: str
    content_type: ContentType

    def finalize(self, dom: BeautifulSoup) -> None:
        """Replace the source link with the content, wrapped as its type requires."""
        if self.content_type is ContentType.CSS:
            html = f'<style type="text/css">{self.content}</style>'
        elif self.content_type is ContentType.JS:
            html = f"<script>{self.content}</script>"
        else:
            html = self.content
        replace_with_html(dom, trunk_id_selector(self.id), html)


@dataclass(frozen=True)
class Inline:
    """Reads the file named by a ``rel="inline"`` link for insertion into the document."""

    id: int
    asset: AssetFile
    content_type: ContentType

    TYPE = TYPE_INLINE

    @classmethod
    def create(cls, html_dir: str | os.PathLike[str], attrs: LinkAttrs, id: int) -> Inline:
        """Build the pipeline from the link's attributes."""
        href = attrs.get(ATTR_HREF)
        if href is None:
            raise TrunkError(
                'required attr `href` missing for <link data-trunk rel="inline" .../> element'
            )
        asset = AssetFile.create(html_dir, href_to_path(href))
        content_type = ContentType.from_attr_or_ext(attrs.get(ATTR_TYPE), asset.ext)
        return cls(id=id, asset=asset, content_type=content_type)

    def run(self) -> InlineOutput:
        """Read the file's content."""
        rel_path = strip_prefix(self.asset.path)
        log.info("reading file content %s", rel_path)
        content = self.asset.read_to_string()
        log.info("finished reading file content %s", rel_path)
        return InlineOutput(id=self.id, content=content, content_type=self.content_type)