"""The build system: stages a build and applies it to the dist directory on success."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from wasmtrunk.common import BUILDING, ERROR, SUCCESS, TrunkError, remove_dir_all
from wasmtrunk.config.models import STAGE_DIR
from wasmtrunk.config.rt import RtcBuild
from wasmtrunk.pipelines.html import HtmlPipeline
from wasmtrunk.pipelines.rust_app import IgnoreSink

log = logging.getLogger(__name__)


def _describe(err: BaseException) -> str:
    messages = []
    current: BaseException | None = err
    while current is not None:
        messages.append(str(current))
        current = current.__cause__
    return "\n".join(f"caused by: {msg}" if i else msg for i, msg in enumerate(messages))


class BuildSystem:
    """Builds the application described by a runtime build config."""

    def __init__(self, cfg: RtcBuild, ignore_chan: IgnoreSink | None = None) -> None:
        self.cfg = cfg
        self._html_pipeline = HtmlPipeline(cfg, ignore_chan)

    def build(self) -> None:
        """Run a full build, logging its outcome."""
        log.info("%s starting build", BUILDING)
        try:
            self._do_build()
        except Exception as err:
            log.error("%s error\n%s", ERROR, _describe(err))
            raise
        log.info("%s success", SUCCESS)

    def _do_build(self) -> None:
        try:
            Path(self.cfg.final_dist).mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise TrunkError("error creating build environment directory: dist") from err
        try:
            self.prepare_staging_dist()
        except TrunkError as err:
            raise TrunkError("error preparing build environment") from err
        try:
            self._html_pipeline.run()
        except Exception as err:
            raise TrunkError("error from HTML pipeline") from err
        try:
            self.finalize_dist()
        except TrunkError as err:
            raise TrunkError("error applying built distribution") from err

    def prepare_staging_dist(self) -> None:
        """Create an empty staging directory for the build."""
        staging = Path(self.cfg.staging_dist)
        try:
            remove_dir_all(staging)
        except TrunkError as err:
            raise TrunkError("error cleaning staging dist dir") from err
        try:
            staging.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise TrunkError("error creating build environment directory: staging dist dir") from err

    def finalize_dist(self) -> None:
        """Replace the dist contents with the staged build and remove the staging dir."""
        log.info("applying new distribution")
        self.clean_final()
        self.move_stage_to_final()
        try:
            Path(self.cfg.staging_dist).rmdir()
        except OSError as err:
            raise TrunkError("error deleting staging dist dir") from err

    def move_stage_to_final(self) -> None:
        """Move every entry of the staging dir into the final dist dir."""
        final_dist = Path(self.cfg.final_dist)
        try:
            entries = list(os.scandir(self.cfg.staging_dist))
        except OSError as err:
            raise TrunkError("error reading staging dist dir") from err
        for entry in entries:
            target = final_dist / entry.name
            try:
                os.replace(entry.path, target)
            except OSError as err:
                raise TrunkError(f"error moving {entry.path!r} to {str(target)!r}") from err

    def clean_final(self) -> None:
        """Delete everything in the final dist dir except the staging dir."""
        try:
            entries = list(os.scandir(self.cfg.final_dist))
        except OSError as err:
            raise TrunkError("error reading final dist dir") from err
        for entry in entries:
            if entry.name == STAGE_DIR:
                continue
            try:
                if entry.is_dir(follow_symlinks=False):
                    remove_dir_all(entry.path)
                elif entry.is_symlink() or entry.is_file(follow_symlinks=False):
                    os.unlink(entry.path)
            except (OSError, TrunkError) as err:
                raise TrunkError("error cleaning final dist") from err