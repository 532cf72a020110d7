"""Runtime configuration derived from the merged configuration layers."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import SplitResult

from wasmtrunk.common import TrunkError
from wasmtrunk.config.models import (
    DIST_DIR,
    STAGE_DIR,
    ConfigOpts,
    ConfigOptsBuild,
    ConfigOptsClean,
    ConfigOptsProxy,
    ConfigOptsServe,
    ConfigOptsTools,
    ConfigOptsWatch,
)

DEFAULT_TARGET = "index.html"
DEFAULT_PORT = 8080

StrPath = str | os.PathLike[str]


def _quoted(path: StrPath) -> str:
    text = os.fspath(path).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def _canonical(path: Path, message: str) -> Path:
    try:
        return path.resolve(strict=True)
    except (OSError, RuntimeError) as err:
        raise TrunkError(message) from err


@dataclass(frozen=True)
class RtcBuild:
    """Runtime config for the build system."""

    target: Path
    target_parent: Path
    release: bool
    public_url: str
    final_dist: Path
    staging_dist: Path
    tools: ConfigOptsTools = field(default_factory=ConfigOptsTools)

    @classmethod
    def from_opts(cls, opts: ConfigOptsBuild, tools: ConfigOptsTools) -> RtcBuild:
        """Resolve the build options, creating the final dist directory if needed."""
        pre_target = opts.target if opts.target is not None else Path(DEFAULT_TARGET)
        target = _canonical(
            Path(pre_target),
            f"error getting canonical path to source HTML file {_quoted(pre_target)}",
        )
        target_parent = target.parent

        final_dist = Path(opts.dist) if opts.dist is not None else target_parent / DIST_DIR
        if not final_dist.exists():
            try:
                final_dist.mkdir()
            except OSError as err:
                raise TrunkError(f"error creating final dist directory {_quoted(final_dist)}") from err
        final_dist = _canonical(final_dist, "error taking canonical path to dist dir")

        return cls(
            target=target,
            target_parent=target_parent,
            release=opts.release,
            public_url=opts.public_url if opts.public_url is not None else "/",
            final_dist=final_dist,
            staging_dist=final_dist / STAGE_DIR,
            tools=tools,
        )


@dataclass(frozen=True)
class RtcWatch:
    """Runtime config for the watch system."""

    build: RtcBuild
    paths: list[Path]
    ignored_paths: list[Path]

    @classmethod
    def from_opts(
        cls, build_opts: ConfigOptsBuild, opts: ConfigOptsWatch, tools: ConfigOptsTools
    ) -> RtcWatch:
        """Resolve watch and ignore paths; the dist directory is always ignored."""
        build = RtcBuild.from_opts(build_opts, tools)
        paths = [
            _canonical(Path(path), f"invalid watch path provided: {_quoted(path)}")
            for path in opts.watch or []
        ]
        if not paths:
            paths.append(build.target_parent)
        ignored_paths = [
            _canonical(Path(path), f"invalid ignore path provided: {_quoted(path)}")
            for path in opts.ignore or []
        ]
        ignored_paths.append(build.final_dist)
        return cls(build=build, paths=paths, ignored_paths=ignored_paths)


@dataclass(frozen=True)
class RtcServe:
    """Runtime config for the serve system."""

    watch: RtcWatch
    port: int
    open: bool
    proxy_backend: SplitResult | None
    proxy_rewrite: str | None
    proxy_ws: bool
    proxies: list[ConfigOptsProxy] | None
    no_autoreload: bool

    @classmethod
    def from_opts(
        cls,
        build_opts: ConfigOptsBuild,
        watch_opts: ConfigOptsWatch,
        opts: ConfigOptsServe,
        tools: ConfigOptsTools,
        proxies: list[ConfigOptsProxy] | None,
    ) -> RtcServe:
        """Resolve the serve options on top of the watch and build options."""
        watch = RtcWatch.from_opts(build_opts, watch_opts, tools)
        return cls(
            watch=watch,
            port=opts.port if opts.port is not None else DEFAULT_PORT,
            open=opts.open,
            proxy_backend=opts.proxy_backend,
            proxy_rewrite=opts.proxy_rewrite,
            proxy_ws=opts.proxy_ws,
            proxies=proxies,
            no_autoreload=opts.no_autoreload,
        )


@dataclass(frozen=True)
class RtcClean:
    """Runtime config for the clean system."""

    dist: Path
    cargo: bool

    @classmethod
    def from_opts(cls, opts: ConfigOptsClean) -> RtcClean:
        """Apply defaults to the clean options."""
        return cls(
            dist=Path(opts.dist) if opts.dist is not None else Path(DIST_DIR),
            cargo=opts.cargo,
        )


def rtc_build(cli_build: ConfigOptsBuild, config: StrPath | None = None) -> RtcBuild:
    """Build the runtime build config from all configuration layers."""
    layer = ConfigOpts.file_and_env_layers(config).with_cli_build(cli_build)
    return RtcBuild.from_opts(layer.build or ConfigOptsBuild(), layer.tools or ConfigOptsTools())


def rtc_watch(
    cli_build: ConfigOptsBuild, cli_watch: ConfigOptsWatch, config: StrPath | None = None
) -> RtcWatch:
    """Build the runtime watch config from all configuration layers."""
    layer = ConfigOpts.file_and_env_layers(config).with_cli_build(cli_build).with_cli_watch(cli_watch)
    return RtcWatch.from_opts(
        layer.build or ConfigOptsBuild(),
        layer.watch or ConfigOptsWatch(),
        layer.tools or ConfigOptsTools(),
    )


def rtc_serve(
    cli_build: ConfigOptsBuild,
    cli_watch: ConfigOptsWatch,
    cli_serve: ConfigOptsServe,
    config: StrPath | None = None,
) -> RtcServe:
    """Build the runtime serve config from all configuration layers."""
    layer = (
        ConfigOpts.file_and_env_layers(config)
        .with_cli_build(cli_build)
        .with_cli_watch(cli_watch)
        .with_cli_serve(cli_serve)
    )
    return RtcServe.from_opts(
        layer.build or ConfigOptsBuild(),
        layer.watch or ConfigOptsWatch(),
        layer.serve or ConfigOptsServe(),
        layer.tools or ConfigOptsTools(),
        layer.proxy,
    )


def rtc_clean(cli_clean: ConfigOptsClean, config: StrPath | None = None) -> RtcClean:
    """Build the runtime clean config from all configuration layers."""
    layer = ConfigOpts.file_and_env_layers(config).with_cli_clean(cli_clean)
    return RtcClean.from_opts(layer.clean or ConfigOptsClean())