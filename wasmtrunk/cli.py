"""Command line interface: build, watch, serve, clean and inspect the configuration."""

from __future__ import annotations

import argparse
import logging
import os
import pprint
import subprocess
import sys
import threading
from collections.abc import Callable
from pathlib import Path

from wasmtrunk.build import BuildSystem
from wasmtrunk.common import TrunkError, parse_public_url, remove_dir_all
from wasmtrunk.config.models import (
    ConfigOpts,
    ConfigOptsBuild,
    ConfigOptsClean,
    ConfigOptsServe,
    ConfigOptsWatch,
    parse_uri,
)
from wasmtrunk.config.rt import rtc_build, rtc_clean, rtc_serve, rtc_watch
from wasmtrunk.serve import ServeSystem
from wasmtrunk.tools import cache_dir
from wasmtrunk.watch import WatchSystem

log = logging.getLogger("wasmtrunk")

CONFIG_ENV = "TRUNK_CONFIG"


def _port(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {value}") from None
    if not 0 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range: {value}")
    return port


def _uri(value: str):
    try:
        return parse_uri(value)
    except (TrunkError, ValueError) as err:
        raise argparse.ArgumentTypeError(str(err)) from None


def _add_build_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("target", nargs="?", type=Path, default=None,
                        help="the index HTML file to drive the bundling process [default: index.html]")
    parser.add_argument("--release", action="store_true", help="build in release mode")
    parser.add_argument("-d", "--dist", type=Path, default=None,
                        help="the output dir for all final assets [default: dist]")
    parser.add_argument("--public-url", type=parse_public_url, default=None,
                        help="the public URL from which assets are to be served [default: /]")


def _add_watch_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-w", "--watch", action="append", type=Path, metavar="path", default=None,
                        help="watch specific file(s) or folder(s) [default: build target parent folder]")
    parser.add_argument("-i", "--ignore", action="append", type=Path, metavar="path", default=None,
                        help="paths to ignore [default: []]")


def _add_serve_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--port", type=_port, default=None, help="the port to serve on [default: 8080]")
    parser.add_argument("--open", action="store_true",
                        help="open a browser tab once the initial build is complete")
    parser.add_argument("--proxy-backend", type=_uri, default=None,
                        help="a URL to which requests will be proxied")
    parser.add_argument("--proxy-rewrite", default=None,
                        help="the URI on which to accept requests which are to be proxied")
    parser.add_argument("--proxy-ws", action="store_true",
                        help="configure the proxy for handling WebSockets")
    parser.add_argument("--no-autoreload", action="store_true",
                        help="disable reloading the web page when a build completes")


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser for all commands."""
    parser = argparse.ArgumentParser(
        prog="wasmtrunk", description="Build, bundle & ship your Rust WASM application to the web."
    )
    env_config = os.environ.get(CONFIG_ENV)
    parser.add_argument("--config", type=Path, default=Path(env_config) if env_config else None,
                        help=f"path to the config file [default: Trunk.toml] (env: {CONFIG_ENV})")
    parser.add_argument("-v", dest="verbose", action="store_true", help="enable verbose logging")
    commands = parser.add_subparsers(dest="command", required=True)

    build = commands.add_parser("build", help="build the Rust WASM app and all of its assets")
    _add_build_args(build)
    build.set_defaults(handler=run_build)

    watch = commands.add_parser("watch", help="build & watch the Rust WASM app and all of its assets")
    _add_build_args(watch)
    _add_watch_args(watch)
    watch.set_defaults(handler=run_watch)

    serve = commands.add_parser("serve", help="build, watch & serve the Rust WASM app and all of its assets")
    _add_build_args(serve)
    _add_watch_args(serve)
    _add_serve_args(serve)
    serve.set_defaults(handler=run_serve)

    clean = commands.add_parser("clean", help="clean output artifacts")
    clean.add_argument("-d", "--dist", type=Path, default=None,
                       help="the output dir for all final assets [default: dist]")
    clean.add_argument("--cargo", action="store_true", help="also perform a cargo clean")
    clean.add_argument("-t", "--tools", action="store_true", help="also clean any cached tools")
    clean.set_defaults(handler=run_clean)

    config = commands.add_parser("config", help="config controls")
    config_commands = config.add_subparsers(dest="config_action", required=True)
    config_commands.add_parser("show", help="show the current config pre-CLI")
    config.set_defaults(handler=run_config)
    return parser


def _build_opts(args: argparse.Namespace) -> ConfigOptsBuild:
    return ConfigOptsBuild(
        target=args.target, release=args.release, dist=args.dist, public_url=args.public_url
    )


def _watch_opts(args: argparse.Namespace) -> ConfigOptsWatch:
    return ConfigOptsWatch(watch=args.watch, ignore=args.ignore)


def _serve_opts(args: argparse.Namespace) -> ConfigOptsServe:
    return ConfigOptsServe(
        port=args.port,
        open=args.open,
        proxy_backend=args.proxy_backend,
        proxy_rewrite=args.proxy_rewrite,
        proxy_ws=args.proxy_ws,
        no_autoreload=args.no_autoreload,
    )


def _run_until_interrupt(target: Callable[[], None], shutdown: threading.Event) -> None:
    errors: list[BaseException] = []

    def runner() -> None:
        try:
            target()
        except BaseException as err:
            errors.append(err)

    thread = threading.Thread(target=runner, name="system", daemon=True)
    thread.start()
    try:
        while thread.is_alive():
            thread.join(0.2)
    except KeyboardInterrupt:
        log.debug("received shutdown signal")
        shutdown.set()
        thread.join()
    if errors:
        raise errors[0]


def run_build(args: argparse.Namespace, config: Path | None) -> None:
    """Build the application once."""
    cfg = rtc_build(_build_opts(args), config)
    BuildSystem(cfg).build()


def run_clean(args: argparse.Namespace, config: Path | None) -> None:
    """Remove the dist dir and, optionally, cargo output and cached tools."""
    cfg = rtc_clean(ConfigOptsClean(dist=args.dist, cargo=args.cargo), config)
    try:
        remove_dir_all(cfg.dist)
    except TrunkError:
        pass
    if cfg.cargo:
        log.debug("cleaning cargo dir")
        try:
            completed = subprocess.run(["cargo", "clean"], capture_output=True, check=False)
        except OSError as err:
            raise TrunkError("error spawning cargo clean") from err
        if completed.returncode != 0:
            raise TrunkError(completed.stderr.decode("utf-8", errors="replace"))
    if args.tools:
        log.debug("cleaning tools cache dir")
        try:
            path = cache_dir()
        except TrunkError as err:
            raise TrunkError("error getting cache dir path") from err
        remove_dir_all(path)


def run_watch(args: argparse.Namespace, config: Path | None) -> None:
    """Build, then rebuild on change until interrupted."""
    cfg = rtc_watch(_build_opts(args), _watch_opts(args), config)
    shutdown = threading.Event()
    system = WatchSystem(cfg, shutdown)
    try:
        system.build()
    except Exception:
        pass
    _run_until_interrupt(system.run, shutdown)


def run_serve(args: argparse.Namespace, config: Path | None) -> None:
    """Build, watch and serve until interrupted."""
    cfg = rtc_serve(_build_opts(args), _watch_opts(args), _serve_opts(args), config)
    shutdown = threading.Event()
    system = ServeSystem(cfg, shutdown)
    _run_until_interrupt(system.run, shutdown)


def run_config(args: argparse.Namespace, config: Path | None) -> None:
    """Print the configuration from the config file and environment."""
    if args.config_action == "show":
        print(pprint.pformat(ConfigOpts.full(config)))


def _describe(err: BaseException) -> str:
    messages = []
    current: BaseException | None = err
    while current is not None:
        messages.append(str(current))
        current = current.__cause__
    return "\n".join(f"caused by: {msg}" if i else msg for i, msg in enumerate(messages))


def _init_logging(verbose: bool) -> None:
    logging.basicConfig(level=logging.ERROR, format="%(levelname)s %(message)s")
    log.setLevel(logging.DEBUG if verbose else logging.INFO)


def main(argv: list[str] | None = None) -> int:
    """Run the command line interface; return the process exit code."""
    args = build_parser().parse_args(argv)
    _init_logging(args.verbose)
    try:
        args.handler(args, args.config)
    except TrunkError as err:
        print(f"Error: {_describe(err)}", file=sys.stderr)
        return 1
    return 0