"""Layered configuration options: config file, environment variables and command line."""

from __future__ import annotations

import os
import re
import tomllib
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, TypeVar
from urllib.parse import SplitResult, urlsplit

from wasmtrunk.common import TrunkError

DIST_DIR = "dist"
STAGE_DIR = ".stage"
CONFIG_FILE = "Trunk.toml"

_PORT_RE = re.compile(r"\+?[0-9]+")

T = TypeVar("T")


class _FieldError(ValueError):
    """A configuration value had the wrong shape."""


def _quoted(path: str | os.PathLike[str]) -> str:
    text = os.fspath(path).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def parse_uri(value: str) -> SplitResult:
    """Parse and validate a URI string."""
    if not isinstance(value, str) or not value or any(ch.isspace() for ch in value):
        raise TrunkError(f"invalid uri {value!r}")
    try:
        uri = urlsplit(value)
        _ = uri.port
    except ValueError as err:
        raise TrunkError(f"invalid uri {value!r}: {err}") from err
    if uri.scheme and not uri.netloc:
        raise TrunkError(f"invalid uri {value!r}: scheme without authority")
    return uri


class _Section:
    """Typed access to one configuration section."""

    def string(self, key: str) -> str | None:
        raise NotImplementedError

    def strings(self, key: str) -> list[str] | None:
        raise NotImplementedError

    def flag(self, key: str) -> bool:
        raise NotImplementedError

    def port(self, key: str) -> int | None:
        raise NotImplementedError

    def path(self, key: str) -> Path | None:
        value = self.string(key)
        return None if value is None else Path(value)

    def paths(self, key: str) -> list[Path] | None:
        values = self.strings(key)
        return None if values is None else [Path(value) for value in values]

    def uri(self, key: str) -> SplitResult | None:
        value = self.string(key)
        if value is None:
            return None
        try:
            return parse_uri(value)
        except TrunkError as err:
            raise _FieldError(str(err)) from err


class _TomlSection(_Section):
    def __init__(self, data: Mapping[str, Any], name: str) -> None:
        self._data = data
        self._name = name

    def _get(self, key: str, kind: str, check: Callable[[Any], bool]) -> Any:
        value = self._data.get(key)
        if value is None:
            return None
        if not check(value):
            raise _FieldError(f"invalid type for `{self._name}.{key}`: expected {kind}")
        return value

    def string(self, key: str) -> str | None:
        return self._get(key, "a string", lambda v: isinstance(v, str))

    def strings(self, key: str) -> list[str] | None:
        return self._get(
            key,
            "a list of strings",
            lambda v: isinstance(v, list) and all(isinstance(item, str) for item in v),
        )

    def flag(self, key: str) -> bool:
        return bool(self._get(key, "a boolean", lambda v: isinstance(v, bool)))

    def port(self, key: str) -> int | None:
        value = self._get(key, "an integer", lambda v: isinstance(v, int) and not isinstance(v, bool))
        if value is not None and not 0 <= value <= 0xFFFF:
            raise _FieldError(f"invalid value for `{self._name}.{key}`: {value} is not a valid port")
        return value


class _EnvSection(_Section):
    def __init__(self, environ: Mapping[str, str], prefix: str) -> None:
        self._prefix = prefix
        self._data = {
            key[len(prefix):].lower(): value for key, value in environ.items() if key.startswith(prefix)
        }

    def string(self, key: str) -> str | None:
        return self._data.get(key)

    def strings(self, key: str) -> list[str] | None:
        value = self._data.get(key)
        return None if value is None else value.split(",")

    def flag(self, key: str) -> bool:
        value = self._data.get(key)
        if value is None:
            return False
        if value == "true":
            return True
        if value == "false":
            return False
        raise _FieldError(f"invalid boolean {value!r} for {self._prefix}{key.upper()}")

    def port(self, key: str) -> int | None:
        value = self._data.get(key)
        if value is None:
            return None
        if not _PORT_RE.fullmatch(value) or not 0 <= int(value) <= 0xFFFF:
            raise _FieldError(f"invalid port {value!r} for {self._prefix}{key.upper()}")
        return int(value)


@dataclass(frozen=True)
class ConfigOptsBuild:
    """Config options for the build system."""

    target: Path | None = None
    release: bool = False
    dist: Path | None = None
    public_url: str | None = None

    @classmethod
    def _load(cls, src: _Section) -> ConfigOptsBuild:
        return cls(
            target=src.path("target"),
            release=src.flag("release"),
            dist=src.path("dist"),
            public_url=src.string("public_url"),
        )


@dataclass(frozen=True)
class ConfigOptsWatch:
    """Config options for the watch system."""

    watch: list[Path] | None = None
    ignore: list[Path] | None = None

    @classmethod
    def _load(cls, src: _Section) -> ConfigOptsWatch:
        return cls(watch=src.paths("watch"), ignore=src.paths("ignore"))


@dataclass(frozen=True)
class ConfigOptsServe:
    """Config options for the serve system."""

    port: int | None = None
    open: bool = False
    proxy_backend: SplitResult | None = None
    proxy_rewrite: str | None = None
    proxy_ws: bool = False
    no_autoreload: bool = False

    @classmethod
    def _load(cls, src: _Section) -> ConfigOptsServe:
        return cls(
            port=src.port("port"),
            open=src.flag("open"),
            proxy_backend=src.uri("proxy_backend"),
            proxy_rewrite=src.string("proxy_rewrite"),
            proxy_ws=src.flag("proxy_ws"),
            no_autoreload=src.flag("no_autoreload"),
        )


@dataclass(frozen=True)
class ConfigOptsClean:
    """Config options for the clean system."""

    dist: Path | None = None
    cargo: bool = False

    @classmethod
    def _load(cls, src: _Section) -> ConfigOptsClean:
        return cls(dist=src.path("dist"), cargo=src.flag("cargo"))


@dataclass(frozen=True)
class ConfigOptsTools:
    """Versions of the automatically downloaded tools."""

    wasm_bindgen: str | None = None
    wasm_opt: str | None = None

    @classmethod
    def _load(cls, src: _Section) -> ConfigOptsTools:
        return cls(wasm_bindgen=src.string("wasm_bindgen"), wasm_opt=src.string("wasm_opt"))


@dataclass(frozen=True)
class ConfigOptsProxy:
    """A proxy definition; only read from the config file."""

    backend: SplitResult
    rewrite: str | None = None
    ws: bool = False

    @classmethod
    def _load(cls, src: _Section) -> ConfigOptsProxy:
        backend = src.uri("backend")
        if backend is None:
            raise _FieldError("missing field `backend` in `proxy`")
        return cls(backend=backend, rewrite=src.string("rewrite"), ws=src.flag("ws"))


def _table(data: Mapping[str, Any], key: str) -> Mapping[str, Any] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise _FieldError(f"invalid type for `{key}`: expected a table")
    return value


def _load_section(data: Mapping[str, Any], key: str, loader: Callable[[_Section], T]) -> T | None:
    table = _table(data, key)
    return None if table is None else loader(_TomlSection(table, key))


def _canonical(parent: Path, path: Path, field: str, config_path: Path) -> Path:
    if path.is_absolute():
        return path
    try:
        return (parent / path).resolve(strict=True)
    except (OSError, RuntimeError) as err:
        raise TrunkError(
            f"error taking canonical path to {field} {_quoted(path)} in {_quoted(config_path)}"
        ) from err


def _joined(parent: Path, path: Path | None) -> Path | None:
    if path is None or path.is_absolute():
        return path
    return parent / path


@dataclass(frozen=True)
class ConfigOpts:
    """All configuration options, as read from one layer or merged from several."""

    build: ConfigOptsBuild | None = None
    watch: ConfigOptsWatch | None = None
    serve: ConfigOptsServe | None = None
    clean: ConfigOptsClean | None = None
    tools: ConfigOptsTools | None = None
    proxy: list[ConfigOptsProxy] | None = None

    @classmethod
    def full(cls, config: str | os.PathLike[str] | None = None) -> ConfigOpts:
        """Return the configuration from the config file and environment variables."""
        return cls.file_and_env_layers(config)

    @classmethod
    def file_and_env_layers(cls, path: str | os.PathLike[str] | None = None) -> ConfigOpts:
        """Merge the config file layer with the environment layer on top."""
        return merge(cls.from_file(path), cls.from_env())

    @classmethod
    def from_file(cls, path: str | os.PathLike[str] | None = None) -> ConfigOpts:
        """Read a config file; relative paths in it are taken relative to the file itself."""
        config_path = Path(path) if path is not None else Path(CONFIG_FILE)
        if not config_path.exists():
            return cls()
        if not config_path.is_absolute():
            try:
                config_path = config_path.resolve(strict=True)
            except (OSError, RuntimeError) as err:
                raise TrunkError(
                    f"error getting canonical path to Trunk config file {_quoted(config_path)}"
                ) from err
        try:
            raw = config_path.read_bytes()
        except OSError as err:
            raise TrunkError("error reading config file") from err
        try:
            cfg = cls._from_toml(tomllib.loads(raw.decode("utf-8")))
        except (UnicodeDecodeError, tomllib.TOMLDecodeError, _FieldError) as err:
            raise TrunkError("error reading config file contents as TOML data") from err
        return cfg._resolve_paths(config_path)

    @classmethod
    def _from_toml(cls, data: Mapping[str, Any]) -> ConfigOpts:
        proxies = data.get("proxy")
        proxy_list: list[ConfigOptsProxy] | None = None
        if proxies is not None:
            if not isinstance(proxies, list) or not all(isinstance(p, Mapping) for p in proxies):
                raise _FieldError("invalid type for `proxy`: expected an array of tables")
            proxy_list = [ConfigOptsProxy._load(_TomlSection(p, "proxy")) for p in proxies]
        return cls(
            build=_load_section(data, "build", ConfigOptsBuild._load),
            watch=_load_section(data, "watch", ConfigOptsWatch._load),
            serve=_load_section(data, "serve", ConfigOptsServe._load),
            clean=_load_section(data, "clean", ConfigOptsClean._load),
            tools=_load_section(data, "tools", ConfigOptsTools._load),
            proxy=proxy_list,
        )

    def _resolve_paths(self, config_path: Path) -> ConfigOpts:
        parent = config_path.parent
        build, watch, clean = self.build, self.watch, self.clean
        if build is not None:
            target = build.target
            if target is not None:
                target = _canonical(parent, target, "[build].target", config_path)
            build = replace(build, target=target, dist=_joined(parent, build.dist))
        if watch is not None:
            watch_paths = watch.watch
            if watch_paths is not None:
                watch_paths = [_canonical(parent, p, "[watch].watch", config_path) for p in watch_paths]
            ignore_paths = watch.ignore
            if ignore_paths is not None:
                ignore_paths = [_canonical(parent, p, "[watch].ignore", config_path) for p in ignore_paths]
            watch = replace(watch, watch=watch_paths, ignore=ignore_paths)
        if clean is not None:
            clean = replace(clean, dist=_joined(parent, clean.dist))
        return replace(self, build=build, watch=watch, clean=clean)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ConfigOpts:
        """Read the TRUNK_BUILD_*, TRUNK_WATCH_*, TRUNK_SERVE_* and TRUNK_CLEAN_* variables."""
        env = os.environ if environ is None else environ
        try:
            return cls(
                build=ConfigOptsBuild._load(_EnvSection(env, "TRUNK_BUILD_")),
                watch=ConfigOptsWatch._load(_EnvSection(env, "TRUNK_WATCH_")),
                serve=ConfigOptsServe._load(_EnvSection(env, "TRUNK_SERVE_")),
                clean=ConfigOptsClean._load(_EnvSection(env, "TRUNK_CLEAN_")),
            )
        except _FieldError as err:
            raise TrunkError("error reading trunk env var config") from err

    def with_cli_build(self, cli: ConfigOptsBuild) -> ConfigOpts:
        """Layer command-line build options on top of this configuration."""
        return merge(self, ConfigOpts(build=cli))

    def with_cli_watch(self, cli: ConfigOptsWatch) -> ConfigOpts:
        """Layer command-line watch options on top of this configuration."""
        return merge(self, ConfigOpts(watch=cli))

    def with_cli_serve(self, cli: ConfigOptsServe) -> ConfigOpts:
        """Layer command-line serve options on top of this configuration."""
        return merge(self, ConfigOpts(serve=cli))

    def with_cli_clean(self, cli: ConfigOptsClean) -> ConfigOpts:
        """Layer command-line clean options on top of this configuration."""
        return merge(self, ConfigOpts(clean=cli))


def _first(greater: T | None, lesser: T | None) -> T | None:
    return greater if greater is not None else lesser


def _merge_section(lesser: T | None, greater: T | None, combine: Callable[[T, T], T]) -> T | None:
    if lesser is None:
        return greater
    if greater is None:
        return lesser
    return combine(lesser, greater)


def _merge_build(lesser: ConfigOptsBuild, greater: ConfigOptsBuild) -> ConfigOptsBuild:
    return replace(
        greater,
        target=_first(greater.target, lesser.target),
        dist=_first(greater.dist, lesser.dist),
        public_url=_first(greater.public_url, lesser.public_url),
        release=greater.release or lesser.release,
    )


def _merge_watch(lesser: ConfigOptsWatch, greater: ConfigOptsWatch) -> ConfigOptsWatch:
    return replace(
        greater,
        watch=_first(greater.watch, lesser.watch),
        ignore=_first(greater.ignore, lesser.ignore),
    )


def _merge_serve(lesser: ConfigOptsServe, greater: ConfigOptsServe) -> ConfigOptsServe:
    return replace(
        greater,
        proxy_backend=_first(greater.proxy_backend, lesser.proxy_backend),
        proxy_rewrite=_first(greater.proxy_rewrite, lesser.proxy_rewrite),
        port=_first(greater.port, lesser.port),
        proxy_ws=greater.proxy_ws or lesser.proxy_ws,
        open=greater.open or lesser.open,
    )


def _merge_tools(lesser: ConfigOptsTools, greater: ConfigOptsTools) -> ConfigOptsTools:
    return replace(
        greater,
        wasm_bindgen=_first(greater.wasm_bindgen, lesser.wasm_bindgen),
        wasm_opt=_first(greater.wasm_opt, lesser.wasm_opt),
    )


def _merge_clean(lesser: ConfigOptsClean, greater: ConfigOptsClean) -> ConfigOptsClean:
    return replace(
        greater,
        dist=_first(greater.dist, lesser.dist),
        cargo=greater.cargo or lesser.cargo,
    )


def merge(lesser: ConfigOpts, greater: ConfigOpts) -> ConfigOpts:
    """Merge two layers; values from ``greater`` take precedence.

    The ``release``, ``open`` and ``cargo`` flags cannot be switched off by a higher layer,
    and proxy lists are not merged: the greater list replaces the lesser one.
    """
    return ConfigOpts(
        build=_merge_section(lesser.build, greater.build, _merge_build),
        watch=_merge_section(lesser.watch, greater.watch, _merge_watch),
        serve=_merge_section(lesser.serve, greater.serve, _merge_serve),
        clean=_merge_section(lesser.clean, greater.clean, _merge_clean),
        tools=_merge_section(lesser.tools, greater.tools, _merge_tools),
        proxy=_first(greater.proxy, lesser.proxy),
    )