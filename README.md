# wasmtrunk

Build, bundle and ship a Rust WASM application to the web.

`wasmtrunk` reads a source `index.html` and processes every
`<link data-trunk rel="..." .../>` element in it. It compiles the Rust
application with `cargo` and `wasm-bindgen`, and in release builds it can run
`wasm-opt` on the result. It also hashes and copies CSS files and icons,
inlines HTML, CSS and JS, and copies single files or whole directories. Each
build is assembled in `dist/.stage` and moved into `dist/` only when it
succeeds.

## Installation

```
pip install wasmtrunk
```

You need `cargo` with the `wasm32-unknown-unknown` target installed.
`wasm-bindgen` and `wasm-opt` are taken from your `PATH` when the version
there matches the required one. Otherwise they are downloaded into the user
cache directory. The `wasm-bindgen` version is looked up in this order:
`[tools] wasm_bindgen` in `Trunk.toml`, then `Cargo.lock`, then the cargo
metadata. When none of these gives a version, `0.2.74` is used. `wasm-opt`
defaults to `version_101`.

## Commands

```
wasmtrunk build            # build the app and all of its assets into dist/
wasmtrunk watch            # build, then rebuild whenever a watched file changes
wasmtrunk serve            # build, watch and serve on http://127.0.0.1:8080/
wasmtrunk clean            # remove dist/
wasmtrunk config show      # print the configuration from Trunk.toml and env vars
```

Global options:

- `--config PATH` selects the config file. The default is `Trunk.toml`, and it can also be set through `TRUNK_CONFIG`.
- `-v` turns on verbose logging.

`build`, `watch` and `serve` take:

- an optional target HTML file (default `index.html`)
- `--release`
- `-d/--dist DIR`
- `--public-url URL`, which always gets a leading and a trailing `/`

`watch` and `serve` also take `-w/--watch PATH` and `-i/--ignore PATH`. Both
can be repeated. When no watch path is given, the directory holding the target
HTML is watched. The dist directory and `.git` directories never trigger a
rebuild.

`serve` also takes:

- `--port`
- `--open`
- `--proxy-backend URL`
- `--proxy-rewrite PATH`
- `--proxy-ws`
- `--no-autoreload`

`clean` takes:

- `-d/--dist DIR`
- `--cargo`, which also runs `cargo clean`
- `-t/--tools`, which also removes the cached tools

## Asset links

```html
<link data-trunk rel="rust" href="Cargo.toml" data-wasm-opt="z"/>
<link data-trunk rel="css" href="styles/app.css"/>
<link data-trunk rel="icon" href="favicon.png"/>
<link data-trunk rel="inline" href="snippet.js"/>
<link data-trunk rel="copy-file" href="robots.txt"/>
<link data-trunk rel="copy-dir" href="static"/>
```

- `rust` accepts these attributes:
  - `data-bin`
  - `data-cargo-features`
  - `data-keep-debug`
  - `data-no-demangle`
  - `data-wasm-opt`, one of `""`, `0`, `1`, `2`, `3`, `4`, `s`, `z`. `0` disables `wasm-opt`. `wasm-opt` only runs in release builds.

  At most one `rel="rust"` link is allowed. When the page has none, the `Cargo.toml` next to the HTML file is built.
- `css` and `icon` files are copied under a name of the form `{stem}-{hash}.{ext}`.
- `inline` content is placed as it is (`html`), inside `<style>` (`css`), or inside `<script>` (`js`). The type comes from the `type` attribute or, failing that, from the file extension.

A `<base data-trunk-public-url/>` element in `<head>` receives the configured
public URL as its `href`.

## Configuration

Settings are applied in layers. Each layer overrides the one before it:

1. `Trunk.toml`, with sections `[build]`, `[watch]`, `[serve]`, `[clean]`, `[tools]` and `[[proxy]]`.
2. Environment variables such as `TRUNK_BUILD_DIST`, `TRUNK_SERVE_PORT` or `TRUNK_WATCH_IGNORE`. List values are comma separated, and booleans are written `true` or `false`.
3. Command-line options.

The `release`, `open` and `cargo` flags cannot be switched off by a higher
layer. Relative paths in `Trunk.toml` are resolved against the directory that
holds the file.

```toml
[build]
target = "index.html"
dist = "dist"
public_url = "/"

[serve]
port = 8080

[[proxy]]
backend = "http://localhost:9000/api/"
```

## Serving

`serve` serves the dist directory at the public URL. When a request for a
missing file accepts `text/html` or `*/*`, `index.html` is returned instead.

Unless `--no-autoreload` is given, a reload script is injected into
`index.html`. The script listens on `/_trunk/ws` and reloads the page after
every build.

Proxies forward HTTP requests, or WebSocket text and binary messages, to their
backend. The configured path prefix is replaced by the backend's path.

## What it does not do

- Sass/SCSS links (`rel="sass"`, `rel="scss"`) are rejected with an error. Sass is not compiled.
- Rust web workers (`rel="rust-worker"`) are not supported.
- The WebSocket proxy relays only text and binary messages. Any other message ends the connection.