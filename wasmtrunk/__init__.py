"""Build, bundle and serve Rust WASM web applications and their assets."""

__version__ = "0.1.0"