[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "wasmtrunk"
version = "0.1.0"
description = "Build, bundle and serve Rust WASM web applications and their assets."
requires-python = ">=3.11"
keywords = ["wasm", "webassembly", "bundler", "build", "cargo", "wasm-bindgen", "wasm-opt"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Environment :: Web Environment",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
]
dependencies = [
    "aiohttp",
    "beautifulsoup4",
    "platformdirs",
    "watchdog",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
wasmtrunk = "wasmtrunk.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["wasmtrunk"]

[tool.pytest.ini_options]
addopts = "-ra"
