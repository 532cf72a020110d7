"""The watch system: rebuilds the application whenever watched files change."""

from __future__ import annotations

import logging
import os
import queue
import threading
from collections.abc import Callable, Iterable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from wasmtrunk.build import BuildSystem
from wasmtrunk.common import TrunkError
from wasmtrunk.config.rt import RtcWatch

log = logging.getLogger(__name__)

BLACKLIST = (".git",)
"""Path segments that never trigger a build."""

_ACCESS_EVENTS = frozenset({"opened", "closed", "closed_no_write"})
_POLL_INTERVAL = 0.1

EventSink = Callable[[list[Path]], None]


class _ChangeHandler(FileSystemEventHandler):
    def __init__(self, on_event: EventSink) -> None:
        super().__init__()
        self._on_event = on_event

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in _ACCESS_EVENTS:
            return
        paths = [Path(os.fsdecode(event.src_path))]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(Path(os.fsdecode(dest)))
        self._on_event(paths)


def build_watcher(on_event: EventSink, paths: Iterable[str | os.PathLike[str]]) -> Observer:
    """Start a recursive filesystem watcher on each path; it calls ``on_event`` with changed paths."""
    observer = Observer()
    handler = _ChangeHandler(on_event)
    for path in paths:
        try:
            observer.schedule(handler, os.fspath(path), recursive=True)
        except OSError as err:
            raise TrunkError(f"failed to watch {os.fspath(path)!r} for file system changes") from err
    try:
        observer.start()
    except OSError as err:
        raise TrunkError("failed to build file system watcher") from err
    return observer


class WatchSystem:
    """Wraps a build system and a filesystem watcher, rebuilding on change."""

    def __init__(
        self,
        cfg: RtcWatch,
        shutdown: threading.Event,
        build_done: Callable[[], None] | None = None,
    ) -> None:
        self._events: queue.Queue[list[Path]] = queue.Queue(maxsize=1)
        self._ignores: queue.Queue[Path] = queue.Queue()
        self._shutdown = shutdown
        self._build_done = build_done
        self.ignored_paths: list[Path] = list(cfg.ignored_paths)
        self._watcher = build_watcher(self._on_event, cfg.paths)
        try:
            self._build = BuildSystem(cfg.build, self._ignores.put)
        except BaseException:
            self.close()
            raise

    def _on_event(self, paths: list[Path]) -> None:
        try:
            self._events.put_nowait(paths)
        except queue.Full:
            pass

    def _drain_ignores(self) -> None:
        while True:
            try:
                path = self._ignores.get_nowait()
            except queue.Empty:
                return
            self.update_ignore_list(path)

    def close(self) -> None:
        """Stop the filesystem watcher."""
        if self._watcher.is_alive():
            self._watcher.stop()
            self._watcher.join()

    def build(self) -> None:
        """Run a build."""
        self._build.build()

    def run(self) -> None:
        """Respond to changes until the shutdown event is set, then stop watching."""
        try:
            while True:
                self._drain_ignores()
                if self._shutdown.is_set():
                    break
                try:
                    paths = self._events.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    continue
                self.handle_watch_event(paths)
        finally:
            self.close()
        log.debug("watcher system has shut down")

    def handle_watch_event(self, paths: Iterable[str | os.PathLike[str]]) -> bool:
        """Rebuild if any of the changed paths is relevant; return whether a build ran."""
        for raw in paths:
            try:
                path = Path(raw).resolve(strict=True)
            except (OSError, RuntimeError):
                # Removed resources, such as old staging entries, are of no interest.
                continue
            if self.is_ignored(path):
                continue
            log.debug("change detected in %s", path)
            try:
                self._build.build()
            except Exception:
                pass
            if self._build_done is not None:
                self._build_done()
            return True
        return False

    def update_ignore_list(self, path: str | os.PathLike[str]) -> None:
        """Add a path, canonical where possible, to the ignore list."""
        try:
            resolved = Path(path).resolve(strict=True)
        except (OSError, RuntimeError):
            resolved = Path(path)
        if resolved not in self.ignored_paths:
            self.ignored_paths.append(resolved)

    def is_ignored(self, path: str | os.PathLike[str]) -> bool:
        """Whether the path lies under an ignored path or contains a blacklisted segment."""
        path = Path(path)
        if any(ancestor in self.ignored_paths for ancestor in (path, *path.parents)):
            return True
        return any(part in BLACKLIST for part in path.parts)