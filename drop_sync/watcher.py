"""Directory scanner for Drop Sync.

Walks the watched folder on a fixed interval using watchdog's directory
snapshots, picks files whose modification time is older than the quiet
period, and hands them to the dispatcher.  Optionally a watchdog observer
wakes the scanner early when matching files appear.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import threading
import time
from collections.abc import Callable
from typing import Any

from watchdog.events import (
    FileCreatedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from watchdog.utils.dirsnapshot import DirectorySnapshot

from drop_sync.dispatcher import Dispatcher
from drop_sync.errors import DiscoveryError
from drop_sync.tasks import FileTask, TaskRegistry

logger = logging.getLogger(__name__)


class FileFilter:
    """Suffix and exclude-pattern filter applied to file names."""

    def __init__(self, suffix: str = "", exclude_patterns: list[str] | None = None):
        self.suffix = suffix.lower()
        self.exclude_patterns = exclude_patterns or []

    def matches(self, path: str) -> bool:
        name = os.path.basename(path)
        for pattern in self.exclude_patterns:
            if fnmatch.fnmatch(name.lower(), pattern.lower()):
                logger.debug("Excluding %s (matches %s)", name, pattern)
                return False
        if not self.suffix:
            return True
        return os.path.splitext(name)[1].lower() == self.suffix


class ScanTrigger(FileSystemEventHandler):
    """Watchdog handler that wakes the scanner when a matching file changes."""

    def __init__(self, file_filter: FileFilter, wake: threading.Event):
        super().__init__()
        self._filter = file_filter
        self._wake = wake

    def _nudge(self, path: str) -> None:
        if self._filter.matches(path):
            logger.debug("Change detected: %s", path)
            self._wake.set()

    def on_created(self, event: FileCreatedEvent) -> None:  # type: ignore[override]
        if not event.is_directory:
            self._nudge(event.src_path)

    def on_modified(self, event: FileModifiedEvent) -> None:  # type: ignore[override]
        if not event.is_directory:
            self._nudge(event.src_path)

    def on_moved(self, event: FileMovedEvent) -> None:  # type: ignore[override]
        if not event.is_directory:
            self._nudge(event.dest_path)


class Watcher:
    """
    Periodic scanner feeding stable files into the dispatcher.

    Usage:
        watcher = Watcher(root, registry, dispatcher, suffix=".pdf")
        watcher.start()
        ...
        watcher.stop()
    """

    def __init__(
        self,
        root_path: str,
        registry: TaskRegistry,
        dispatcher: Dispatcher,
        suffix: str = "",
        walk_interval: float = 30,
        prepared_time: float = 60,
        exclude_patterns: list[str] | None = None,
        skip_dirs: list[str] | None = None,
        watch_events: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.root_path = os.path.abspath(root_path)
        self._registry = registry
        self._dispatcher = dispatcher
        self._filter = FileFilter(suffix, exclude_patterns)
        self.walk_interval = walk_interval
        self.prepared_time = prepared_time
        self._skip_dirs = [os.path.abspath(d) for d in (skip_dirs or [])]
        self._watch_events = watch_events
        self._clock = clock
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: threading.Thread | None = None
        self._observer: Any | None = None
        self._skew_warned: dict[str, int] = {}
        self.error: DiscoveryError | None = None
        self.cycles = 0

    # ---- scanning ----

    def _skipped(self, path: str) -> bool:
        return any(
            path == d or path.startswith(d + os.sep) for d in self._skip_dirs
        )

    def _snapshot(self) -> DirectorySnapshot:
        if not os.path.isdir(self.root_path):
            raise DiscoveryError(self.root_path, "not a directory")
        try:
            return DirectorySnapshot(self.root_path, recursive=True)
        except OSError as exc:
            raise DiscoveryError(self.root_path, str(exc)) from exc

    def scan_once(self) -> list[FileTask]:
        """Run one discovery cycle and return the tasks it enqueued."""
        snapshot = self._snapshot()
        now = self._clock()
        enqueued: list[FileTask] = []
        seen_skew: dict[str, int] = {}

        for path in sorted(snapshot.paths):
            if snapshot.isdir(path) or self._skipped(path):
                continue
            if not self._filter.matches(path):
                continue

            st = snapshot.stat_info(path)
            mtime = st.st_mtime
            if mtime > now:
                seen_skew[path] = st.st_mtime_ns
                if self._skew_warned.get(path) != st.st_mtime_ns:
                    logger.warning(
                        "%s has a modification time in the future; waiting.", path
                    )
                continue
            if now < mtime + self.prepared_time:
                logger.debug("%s not prepared.", path)
                continue
            if not self._registry.try_insert(path):
                continue

            task = FileTask(path=path, last_modified=st.st_mtime_ns, size=st.st_size)
            if not self._dispatcher.enqueue(task):
                # Dispatcher closed while we were blocked on a full queue
                self._registry.release(path)
                break
            enqueued.append(task)
            logger.info("Queued %s (%d bytes)", path, st.st_size)

        self._skew_warned = seen_skew
        self.cycles += 1
        return enqueued

    def run(self) -> None:
        """Scan until stopped or until the root can no longer be traversed."""
        logger.info(
            "Watching '%s' (suffix=%r, interval=%ss, prepared=%ss)",
            self.root_path,
            self._filter.suffix,
            self.walk_interval,
            self.prepared_time,
        )
        while not self._stop.is_set():
            logger.debug("Searching for new files...")
            try:
                self.scan_once()
            except DiscoveryError as exc:
                self.error = exc
                logger.error("Discovery halted: %s", exc)
                return
            self._wake.wait(timeout=self.walk_interval)
            self._wake.clear()

    # ---- lifecycle ----

    def start(self) -> None:
        """Start scanning in a background thread."""
        if not os.path.isdir(self.root_path):
            logger.error("Watch folder does not exist: %s", self.root_path)
            raise FileNotFoundError(f"Watch folder does not exist: {self.root_path}")

        self._stop.clear()
        self.error = None
        if self._watch_events:
            observer = Observer()
            observer.schedule(
                ScanTrigger(self._filter, self._wake), self.root_path, recursive=True
            )
            observer.start()
            self._observer = observer
        self._thread = threading.Thread(target=self.run, daemon=True, name="Watcher")
        self._thread.start()

    def stop(self) -> None:
        """Stop scanning and release resources."""
        self._stop.set()
        self._wake.set()
        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        logger.info("Watcher stopped.")

    @property
    def is_running(self) -> bool:
        """Return whether the scan loop is currently active."""
        return self._thread is not None and self._thread.is_alive()
