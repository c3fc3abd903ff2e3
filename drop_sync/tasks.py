"""Discovered files and the registry of files already queued or uploading."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field


@dataclass
class FileTask:
    """A file the watcher found stable and eligible for upload."""
    path: str
    last_modified: int  # st_mtime_ns at discovery
    size: int
    discovered_at: float = field(default_factory=time.time)


class TaskRegistry:
    """
    Thread-safe set of paths that are queued or being uploaded.

    Shared by the watcher (insert) and every upload worker (remove).
    A path released after a failure may carry a cooldown during which it
    cannot be inserted again.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._in_flight: set[str] = set()
        self._cooldown: dict[str, float] = {}  # path -> not-before (clock units)
        self._lock = threading.Lock()

    def try_insert(self, path: str) -> bool:
        """Register *path*; return False if it is present or cooling down."""
        with self._lock:
            if path in self._in_flight:
                return False
            not_before = self._cooldown.get(path)
            if not_before is not None:
                if self._clock() < not_before:
                    return False
                del self._cooldown[path]
            self._in_flight.add(path)
            return True

    def remove(self, path: str) -> None:
        """Forget *path* after a successful upload."""
        with self._lock:
            self._in_flight.discard(path)
            self._cooldown.pop(path, None)

    def release(self, path: str, cooldown: float = 0) -> None:
        """Forget *path* after a failure, blocking re-insertion for *cooldown* seconds."""
        with self._lock:
            self._in_flight.discard(path)
            if cooldown > 0:
                self._cooldown[path] = self._clock() + cooldown
            else:
                self._cooldown.pop(path, None)

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return path in self._in_flight

    def __len__(self) -> int:
        with self._lock:
            return len(self._in_flight)

    @property
    def paths(self) -> list[str]:
        with self._lock:
            return sorted(self._in_flight)
