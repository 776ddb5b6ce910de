"""
Watchdog-based monitoring of the source database directory.

Drives continuous one-way sync: a change to the source is reported once the
directory has been quiet for the settle delay, so a check-in that touches
many database files triggers a single resumed run.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Iterable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer


logger = logging.getLogger(__name__)

# Files written by vss-migrate itself
IGNORED_SUFFIXES = (".lock", ".tmp")


class DebounceTracker:
    """
    Coalesces bursts of file events.

    Events are recorded with touch(); the burst is settled once no event
    arrived for the debounce delay.
    """

    def __init__(self, debounce_ms: int = 2000):
        """
        Initialize debounce tracker.

        Args:
            debounce_ms: Quiet period in milliseconds
        """
        self.debounce_seconds = debounce_ms / 1000.0
        self._last_event: Optional[float] = None
        self._count = 0
        self._lock = threading.Lock()

    @property
    def pending(self) -> bool:
        return self._last_event is not None

    @property
    def event_count(self) -> int:
        """Events in the current burst."""
        return self._count

    def touch(self, now: Optional[float] = None) -> None:
        with self._lock:
            self._last_event = time.monotonic() if now is None else now
            self._count += 1

    def settle(self, now: Optional[float] = None) -> bool:
        """
        Check whether a burst has settled, and consume it if so.

        Returns:
            True once per settled burst
        """
        now = time.monotonic() if now is None else now
        with self._lock:
            if self._last_event is None:
                return False
            if now - self._last_event < self.debounce_seconds:
                return False
            self._last_event = None
            self._count = 0
            return True


class SourceWatcher(FileSystemEventHandler):
    """Watches a source directory tree for changes."""

    def __init__(
        self,
        directory: Path,
        debounce_ms: int = 2000,
        ignored_names: Iterable[str] = (),
    ):
        """
        Initialize source watcher.

        Args:
            directory: Source database directory
            debounce_ms: Quiet period before a change is reported
            ignored_names: File names whose changes are ignored
        """
        super().__init__()
        self.directory = Path(directory)
        self.debounce = DebounceTracker(debounce_ms)
        self.ignored_names = {name.lower() for name in ignored_names}
        self._observer: Optional[Observer] = None

    def _is_ignored(self, path: str) -> bool:
        name = Path(path).name.lower()
        return name in self.ignored_names or name.endswith(IGNORED_SUFFIXES)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory and event.event_type == "modified":
            return

        path = event.src_path
        if isinstance(path, bytes):
            path = path.decode("utf-8", errors="replace")
        if self._is_ignored(path):
            return

        logger.debug(f"Source {event.event_type}: {path}")
        self.debounce.touch()

    def has_settled_change(self) -> bool:
        """True once for each burst of changes that has settled."""
        return self.debounce.settle()

    def start(self) -> None:
        """
        Start watching the source directory.

        Raises:
            FileNotFoundError: If the directory does not exist
        """
        if self._observer is not None:
            logger.warning(f"Already watching {self.directory}")
            return

        if not self.directory.is_dir():
            raise FileNotFoundError(f"Source directory does not exist: {self.directory}")

        self._observer = Observer()
        self._observer.schedule(self, str(self.directory), recursive=True)
        self._observer.start()
        logger.info(f"Watching {self.directory}")

    def stop(self) -> None:
        if self._observer is None:
            return

        try:
            self._observer.stop()
            self._observer.join(timeout=5.0)
        finally:
            self._observer = None
        logger.debug(f"Stopped watching {self.directory}")

    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()
