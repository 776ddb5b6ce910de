"""
Single-worker sequential work queue.

Every pipeline stage is submitted to the same WorkQueue so stages never run
concurrently and the state handed from one stage to the next needs no
locking. A second, independent instance runs short probe tasks.

- Tasks execute one at a time, in submission order, on a dedicated thread
- abort() is cooperative: the running task polls is_aborting
- A failing task is captured, the rest of the queue is discarded
"""

import logging
import threading
import time
from collections import deque
from datetime import timedelta
from typing import Callable, Deque, List, Optional

from vss_migrate.models import QueueStatus


logger = logging.getLogger(__name__)

# How long close() waits for the worker thread
WORKER_JOIN_TIMEOUT = 5.0  # seconds


class WorkItem:
    """A queued unit of work."""

    def __init__(self, task: Callable[["WorkQueue"], None], description: Optional[str] = None):
        self.task = task
        self.description = description or getattr(task, "__name__", "task")

    def __repr__(self) -> str:
        return f"WorkItem({self.description!r})"


class WorkQueue:
    """
    FIFO of tasks executed by one worker thread.

    A task is any callable taking the queue as its only argument, which lets
    it report progress through last_status and poll is_aborting at its safe
    points.
    """

    def __init__(self, name: str = "work"):
        """
        Initialize work queue.

        Args:
            name: Name used for the worker thread and in log messages
        """
        self.name = name

        self._cond = threading.Condition()
        self._pending: Deque[WorkItem] = deque()
        self._current: Optional[WorkItem] = None
        self._thread: Optional[threading.Thread] = None
        self._closed = False

        # Busy period tracking
        self._busy = False
        self._busy_since = 0.0
        self._active_seconds = 0.0
        self._aborting = False

        # Outcome of the last busy period
        self._last_aborted = False
        self._last_failed = False

        self._last_status: Optional[str] = None
        self._exceptions: List[BaseException] = []
        self._idle_listeners: List[Callable[[], None]] = []

    # Observables

    @property
    def is_idle(self) -> bool:
        return not self._busy

    @property
    def is_aborting(self) -> bool:
        return self._aborting

    @property
    def last_status(self) -> Optional[str]:
        return self._last_status

    @last_status.setter
    def last_status(self, value: Optional[str]) -> None:
        self._last_status = value

    @property
    def active_time(self) -> timedelta:
        """Cumulative time spent busy, excluding idle gaps."""
        with self._cond:
            seconds = self._active_seconds
            if self._busy:
                seconds += time.monotonic() - self._busy_since
        return timedelta(seconds=seconds)

    def status(self) -> QueueStatus:
        """Get an immutable snapshot of the queue."""
        active_time = self.active_time
        with self._cond:
            return QueueStatus(
                name=self.name,
                is_idle=not self._busy,
                is_aborting=self._aborting,
                pending=len(self._pending),
                last_status=self._last_status,
                active_time=active_time,
                last_aborted=self._last_aborted,
                last_failed=self._last_failed,
            )

    # Listeners

    def add_idle_listener(self, listener: Callable[[], None]) -> None:
        """
        Register a callback fired once per busy -> idle transition.

        Listeners run on the worker thread after the queue has become idle.
        """
        with self._cond:
            self._idle_listeners.append(listener)

    def remove_idle_listener(self, listener: Callable[[], None]) -> None:
        with self._cond:
            if listener in self._idle_listeners:
                self._idle_listeners.remove(listener)

    # Control

    def submit(self, task: Callable[["WorkQueue"], None], description: Optional[str] = None) -> bool:
        """
        Append a task to the tail of the queue.

        Args:
            task: Callable taking this queue as its argument
            description: Optional description for logs

        Returns:
            True if queued, False if rejected because an abort is in progress
        """
        item = WorkItem(task, description)

        with self._cond:
            if self._closed:
                raise RuntimeError(f"Work queue '{self.name}' is closed")

            if self._aborting:
                logger.warning(f"[{self.name}] Abort in progress, rejected: {item.description}")
                return False

            if not self._busy:
                self._busy = True
                self._busy_since = time.monotonic()
                self._last_aborted = False
                self._last_failed = False

            self._pending.append(item)
            self._ensure_worker()
            self._cond.notify_all()

        logger.debug(f"[{self.name}] Queued: {item.description}")
        return True

    def abort(self) -> None:
        """
        Stop the running task at its next checkpoint and drop queued tasks.

        Has no effect on an idle queue. Once issued it holds until the queue
        next becomes idle.
        """
        with self._cond:
            if not self._busy:
                return
            if not self._aborting:
                logger.info(f"[{self.name}] Abort requested, discarding {len(self._pending)} queued task(s)")
            self._aborting = True
            self._last_aborted = True
            self._pending.clear()
            self._cond.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no task is running or queued.

        Args:
            timeout: Maximum seconds to wait (None waits forever)

        Returns:
            True if the queue is idle, False on timeout
        """
        if self._thread is not None and threading.current_thread() is self._thread:
            raise RuntimeError("wait_idle() called from the queue's own worker")

        with self._cond:
            return self._cond.wait_for(lambda: not self._busy, timeout=timeout)

    def fetch_exceptions(self) -> Optional[List[BaseException]]:
        """
        Drain captured task failures.

        Returns:
            List of exceptions, or None if nothing was captured since last call
        """
        with self._cond:
            if not self._exceptions:
                return None
            exceptions = self._exceptions
            self._exceptions = []
            return exceptions

    def close(self) -> None:
        """Abort outstanding work and stop the worker thread."""
        self.abort()
        with self._cond:
            self._closed = True
            self._cond.notify_all()
            thread = self._thread

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=WORKER_JOIN_TIMEOUT)
            if thread.is_alive():
                logger.warning(f"[{self.name}] Worker did not stop gracefully")

    # Worker

    def _ensure_worker(self) -> None:
        """Start the worker thread on first use (caller holds the lock)."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._thread = threading.Thread(
            target=self._worker_loop,
            name=f"WorkQueue-{self.name}",
            daemon=True
        )
        self._thread.start()

    def _worker_loop(self) -> None:
        """Run queued tasks until the queue is closed."""
        while True:
            with self._cond:
                while not self._pending and not self._closed:
                    self._cond.wait()
                if not self._pending:
                    return
                item = self._pending.popleft()
                self._current = item

            self._run_item(item)

            with self._cond:
                self._current = None
                if self._aborting:
                    self._pending.clear()
                went_idle = not self._pending
                if went_idle:
                    self._busy = False
                    self._aborting = False
                    self._active_seconds += time.monotonic() - self._busy_since
                    listeners = list(self._idle_listeners)
                    self._cond.notify_all()

            if went_idle:
                self._fire_idle(listeners)

    def _run_item(self, item: WorkItem) -> None:
        logger.debug(f"[{self.name}] Running: {item.description}")
        try:
            item.task(self)
        except Exception as e:
            logger.error(f"[{self.name}] Task failed: {item.description}: {e}", exc_info=True)
            with self._cond:
                self._exceptions.append(e)
                self._last_failed = True
                self._aborting = True
                self._pending.clear()

    def _fire_idle(self, listeners: List[Callable[[], None]]) -> None:
        logger.debug(f"[{self.name}] Idle")
        for listener in listeners:
            try:
                listener()
            except Exception as e:
                logger.error(f"[{self.name}] Idle listener failed: {e}", exc_info=True)
                with self._cond:
                    self._exceptions.append(e)
