"""Resizable pool of worker threads that cooperate to shrink."""

from __future__ import annotations

import threading
from typing import Callable, Optional

from storagetap import logger


class ThreadPool:
    """Pool running copies of one function in threads.

    Growing starts new threads; shrinking relies on workers calling
    :meth:`terminate` periodically and exiting when it returns True.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._finished = threading.Condition(self._lock)
        self._num_procs = 0
        self._max_num_procs = 0
        self._running = 0
        self._fn: Optional[Callable[[], None]] = None

    def start(self, size: int, fn: Callable[[], None]) -> None:
        """Set the worker function and grow the pool to ``size`` threads."""
        self._fn = fn
        self.adjust(size)

    def _run(self, fn: Callable[[], None]) -> None:
        try:
            fn()
        finally:
            with self._finished:
                self._running -= 1
                self._finished.notify_all()

    def adjust(self, size: int) -> None:
        """Resize the pool to ``size`` threads."""
        if size < 0:
            raise ValueError("pool size cannot be negative")
        with self._lock:
            logger.debugf("Current size=%s, current maximum size=%s, requested size=%s",
                          self._num_procs, self._max_num_procs, size)
            if self._num_procs < size and self._fn is None:
                raise RuntimeError("pool has no worker function; call start first")
            self._max_num_procs = size
            if self._num_procs < self._max_num_procs:
                for _ in range(self._max_num_procs - self._num_procs):
                    self._running += 1
                    threading.Thread(target=self._run, args=(self._fn,),
                                     daemon=True).start()
                self._num_procs = size

    def terminate(self) -> bool:
        """Return True if the calling worker should exit."""
        with self._lock:
            if self._num_procs > self._max_num_procs:
                self._num_procs -= 1
                logger.debugf("Terminating. Current size=%s, current maximum size=%s",
                              self._num_procs, self._max_num_procs)
                return True
            return False

    def num_procs(self) -> int:
        """Return the current size of the pool."""
        with self._lock:
            return self._num_procs

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait until every started thread has returned; False on timeout."""
        with self._finished:
            return self._finished.wait_for(lambda: self._running == 0, timeout)


def create() -> ThreadPool:
    """Return a new, empty pool."""
    return ThreadPool()