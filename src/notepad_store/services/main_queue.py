"""Work queue owned by the interactive context."""

import logging
import queue
import threading
import time
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class MainQueue:
    """FIFO of callables executed on the interactive thread.

    Background workers ``post()`` merges and completion callbacks here; the
    thread that owns the primary handle runs them with ``drain()``. The
    owner is the thread that created the queue.
    """

    def __init__(self):
        self._queue: "queue.Queue[Callable[[], Any]]" = queue.Queue()
        self.owner = threading.get_ident()

    def is_owner(self) -> bool:
        """True when called from the interactive thread."""
        return threading.get_ident() == self.owner

    def post(self, fn: Callable[[], Any]) -> None:
        """Schedule ``fn`` to run on the interactive thread."""
        self._queue.put(fn)

    def pending(self) -> int:
        """Approximate number of queued callables."""
        return self._queue.qsize()

    def drain(self, timeout: Optional[float] = None) -> int:
        """Run queued callables in order until the queue is empty.

        Args:
            timeout: Seconds to wait for the first item when the queue is
                empty. None or 0 returns immediately.

        Returns:
            Number of callables executed.

        Raises:
            RuntimeError: Called from a thread other than the owner.
        """
        if not self.is_owner():
            raise RuntimeError("MainQueue.drain() must run on the interactive thread")
        executed = 0
        deadline = time.monotonic() + timeout if timeout else None
        while True:
            try:
                if executed == 0 and deadline is not None:
                    fn = self._queue.get(timeout=max(0.0, deadline - time.monotonic()))
                else:
                    fn = self._queue.get_nowait()
            except queue.Empty:
                return executed
            try:
                fn()
            finally:
                self._queue.task_done()
            executed += 1
