"""Coordination of worker shutdown.

`Closer` is the one object every worker and the dispatcher consult between tasks. Cancellation
is a one-way switch, and the completion counter tells the orchestrator when all workers are done.
"""

import logging
import threading

LOGGER = logging.getLogger(__name__)


class WaitGroup:
    """Counter that lets a thread wait until a set of operations finished."""

    def __init__(self, count: int = 0) -> None:
        if count < 0:
            msg = "WaitGroup counter cannot be negative."
            raise ValueError(msg)
        self._count = count
        self._cond = threading.Condition()

    @property
    def count(self) -> int:
        with self._cond:
            return self._count

    def add(self, delta: int = 1) -> None:
        with self._cond:
            if self._count + delta < 0:
                msg = "Negative WaitGroup counter."
                raise ValueError(msg)
            self._count += delta
            if self._count == 0:
                self._cond.notify_all()

    def done(self) -> None:
        self.add(-1)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the counter reaches zero.

        Returns `False` if the timeout expired first.
        """
        with self._cond:
            return self._cond.wait_for(lambda: self._count == 0, timeout=timeout)


class Closer(WaitGroup):
    """Broadcast-once cancellation together with a completion counter.

    The counter starts at the number of workers; every worker calls `done` on exit.
    """

    def __init__(self, count: int) -> None:
        super().__init__(count=count)
        self._cancelled = threading.Event()
        self._signal_lock = threading.Lock()

    def signal(self) -> bool:
        """Broadcast cancellation.

        Returns `True` only for the call that actually cancelled, repeated calls have no effect.
        """
        with self._signal_lock:
            if self._cancelled.is_set():
                return False
            self._cancelled.set()

        LOGGER.info("Cancellation signalled, workers will stop after finishing current task.")
        return True

    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()
