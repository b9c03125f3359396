"""Cancellation of a test run by the operator.

The orchestrator only knows the `CancellationSource` interface. `SignalCancellationSource`
binds it to SIGINT / SIGTERM of the current process.
"""

import contextlib
import logging
import os
import signal
import threading
import typing as tp

from cluster_test_runner.cluster_management import closer as closer_mod

LOGGER = logging.getLogger(__name__)

# Interrupt number that terminates the process immediately
FORCE_EXIT_AT = 3
FORCE_EXIT_CODE = 1


class CancellationSource:
    """Source of operator cancellation requests."""

    def bind(self, closer: closer_mod.Closer) -> None:
        """Start forwarding cancellation requests to the `closer`."""

    def unbind(self) -> None:
        """Stop forwarding cancellation requests."""

    @contextlib.contextmanager
    def bound(self, closer: closer_mod.Closer) -> tp.Iterator[None]:
        self.bind(closer)
        try:
            yield
        finally:
            self.unbind()


class InterruptCounter:
    """Translate a sequence of interrupts into cancellation.

    The first interrupt signals the `closer`, the second one does nothing new, the third one
    terminates the process without any cleanup, as the cleanup itself can hang.
    """

    def __init__(
        self,
        closer: closer_mod.Closer,
        exit_func: tp.Callable[[int], tp.Any] = os._exit,
    ) -> None:
        self.closer = closer
        self.exit_func = exit_func
        self.count = 0
        self._lock = threading.Lock()

    def interrupt(self) -> None:
        with self._lock:
            self.count += 1
            count = self.count

        if count >= FORCE_EXIT_AT:
            LOGGER.error(f"Interrupted {count} times, exiting without cleanup.")
            self.exit_func(FORCE_EXIT_CODE)
            return

        if count > 1:
            LOGGER.warning(
                f"Interrupted again; interrupt {FORCE_EXIT_AT - count} more time(s) to exit "
                "without cleanup."
            )
        else:
            LOGGER.warning("Interrupted, waiting for running tests to finish.")
        self.closer.signal()


class SignalCancellationSource(CancellationSource):
    """Cancellation source driven by OS signals.

    Must be bound from the main thread, as only the main thread can install signal handlers.
    """

    signals: tp.ClassVar[tuple[signal.Signals, ...]] = (signal.SIGINT, signal.SIGTERM)

    def __init__(self, exit_func: tp.Callable[[int], tp.Any] = os._exit) -> None:
        self.exit_func = exit_func
        self.counter: InterruptCounter | None = None
        self._orig_handlers: dict[signal.Signals, tp.Any] = {}

    def _handler(self, signum: int, frame: tp.Any) -> None:  # noqa: ARG002
        if self.counter is not None:
            self.counter.interrupt()

    def bind(self, closer: closer_mod.Closer) -> None:
        self.counter = InterruptCounter(closer=closer, exit_func=self.exit_func)
        for signum in self.signals:
            self._orig_handlers[signum] = signal.signal(signum, self._handler)

    def unbind(self) -> None:
        for signum, orig_handler in self._orig_handlers.items():
            signal.signal(signum, orig_handler)
        self._orig_handlers.clear()
        self.counter = None
