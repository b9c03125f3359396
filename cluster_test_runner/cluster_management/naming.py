"""Naming of workers and cluster instances.

Every provisioning attempt gets its own prefix that namespaces all docker resources
(containers, networks) it creates. The prefix combines a random per-process salt with
a counter, so prefixes of concurrently running processes don't collide either.
"""

import random
import threading


class Counter:
    """Thread-safe monotonic counter."""

    def __init__(self, start: int = 0) -> None:
        self._value = start
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            self._value += 1
            return self._value


class PrefixGenerator:
    """Source of unique cluster prefixes, e.g. `test-042-3`."""

    def __init__(self, base: str = "test-", salt: int | None = None) -> None:
        self.base = base
        self.salt = random.randrange(1000) if salt is None else salt
        self._counter = Counter()

    def next_prefix(self) -> str:
        return f"{self.base}{self.salt:03d}-{self._counter.next()}"
