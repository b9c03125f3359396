"""Selection of tasks and their dispatching to workers.

Tasks are discovered once, before any worker starts. Each task gets its kind at discovery time,
so workers don't need to inspect the package again. Slow tasks are moved to the front, so they
don't end up running alone at the end of the run.
"""

import dataclasses
import enum
import logging
import pathlib as pl
import threading
import typing as tp

from cluster_test_runner.cluster_management import closer as closer_mod
from cluster_test_runner.cluster_management import common
from cluster_test_runner.utils import go_packages

LOGGER = logging.getLogger(__name__)

# How often blocked channel operations re-check cancellation
POLL_INTERVAL = 0.1


class ConfigurationError(Exception):
    pass


class TaskKind(enum.Enum):
    COMMON = "common"
    CUSTOM_CLUSTER = "custom_cluster"
    NO_CONTENT = "no_content"
    SPECIAL_CASED = "special_cased"


@dataclasses.dataclass(frozen=True)
class Task:
    identifier: str
    kind: TaskKind
    directory: pl.Path = pl.Path(".")

    @property
    def is_common(self) -> bool:
        return self.kind == TaskKind.COMMON

    @property
    def compose_file(self) -> pl.Path:
        return self.directory / go_packages.COMPOSE_FILE_NAME


class DiscoverySource(tp.Protocol):
    def list_candidates(self) -> list[go_packages.PackageCandidate]: ...

    def find_dirs_with_test(self, test_name: str) -> set[pl.Path]: ...


def _contains_any(identifier: str, keywords: tp.Iterable[str]) -> bool:
    return any(k in identifier for k in keywords)


def get_task_kind(candidate: go_packages.PackageCandidate) -> TaskKind:
    if not candidate.has_test_files:
        return TaskKind.NO_CONTENT
    if _contains_any(candidate.import_path, common.SPECIAL_PACKAGES):
        return TaskKind.SPECIAL_CASED
    if candidate.has_compose_file:
        return TaskKind.CUSTOM_CLUSTER
    return TaskKind.COMMON


def is_slow(task: Task) -> bool:
    return _contains_any(task.identifier, common.SLOW_PACKAGES)


def move_slow_to_front(tasks: tp.Iterable[Task]) -> list[Task]:
    """Move slow tasks to the front, keeping the relative order within both groups."""
    tasks = list(tasks)
    slow = [t for t in tasks if is_slow(t)]
    rest = [t for t in tasks if not is_slow(t)]
    return [*slow, *rest]


def discover(source: DiscoverySource, *, pkg: str = "", test: str = "") -> list[Task]:
    """Discover tasks, apply the filters and order the tasks for dispatching."""
    if pkg and test:
        msg = "Both pkg and test can't be set."
        raise ConfigurationError(msg)

    limit_to = source.find_dirs_with_test(test) if test else set()

    tasks = []
    for candidate in source.list_candidates():
        if pkg and not candidate.import_path.endswith(pkg):
            continue
        if test:
            if candidate.directory.resolve() not in limit_to:
                continue
            LOGGER.info(f"Found package for {test}: {candidate.import_path}")

        tasks.append(
            Task(
                identifier=candidate.import_path,
                kind=get_task_kind(candidate),
                directory=candidate.directory,
            )
        )

    tasks = move_slow_to_front(tasks)
    if not tasks:
        msg = "Couldn't find any packages."
        raise ConfigurationError(msg)

    for task in tasks:
        LOGGER.info(f"Found valid task: {task.identifier} kind: {task.kind.value}")
    LOGGER.info(f"Running tests for {len(tasks)} packages.")
    return tasks


class TaskChannel:
    """Unbuffered channel; a send completes only when a worker takes the task."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._task: Task | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def send(self, task: Task, closer: closer_mod.Closer) -> bool:
        """Offer the task to workers and wait until one of them takes it.

        Returns `False` if the task was withdrawn because of cancellation.
        """
        with self._cond:
            if self._closed:
                msg = "Send on closed channel."
                raise RuntimeError(msg)
            self._cond.wait_for(lambda: self._task is None)
            if closer.is_cancelled():
                return False

            self._task = task
            self._cond.notify_all()

            while self._task is task:
                if closer.is_cancelled():
                    self._task = None
                    self._cond.notify_all()
                    return False
                self._cond.wait(timeout=POLL_INTERVAL)

            return True

    def recv(self, closer: closer_mod.Closer) -> Task | None:
        """Take a task; `None` when the channel is closed or the run was cancelled."""
        with self._cond:
            while True:
                if closer.is_cancelled():
                    return None
                if self._task is not None:
                    task = self._task
                    self._task = None
                    self._cond.notify_all()
                    return task
                if self._closed:
                    return None
                self._cond.wait(timeout=POLL_INTERVAL)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


def dispatch(tasks: tp.Sequence[Task], channel: TaskChannel, closer: closer_mod.Closer) -> int:
    """Send tasks to workers one by one, stop early on cancellation.

    The channel is always closed at the end. Returns the number of delivered tasks.
    """
    delivered = 0
    try:
        for task in tasks:
            if not channel.send(task, closer):
                LOGGER.info(
                    f"Dispatch cancelled, {len(tasks) - delivered} packages were not sent."
                )
                break
            delivered += 1
            LOGGER.info(f"Sent {delivered}/{len(tasks)} packages for processing.")
    finally:
        channel.close()

    return delivered
