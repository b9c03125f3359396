"""Workers that run tasks on cluster instances.

Every worker owns at most one shared cluster instance, started lazily by the first common task the
worker receives and reused by all the following common tasks. Tasks with their own cluster
definition get a dedicated cluster instance that is stopped right after the task.

Worker states::

    IDLE -> PREPARING -> EXECUTING -> IDLE
    IDLE -> DRAINING -> STOPPING -> DONE       (channel closed or run cancelled)
    PREPARING / EXECUTING -> FAILED -> DRAINING  (unrecoverable error)
"""

import enum
import logging
import pathlib as pl
import time

from cluster_test_runner.cluster_management import closer as closer_mod
from cluster_test_runner.cluster_management import cluster_lifecycle
from cluster_test_runner.cluster_management import common
from cluster_test_runner.cluster_management import naming
from cluster_test_runner.cluster_management import output_catcher
from cluster_test_runner.cluster_management import scheduler
from cluster_test_runner.cluster_management import special_packages
from cluster_test_runner.cluster_management import test_executor
from cluster_test_runner.utils import scheduling_log

LOGGER = logging.getLogger(__name__)


class WorkerState(enum.Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    EXECUTING = "executing"
    FAILED = "failed"
    DRAINING = "draining"
    STOPPING = "stopping"
    DONE = "done"


class Worker:
    """A single worker pulling tasks from the channel until it is closed or the run cancelled."""

    def __init__(
        self,
        worker_id: int,
        *,
        settings: common.RunSettings,
        channel: scheduler.TaskChannel,
        closer: closer_mod.Closer,
        lifecycle: cluster_lifecycle.ClusterLifecycle,
        executor: test_executor.GoTestExecutor,
        catcher: output_catcher.OutputCatcher,
        prefixes: naming.PrefixGenerator,
        special: special_packages.OneMillionProvisioner | None = None,
    ) -> None:
        self.worker_id = worker_id
        self.settings = settings
        self.channel = channel
        self.closer = closer
        self.lifecycle = lifecycle
        self.executor = executor
        self.catcher = catcher
        self.prefixes = prefixes
        self.special = special

        self.state = WorkerState.IDLE
        self.shared_prefix = ""
        self.tasks_done: list[str] = []
        self._stops = closer_mod.WaitGroup()
        self._log = scheduling_log.get_log_func(worker_id)

    def _set_state(self, state: WorkerState) -> None:
        LOGGER.debug(f"w{self.worker_id}: {self.state.value} -> {state.value}")
        self._log(f"state {self.state.value} -> {state.value}")
        self.state = state

    def _stop(self, compose_file: pl.Path, prefix: str) -> None:
        if self.settings.keep_clusters:
            LOGGER.info(f"Keeping cluster '{prefix}' running.")
            return
        self._log(f"stopping cluster '{prefix}'")
        self.lifecycle.stop_cluster(
            compose_file=compose_file, prefix=prefix, wait_group=self._stops
        )

    def _ensure_shared_cluster(self) -> str:
        """Start the shared cluster instance if it is not running yet."""
        if self.shared_prefix:
            return self.shared_prefix

        prefix = self.prefixes.next_prefix()
        # Set before starting, so even partially started cluster gets stopped
        self.shared_prefix = prefix
        self._log(f"starting shared cluster '{prefix}'")
        self.lifecycle.start_cluster(self.settings.default_compose_file, prefix)
        # Wait for cluster to be healthy
        self.lifecycle.wait_for_login(prefix)
        return prefix

    def _run_common(self, task: scheduler.Task) -> None:
        prefix = self._ensure_shared_cluster()
        self._set_state(WorkerState.EXECUTING)
        self.executor.run(task.identifier, prefix, self.worker_id)

    def _run_custom(self, task: scheduler.Task) -> None:
        LOGGER.info(f"Bringing up cluster for package: {task.identifier}")
        prefix = self.prefixes.next_prefix()
        self._log(f"starting custom cluster '{prefix}' for {task.identifier}")
        try:
            if task.kind == scheduler.TaskKind.SPECIAL_CASED and self.special is not None:
                self.special.provision(task=task, prefix=prefix)
            else:
                self.lifecycle.start_cluster(task.compose_file, prefix)
                self.lifecycle.wait_for_health(prefix)
            self._set_state(WorkerState.EXECUTING)
            self.executor.run(task.identifier, prefix, self.worker_id)
        finally:
            self._stop(compose_file=task.compose_file, prefix=prefix)

    def process(self, task: scheduler.Task) -> None:
        """Prepare cluster for the task and run it."""
        if task.kind == scheduler.TaskKind.NO_CONTENT:
            LOGGER.debug(f"Skipping {task.identifier}, it has no tests.")
            return
        if task.is_common and self.settings.custom_only:
            LOGGER.debug(f"Skipping {task.identifier}, running only custom cluster tests.")
            return

        self._set_state(WorkerState.PREPARING)
        self._log(f"received {task.identifier}")
        if task.is_common:
            self._run_common(task)
        else:
            self._run_custom(task)
        self.tasks_done.append(task.identifier)

    def _drain(self) -> None:
        self._set_state(WorkerState.DRAINING)
        if self.shared_prefix:
            self._set_state(WorkerState.STOPPING)
            self._stop(compose_file=self.settings.default_compose_file, prefix=self.shared_prefix)
        self._stops.wait()
        self._set_state(WorkerState.DONE)

    def run(self) -> None:
        """Process tasks until the channel is closed or the run is cancelled.

        An error from preparing or running a task is re-raised after cleanup. The worker always
        reports itself done to the closer.
        """
        start = time.monotonic()
        try:
            while True:
                self._set_state(WorkerState.IDLE)
                task = self.channel.recv(self.closer)
                if task is None:
                    break
                try:
                    self.process(task)
                except Exception:
                    self._set_state(WorkerState.FAILED)
                    self._log(f"failed on {task.identifier}")
                    raise
        finally:
            try:
                self._drain()
            finally:
                self.catcher.took(self.worker_id, "DONE", time.monotonic() - start)
                self.closer.done()
