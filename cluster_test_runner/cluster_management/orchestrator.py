"""Top level of a test run.

The run goes through these steps:

* build the binaries (`make install`)
* discover tasks; configuration errors abort the run before any worker starts
* start workers and the dispatcher, wait until all workers are done
* print the timeline, the caught failure output and the final status

An error returned by any worker cancels the whole run; the other workers finish their current
task, stop their clusters and exit.
"""

import concurrent.futures
import logging
import pathlib as pl
import tempfile
import threading
import time
import typing as tp

from cluster_test_runner.cluster_management import closer as closer_mod
from cluster_test_runner.cluster_management import cluster_lifecycle
from cluster_test_runner.cluster_management import common
from cluster_test_runner.cluster_management import interrupts
from cluster_test_runner.cluster_management import naming
from cluster_test_runner.cluster_management import output_catcher
from cluster_test_runner.cluster_management import scheduler
from cluster_test_runner.cluster_management import special_packages
from cluster_test_runner.cluster_management import test_executor
from cluster_test_runner.cluster_management import worker_pool
from cluster_test_runner.utils import configuration
from cluster_test_runner.utils import go_packages
from cluster_test_runner.utils import helpers

LOGGER = logging.getLogger(__name__)


def validate_settings(settings: common.RunSettings) -> None:
    """Check settings that can't be combined or are out of range."""
    if settings.pkg and settings.test:
        msg = "Both pkg and test can't be set."
        raise scheduler.ConfigurationError(msg)
    if settings.concurrency < 1:
        msg = f"Invalid concurrency '{settings.concurrency}': must be >= 1"
        raise scheduler.ConfigurationError(msg)
    if settings.count < 0:
        msg = f"Invalid count '{settings.count}': must be >= 0"
        raise scheduler.ConfigurationError(msg)


def build(base_dir: pl.Path) -> None:
    """Build and install the binaries the clusters run."""
    LOGGER.info(f"Running `make install` in '{base_dir}'.")
    helpers.run_command(["make", "install"], workdir=base_dir)


class Orchestrator:
    """Run all the selected tasks on a pool of workers.

    All the collaborators can be injected, the defaults talk to the real docker, go toolchain
    and OS signals.
    """

    def __init__(
        self,
        settings: common.RunSettings,
        *,
        source: scheduler.DiscoverySource | None = None,
        lifecycle: cluster_lifecycle.ClusterLifecycle | None = None,
        catcher: output_catcher.OutputCatcher | None = None,
        cancellation: interrupts.CancellationSource | None = None,
        prefixes: naming.PrefixGenerator | None = None,
        executor: test_executor.GoTestExecutor | None = None,
        build_func: tp.Callable[[pl.Path], tp.Any] = build,
    ) -> None:
        self.settings = settings
        self.source = source or go_packages.GoPackageSource(settings.base_dir)
        if lifecycle is None:
            lifecycle = (
                cluster_lifecycle.DryRunLifecycle()
                if settings.dry
                else cluster_lifecycle.ClusterLifecycle()
            )
        self.lifecycle = lifecycle
        self.catcher = catcher or output_catcher.OutputCatcher()
        self.cancellation = cancellation or interrupts.SignalCancellationSource()
        self.prefixes = prefixes or naming.PrefixGenerator(base=configuration.CLUSTER_PREFIX_BASE)
        self.executor = executor or test_executor.GoTestExecutor(
            self.catcher,
            base_dir=settings.base_dir,
            count=settings.count,
            run_test=settings.test,
            json_output=settings.json_output,
            dry=settings.dry,
        )
        self.build_func = build_func

        self.errors: list[BaseException] = []
        self._errors_lock = threading.Lock()

    def _get_module_path(self) -> str:
        """Return module path of the discovery source, if it has one."""
        module_path = getattr(self.source, "module_path", "")
        return module_path if isinstance(module_path, str) else ""

    def _record_error(self, err: BaseException) -> None:
        with self._errors_lock:
            self.errors.append(err)

    def _get_worker_done_callback(
        self, worker_id: int, closer: closer_mod.Closer
    ) -> tp.Callable[[concurrent.futures.Future], None]:
        def _done(fut: concurrent.futures.Future) -> None:
            err = fut.exception()
            if err is None:
                return
            LOGGER.error(f"Worker {worker_id} failed: {err}")  # noqa: TRY400
            self._record_error(err)
            closer.signal()

        return _done

    def _run_workers(self, tasks: list[scheduler.Task], work_dir: pl.Path) -> int:
        """Run the workers and the dispatcher, return number of dispatched tasks."""
        num_workers = self.settings.num_workers
        closer = closer_mod.Closer(num_workers)
        channel = scheduler.TaskChannel()
        special = special_packages.OneMillionProvisioner(
            lifecycle=self.lifecycle, work_dir=work_dir, dry=self.settings.dry
        )

        with (
            self.cancellation.bound(closer),
            concurrent.futures.ThreadPoolExecutor(
                max_workers=num_workers + 1, thread_name_prefix="worker"
            ) as pool,
        ):
            for worker_id in range(1, num_workers + 1):
                worker = worker_pool.Worker(
                    worker_id,
                    settings=self.settings,
                    channel=channel,
                    closer=closer,
                    lifecycle=self.lifecycle,
                    executor=self.executor,
                    catcher=self.catcher,
                    prefixes=self.prefixes,
                    special=special,
                )
                fut = pool.submit(worker.run)
                fut.add_done_callback(self._get_worker_done_callback(worker_id, closer))

            dispatcher = pool.submit(scheduler.dispatch, tasks, channel, closer)

            # Wait with timeout, so the main thread stays responsive to signals
            while not closer.wait(timeout=scheduler.POLL_INTERVAL):
                pass

            delivered = dispatcher.result()

        if closer.is_cancelled() and not self.errors:
            LOGGER.warning(f"Run was cancelled, {delivered}/{len(tasks)} packages dispatched.")
        return delivered

    def _print_status(self, start: float) -> bool:
        self.catcher.print_report()
        if self.errors:
            self.catcher.write_console(f"Got error: {self.errors[0]}.\nTests FAILED.\n".encode())
            return False

        took = helpers.format_duration(time.monotonic() - start)
        self.catcher.write_console(f"Tests PASSED. Time taken: {took}\n".encode())
        return True

    def clear(self) -> None:
        """Remove all the containers and networks left over by previous runs."""
        self.lifecycle.remove_all_test_clusters()

    def run(self) -> bool:
        """Run the tests, return `True` if all of them passed.

        Raises `ConfigurationError` when the settings or the discovered tasks don't allow
        running anything.
        """
        if self.settings.clear:
            self.clear()
            return True

        validate_settings(self.settings)

        start = time.monotonic()
        self.catcher.took(0, "START", 0)

        if self.settings.dry or self.settings.skip_build:
            LOGGER.info("Skipping build.")
        else:
            try:
                self.build_func(self.settings.base_dir)
            except RuntimeError as err:
                self._record_error(err)
                return self._print_status(start)
            self.catcher.took(0, "COMPILE", time.monotonic() - start)

        try:
            tasks = scheduler.discover(
                self.source, pkg=self.settings.pkg, test=self.settings.test
            )
            # Labels in the report are shown relative to the module path
            self.catcher.label_prefix = self.catcher.label_prefix or self._get_module_path()
        except RuntimeError as err:
            msg = f"Failed to list packages in '{self.settings.base_dir}': {err}"
            raise scheduler.ConfigurationError(msg) from err

        with tempfile.TemporaryDirectory(prefix="cluster-test-runner-") as tmp_dir:
            self._run_workers(tasks=tasks, work_dir=pl.Path(tmp_dir))

        return self._print_status(start)
