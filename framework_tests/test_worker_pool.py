import dataclasses
import pathlib as pl
import threading

import fakes
import pytest

from cluster_test_runner.cluster_management import closer as closer_mod
from cluster_test_runner.cluster_management import cluster_lifecycle
from cluster_test_runner.cluster_management import common
from cluster_test_runner.cluster_management import naming
from cluster_test_runner.cluster_management import scheduler
from cluster_test_runner.cluster_management import special_packages
from cluster_test_runner.cluster_management import test_executor
from cluster_test_runner.cluster_management import worker_pool
from cluster_test_runner.utils import configuration

TaskKind = scheduler.TaskKind


class FakeProvisioner(special_packages.OneMillionProvisioner):
    def __init__(self, lifecycle: cluster_lifecycle.ClusterLifecycle) -> None:
        super().__init__(lifecycle=lifecycle, work_dir=pl.Path("/nonexistent"))
        self.provisioned: list[tuple[str, str]] = []

    def provision(self, task, prefix):
        self.provisioned.append((task.identifier, prefix))


class Pool:
    """Workers together with their channel and closer."""

    def __init__(
        self,
        settings: common.RunSettings,
        lifecycle: fakes.FakeLifecycle,
        num_workers: int = 1,
        failing: tuple[str, ...] = (),
    ) -> None:
        self.catcher, self.console = fakes.get_catcher()
        self.closer = closer_mod.Closer(num_workers)
        self.channel = scheduler.TaskChannel()
        self.executor = fakes.FakeExecutor(self.catcher, failing=failing, sleep_secs=0.01)
        self.special = FakeProvisioner(lifecycle)
        prefixes = naming.PrefixGenerator(salt=7)
        self.workers = [
            worker_pool.Worker(
                i,
                settings=settings,
                channel=self.channel,
                closer=self.closer,
                lifecycle=lifecycle,
                executor=self.executor,
                catcher=self.catcher,
                prefixes=prefixes,
                special=self.special,
            )
            for i in range(1, num_workers + 1)
        ]
        self.errors: list[Exception] = []
        self._lock = threading.Lock()

    def _run_worker(self, worker: worker_pool.Worker) -> None:
        try:
            worker.run()
        except Exception as err:
            with self._lock:
                self.errors.append(err)
            self.closer.signal()

    def run(self, tasks: list[scheduler.Task]) -> int:
        threads = [threading.Thread(target=self._run_worker, args=(w,)) for w in self.workers]
        for t in threads:
            t.start()
        delivered = scheduler.dispatch(tasks, self.channel, self.closer)
        assert self.closer.wait(timeout=10)
        for t in threads:
            t.join(timeout=10)
        return delivered


def test_shared_cluster_per_worker(settings, lifecycle):
    """Every worker that received a common task starts and stops exactly one shared cluster."""
    pool = Pool(settings, lifecycle, num_workers=3)
    tasks = [fakes.get_task(f"pkg{i}") for i in range(5)]

    assert pool.run(tasks) == 5
    assert sorted(pool.executor.ran_pkgs) == sorted(t.identifier for t in tasks)

    busy = [w for w in pool.workers if w.tasks_done]
    idle = [w for w in pool.workers if not w.tasks_done]
    assert sorted(lifecycle.started_prefixes) == sorted(w.shared_prefix for w in busy)
    assert sorted(lifecycle.stopped_prefixes) == sorted(w.shared_prefix for w in busy)
    assert all(not w.shared_prefix for w in idle)
    assert all(s[0] == str(settings.default_compose_file) for s in lifecycle.started)
    assert all(w.state == worker_pool.WorkerState.DONE for w in pool.workers)
    assert not pool.errors


def test_shared_cluster_reused(settings, lifecycle):
    pool = Pool(settings, lifecycle)
    pool.run([fakes.get_task("a"), fakes.get_task("b"), fakes.get_task("c")])

    worker = pool.workers[0]
    assert lifecycle.started_prefixes == [worker.shared_prefix]
    assert lifecycle.logged_in == [worker.shared_prefix]
    assert {r[1] for r in pool.executor.ran} == {worker.shared_prefix}
    assert lifecycle.stopped_prefixes == [worker.shared_prefix]


def test_no_tasks(settings, lifecycle):
    pool = Pool(settings, lifecycle, num_workers=2)
    pool.channel.close()
    pool.run([])

    assert not lifecycle.started
    assert not lifecycle.stopped
    assert pool.closer.count == 0
    # Every worker reports that it is done
    assert [r.label for r in pool.catcher.records] == ["DONE", "DONE"]


def test_custom_cluster(settings, lifecycle):
    pool = Pool(settings, lifecycle)
    custom = fakes.get_task("ee/acl", kind=TaskKind.CUSTOM_CLUSTER)
    pool.run([fakes.get_task("dgraph"), custom])

    worker = pool.workers[0]
    custom_prefix = pool.executor.ran[1][1]
    assert custom_prefix != worker.shared_prefix
    assert lifecycle.started == [
        (str(settings.default_compose_file), worker.shared_prefix, ()),
        (str(custom.compose_file), custom_prefix, ()),
    ]
    assert lifecycle.health_checked == [custom_prefix]
    assert sorted(lifecycle.stopped_prefixes) == sorted([worker.shared_prefix, custom_prefix])


def test_unhealthy_custom_cluster(settings):
    lifecycle = fakes.FakeLifecycle(healthy=False)
    pool = Pool(settings, lifecycle)
    pool.run([fakes.get_task("ee/acl", kind=TaskKind.CUSTOM_CLUSTER)])

    # Health is only advisory, the tests run anyway
    assert pool.executor.ran_pkgs == ["example.com/project/ee/acl"]
    assert not pool.errors


def test_keep_clusters(settings, lifecycle):
    settings = dataclasses.replace(settings, keep_clusters=True)
    pool = Pool(settings, lifecycle)
    pool.run([fakes.get_task("dgraph"), fakes.get_task("ee/acl", kind=TaskKind.CUSTOM_CLUSTER)])

    assert len(lifecycle.started) == 2
    assert not lifecycle.stopped


def test_skipped_tasks(settings, lifecycle):
    settings = dataclasses.replace(settings, custom_only=True)
    pool = Pool(settings, lifecycle)
    pool.run([fakes.get_task("protos", kind=TaskKind.NO_CONTENT), fakes.get_task("dgraph")])

    assert not lifecycle.started
    assert not pool.executor.ran


def test_special_cased(settings, lifecycle):
    pool = Pool(settings, lifecycle)
    task = fakes.get_task("systest/1million", kind=TaskKind.SPECIAL_CASED)
    pool.run([task])

    prefix = pool.executor.ran[0][1]
    assert pool.special.provisioned == [(task.identifier, prefix)]
    assert not lifecycle.started
    assert lifecycle.stopped == [(str(task.compose_file), prefix)]


def test_failing_test(settings, lifecycle):
    """A failing test stops the worker, its cluster is still stopped."""
    pool = Pool(settings, lifecycle, failing=("example.com/project/b",))
    delivered = pool.run([fakes.get_task("a"), fakes.get_task("b"), fakes.get_task("c")])

    worker = pool.workers[0]
    assert delivered == 2
    assert len(pool.errors) == 1
    assert isinstance(pool.errors[0], test_executor.TestExecutionError)
    assert worker.tasks_done == ["example.com/project/a"]
    assert worker.state == worker_pool.WorkerState.DONE
    assert lifecycle.stopped_prefixes == [worker.shared_prefix]
    assert b"--- FAIL" in bytes(pool.catcher.failures.data)


def test_failed_start(settings):
    lifecycle = fakes.FakeLifecycle(fail_start=("ee/acl",))
    pool = Pool(settings, lifecycle)
    custom = fakes.get_task("ee/acl", kind=TaskKind.CUSTOM_CLUSTER)
    pool.run([custom])

    assert isinstance(pool.errors[0], cluster_lifecycle.ProvisioningError)
    assert not pool.executor.ran
    # Partially started cluster is stopped too
    assert lifecycle.stopped_prefixes == lifecycle.started_prefixes


def test_failed_login(settings):
    lifecycle = fakes.FakeLifecycle(fail_login=True)
    pool = Pool(settings, lifecycle)
    pool.run([fakes.get_task("dgraph")])

    assert isinstance(pool.errors[0], cluster_lifecycle.ReadinessError)
    assert not pool.executor.ran
    assert lifecycle.stopped_prefixes == lifecycle.started_prefixes


def test_scheduling_log(settings, lifecycle, monkeypatch: pytest.MonkeyPatch, tmp_path):
    log_file = tmp_path / "scheduling.log"
    monkeypatch.setattr(configuration, "SCHEDULING_LOG", log_file)
    pool = Pool(settings, lifecycle)
    pool.run([fakes.get_task("dgraph")])

    content = log_file.read_text()
    assert " on w1: received example.com/project/dgraph" in content
    assert f"starting shared cluster '{pool.workers[0].shared_prefix}'" in content
    assert "state stopping -> done" in content
