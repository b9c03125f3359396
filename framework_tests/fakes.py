"""In-memory replacements of docker, go toolchain and cluster endpoints."""

import datetime
import io
import itertools
import pathlib as pl
import threading
import time
import typing as tp

import hypothesis
from docker.errors import APIError

from cluster_test_runner.cluster_management import closer as closer_mod
from cluster_test_runner.cluster_management import cluster_lifecycle
from cluster_test_runner.cluster_management import interrupts
from cluster_test_runner.cluster_management import output_catcher
from cluster_test_runner.cluster_management import scheduler
from cluster_test_runner.cluster_management import test_executor
from cluster_test_runner.utils import go_packages


def hypothesis_settings(max_examples: int = 100) -> tp.Any:
    return hypothesis.settings(
        max_examples=max_examples,
        deadline=None,
        suppress_health_check=(
            hypothesis.HealthCheck.too_slow,
            hypothesis.HealthCheck.function_scoped_fixture,
        ),
    )


def get_catcher(label_prefix: str = "") -> tuple[output_catcher.OutputCatcher, io.BytesIO]:
    """Return catcher writing to an in-memory console."""
    console = io.BytesIO()
    catcher = output_catcher.OutputCatcher(
        console=output_catcher.ConsoleSink(stream=console), label_prefix=label_prefix
    )
    return catcher, console


def get_clock(
    start: datetime.datetime, step_secs: float = 1.0
) -> tp.Callable[[], datetime.datetime]:
    """Return `now` function that moves by `step_secs` on every call."""
    counter = itertools.count()
    lock = threading.Lock()

    def _now() -> datetime.datetime:
        with lock:
            num = next(counter)
        return start + datetime.timedelta(seconds=num * step_secs)

    return _now


class FakeLifecycle(cluster_lifecycle.ClusterLifecycle):
    """Lifecycle recording what would be started and stopped."""

    def __init__(
        self,
        *,
        fail_start: tp.Iterable[str] = (),
        fail_login: bool = False,
        healthy: bool = True,
    ) -> None:
        super().__init__(
            docker_client_factory=FakeDockerClient,
            stabilize_secs=0,
            probe_attempts=1,
            probe_interval=0,
        )
        self.fail_start = tuple(fail_start)
        self.fail_login = fail_login
        self.healthy = healthy
        self.started: list[tuple[str, str, tuple[str, ...]]] = []
        self.stopped: list[tuple[str, str]] = []
        self.health_checked: list[str] = []
        self.logged_in: list[str] = []
        self.removed_all = 0
        self._lock = threading.Lock()

    @property
    def started_prefixes(self) -> list[str]:
        with self._lock:
            return [s[1] for s in self.started]

    @property
    def stopped_prefixes(self) -> list[str]:
        with self._lock:
            return [s[1] for s in self.stopped]

    def start_cluster(self, compose_file, prefix, services=()):
        with self._lock:
            self.started.append((str(compose_file), prefix, tuple(services)))
        if any(f in str(compose_file) for f in self.fail_start):
            msg = f"Failed to start cluster '{prefix}'"
            raise cluster_lifecycle.ProvisioningError(msg)

    def stop_cluster(self, compose_file, prefix, wait_group):
        wait_group.add()

        def _stop() -> None:
            try:
                with self._lock:
                    self.stopped.append((str(compose_file), prefix))
            finally:
                wait_group.done()

        threading.Thread(target=_stop).start()

    def wait_for_login(self, prefix):
        with self._lock:
            self.logged_in.append(prefix)
        if self.fail_login:
            msg = f"Unable to login to {prefix}"
            raise cluster_lifecycle.ReadinessError(msg)
        return "token"

    def wait_for_health(self, prefix):
        with self._lock:
            self.health_checked.append(prefix)
        return self.healthy

    def remove_all_test_clusters(self, name_prefix="test-"):
        self.removed_all += 1


class FakeExecutor(test_executor.GoTestExecutor):
    """Executor that pretends to run tests, failing for the selected packages."""

    def __init__(
        self,
        catcher: output_catcher.OutputCatcher,
        *,
        failing: tp.Iterable[str] = (),
        duration: float = 2.0,
        sleep_secs: float = 0.0,
    ) -> None:
        super().__init__(catcher)
        self.failing = tuple(failing)
        self.duration = duration
        self.sleep_secs = sleep_secs
        self.ran: list[tuple[str, str, int]] = []
        self._lock = threading.Lock()

    def run(self, pkg, prefix, worker_id):
        with self._lock:
            self.ran.append((pkg, prefix, worker_id))
        if self.sleep_secs:
            time.sleep(self.sleep_secs)
        if pkg in self.failing:
            self.catcher.write(f"--- FAIL: TestSomething ({pkg})\n".encode())
            msg = f"While running command: go test {pkg} Error: exit status 1"
            raise test_executor.TestExecutionError(msg)
        self.catcher.write(f"ok  \t{pkg}\n".encode())
        self.catcher.took(worker_id, pkg, self.duration)

    @property
    def ran_pkgs(self) -> list[str]:
        with self._lock:
            return [r[0] for r in self.ran]


class FakeSource:
    """Discovery source with a fixed list of candidates."""

    module_path = "example.com/project"

    def __init__(
        self,
        candidates: tp.Iterable[go_packages.PackageCandidate],
        dirs_with_test: tp.Iterable[pl.Path] = (),
    ) -> None:
        self.candidates = list(candidates)
        self.dirs_with_test = {pl.Path(d).resolve() for d in dirs_with_test}
        self.listed = 0

    def list_candidates(self) -> list[go_packages.PackageCandidate]:
        self.listed += 1
        return list(self.candidates)

    def find_dirs_with_test(self, test_name: str) -> set[pl.Path]:
        return set(self.dirs_with_test)


def get_candidate(
    name: str,
    *,
    base_dir: pl.Path = pl.Path("/nonexistent"),
    compose: bool = False,
    tests: bool = True,
) -> go_packages.PackageCandidate:
    return go_packages.PackageCandidate(
        import_path=f"{FakeSource.module_path}/{name}",
        directory=base_dir / name,
        has_compose_file=compose,
        has_test_files=tests,
    )


def get_task(name: str, kind: scheduler.TaskKind = scheduler.TaskKind.COMMON) -> scheduler.Task:
    return scheduler.Task(
        identifier=f"{FakeSource.module_path}/{name}",
        kind=kind,
        directory=pl.Path("/nonexistent") / name,
    )


class CancellingSource(interrupts.CancellationSource):
    """Cancellation source that cancels the run as soon as it is bound."""

    def __init__(self) -> None:
        self.bound_closers: list[closer_mod.Closer] = []

    def bind(self, closer: closer_mod.Closer) -> None:
        self.bound_closers.append(closer)
        closer.signal()


class FakeContainer:
    def __init__(self, name: str, ports: dict | None = None, fail: bool = False) -> None:
        self.name = name
        self.ports = ports or {}
        self.fail = fail
        self.stopped = False
        self.removed = False

    def stop(self, timeout: int = 10) -> None:
        if self.fail:
            raise APIError("stop failed")
        self.stopped = True

    def remove(self) -> None:
        self.removed = True


class FakeNetwork:
    def __init__(self, name: str) -> None:
        self.name = name
        self.removed = False

    def remove(self) -> None:
        self.removed = True


class _FakeCollection:
    def __init__(self, items: list) -> None:
        self.items = items
        self.list_kwargs: list[dict] = []

    def list(self, **kwargs: tp.Any) -> list:
        self.list_kwargs.append(kwargs)
        name_filter = (kwargs.get("filters") or {}).get("name", "")
        # The docker name filter is a substring match
        return [i for i in self.items if name_filter in i.name]


class FakeDockerClient:
    def __init__(
        self, containers: tp.Iterable[FakeContainer] = (), networks: tp.Iterable[FakeNetwork] = ()
    ) -> None:
        self.containers = _FakeCollection(list(containers))
        self.networks = _FakeCollection(list(networks))
