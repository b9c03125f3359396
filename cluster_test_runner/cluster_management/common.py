import dataclasses
import pathlib as pl

from cluster_test_runner.utils import configuration

# Compose file of the cluster shared by all common tasks, relative to the base dir
DEFAULT_COMPOSE_FILE = pl.Path("dgraph") / "docker-compose.yml"

# Service that is probed for login and health
PROBED_SERVICE = "alpha1"
HTTP_PORT = 8080

# Tasks whose identifier contains any of these take long to run, so they are dispatched first
SLOW_PACKAGES = ("systest", "ee/acl", "cmd/alpha", "worker")

# Packages with their own provisioning sequence
SPECIAL_PACKAGES = ("systest/1million",)


@dataclasses.dataclass(frozen=True)
class RunSettings:
    """Settings of a single test run."""

    base_dir: pl.Path
    pkg: str = ""
    test: str = ""
    custom_only: bool = False
    count: int = 0
    concurrency: int = configuration.TEST_CONCURRENCY
    keep_clusters: bool = configuration.KEEP_CLUSTERS_RUNNING
    clear: bool = False
    dry: bool = False
    skip_build: bool = False
    json_output: bool = configuration.IS_TEAMCITY

    @property
    def default_compose_file(self) -> pl.Path:
        return self.base_dir / DEFAULT_COMPOSE_FILE

    @property
    def num_workers(self) -> int:
        """Number of workers; a single worker is enough when running a subset of tests."""
        if self.pkg or self.test:
            return 1
        return self.concurrency
