"""Starting, stopping and probing of cluster instances.

Clusters are started with `docker-compose`, using a unique prefix as the compose project name.
Containers of a cluster instance are then found by the `<prefix>_<service>_` name prefix.
"""

import concurrent.futures
import dataclasses
import functools
import logging
import threading
import time
import typing as tp

import docker
import requests
from docker.errors import APIError
from docker.models.containers import Container

import cluster_test_runner.utils.types as ttypes
from cluster_test_runner.cluster_management import closer as closer_mod
from cluster_test_runner.cluster_management import common
from cluster_test_runner.utils import configuration
from cluster_test_runner.utils import helpers
from cluster_test_runner.utils import http_client

LOGGER = logging.getLogger(__name__)

CONTAINER_STOP_TIMEOUT = 10
PROBE_REQUEST_TIMEOUT = 10


class ProvisioningError(Exception):
    pass


class ReadinessError(ProvisioningError):
    pass


def retry_probe(
    probe: tp.Callable[[], tp.Any],
    *,
    max_attempts: int,
    interval: float,
    name: str = "probe",
) -> bool:
    """Call `probe` until it doesn't raise, at most `max_attempts` times.

    Returns `False` when all the attempts failed.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            probe()
        except Exception as err:
            LOGGER.info(f"{name} failed ({attempt}/{max_attempts}): {err}. Retrying...")
        else:
            return True

        if attempt < max_attempts:
            time.sleep(interval)

    return False


@dataclasses.dataclass(frozen=True, order=True)
class ClusterInstance:
    """Single service of a cluster instance."""

    prefix: str
    name: str

    @property
    def name_prefix(self) -> str:
        return f"{self.prefix}_{self.name}_"

    def __str__(self) -> str:
        return f"{self.name_prefix}1"


def get_public_port(container: Container | None, private_port: int) -> str:
    """Return host port the `private_port` of the container is published on."""
    if container is None:
        return ""

    for port_spec, bindings in (container.ports or {}).items():
        port_str = str(port_spec).split("/", maxsplit=1)[0]
        if port_str != str(private_port) or not bindings:
            continue
        for binding in bindings:
            host_port = binding.get("HostPort")
            if host_port:
                return str(host_port)

    return ""


class ClusterLifecycle:
    """Management of cluster instances running in docker."""

    def __init__(
        self,
        *,
        docker_client_factory: tp.Callable[[], docker.DockerClient] = docker.from_env,
        stabilize_secs: float = configuration.CLUSTER_STABILIZE_SECS,
        probe_attempts: int = configuration.PROBE_ATTEMPTS,
        probe_interval: float = configuration.PROBE_INTERVAL_SECS,
    ) -> None:
        self.docker_client_factory = docker_client_factory
        self.stabilize_secs = stabilize_secs
        self.probe_attempts = probe_attempts
        self.probe_interval = probe_interval

    @functools.cached_property
    def docker_client(self) -> docker.DockerClient:
        return self.docker_client_factory()

    def start_cluster(
        self, compose_file: ttypes.FileType, prefix: str, services: tp.Sequence[str] = ()
    ) -> None:
        """Start services of a cluster instance, all of them when `services` is empty."""
        cmd = [
            "docker-compose",
            "-f",
            str(compose_file),
            "-p",
            prefix,
            "up",
            "--force-recreate",
            "--remove-orphans",
            "--detach",
            *services,
        ]
        LOGGER.info(f"Starting cluster '{prefix}' from '{compose_file}'.")
        try:
            helpers.run_command(cmd)
        except RuntimeError as err:
            msg = f"Failed to start cluster '{prefix}': {err}"
            raise ProvisioningError(msg) from err

        # Let it stabilize
        time.sleep(self.stabilize_secs)

    def _stop_cluster(self, compose_file: ttypes.FileType, prefix: str) -> None:
        cmd = ["docker-compose", "-f", str(compose_file), "-p", prefix, "down"]
        try:
            helpers.run_command(cmd)
        except Exception as err:
            LOGGER.error(  # noqa: TRY400
                f"Error while bringing down cluster. Prefix: {prefix}. Error: {err}"
            )
        else:
            LOGGER.info(f"CLUSTER DOWN: {prefix}")

    def stop_cluster(
        self, compose_file: ttypes.FileType, prefix: str, wait_group: closer_mod.WaitGroup
    ) -> None:
        """Stop cluster instance in background.

        The `wait_group` is marked done once the cluster is down. Failures are only logged.
        """
        wait_group.add()

        def _stop() -> None:
            try:
                self._stop_cluster(compose_file=compose_file, prefix=prefix)
            finally:
                wait_group.done()

        threading.Thread(target=_stop, name=f"stop-{prefix}").start()

    def list_containers(self, name_prefix: str) -> list[Container]:
        """Return all containers whose name starts with `name_prefix`."""
        containers = self.docker_client.containers.list(
            all=True, filters={"name": name_prefix}, ignore_removed=True
        )
        return [c for c in containers if c.name.lstrip("/").startswith(name_prefix)]

    def resolve_instance(self, instance: ClusterInstance) -> Container | None:
        """Return container of the cluster instance service, `None` if not found."""
        containers = self.list_containers(instance.name_prefix)
        return containers[0] if containers else None

    def resolve_port(self, instance: ClusterInstance, private_port: int) -> str:
        """Return the public port of a service, empty string if not found."""
        return get_public_port(
            container=self.resolve_instance(instance), private_port=private_port
        )

    def login(self, instance: ClusterInstance) -> str:
        """Log in to the cluster and return the access token."""
        port = self.resolve_port(instance=instance, private_port=common.HTTP_PORT)
        if not port:
            msg = f"Unable to find container: {instance}"
            raise RuntimeError(msg)

        resp = http_client.get_session().post(
            f"http://localhost:{port}/login",
            json={
                "userid": configuration.CLUSTER_LOGIN_USER,
                "password": configuration.CLUSTER_LOGIN_PASSWORD,
            },
            timeout=PROBE_REQUEST_TIMEOUT,
        )
        resp.raise_for_status()
        resp_json = resp.json()
        if resp_json.get("errors"):
            msg = f"While logging in: {resp_json['errors']}"
            raise RuntimeError(msg)

        LOGGER.info(f"Logged into {instance}")
        return str((resp_json.get("data") or {}).get("accessJWT") or "")

    def wait_for_login(self, prefix: str) -> str:
        """Wait until it is possible to log in to the cluster.

        A cluster that doesn't accept logins is broken, so failure is fatal.
        """
        instance = ClusterInstance(prefix=prefix, name=common.PROBED_SERVICE)
        token: list[str] = []

        def _login() -> None:
            token.append(self.login(instance))

        if not retry_probe(
            _login,
            max_attempts=self.probe_attempts,
            interval=self.probe_interval,
            name=f"Login to {instance}",
        ):
            msg = f"Unable to login to {instance}"
            raise ReadinessError(msg)

        return token[-1]

    def check_health(self, port: str) -> None:
        resp = http_client.get_session().get(
            f"http://localhost:{port}/health", timeout=PROBE_REQUEST_TIMEOUT
        )
        if resp.status_code != requests.codes.ok:
            msg = f"Response: {resp.status_code} {resp.text!r}"
            raise RuntimeError(msg)

    def wait_for_health(self, prefix: str) -> bool:
        """Wait until the cluster reports it is healthy.

        The health is only advisory, failure is logged and the caller carries on.
        """
        instance = ClusterInstance(prefix=prefix, name=common.PROBED_SERVICE)
        port = self.resolve_port(instance=instance, private_port=common.HTTP_PORT)
        if not port:
            LOGGER.warning(f"Health check skipped, no public HTTP port for {instance}.")
            return False

        healthy = retry_probe(
            functools.partial(self.check_health, port),
            max_attempts=self.probe_attempts,
            interval=self.probe_interval,
            name=f"Health check of {prefix}",
        )
        if healthy:
            LOGGER.info(f"Health check: OK for {prefix}.")
        else:
            LOGGER.warning(f"Health check of {prefix} failed, continuing anyway.")
        return healthy

    def _remove_container(self, container: Container) -> None:
        try:
            container.stop(timeout=CONTAINER_STOP_TIMEOUT)
        except APIError as err:
            LOGGER.warning(f"Failed to stop container {container.name}: {err}")
        else:
            LOGGER.info(f"Stopped container {container.name}")

        try:
            container.remove()
        except APIError as err:
            LOGGER.warning(f"Failed to remove container {container.name}: {err}")
        else:
            LOGGER.info(f"Removed container {container.name}")

    def remove_all_test_clusters(
        self, name_prefix: str = configuration.CLUSTER_PREFIX_BASE
    ) -> None:
        """Remove all containers and networks left over by test runs."""
        containers = self.list_containers(name_prefix)
        with concurrent.futures.ThreadPoolExecutor(max_workers=max(len(containers), 1)) as ex:
            list(ex.map(self._remove_container, containers))

        for network in self.docker_client.networks.list():
            if not network.name.startswith(name_prefix):
                continue
            try:
                network.remove()
            except APIError as err:
                LOGGER.error(f"Error: {err} while removing network: {network.name}")  # noqa: TRY400
            else:
                LOGGER.info(f"Removed network: {network.name}")


class DryRunLifecycle(ClusterLifecycle):
    """Lifecycle that only logs what would be done."""

    def start_cluster(
        self, compose_file: ttypes.FileType, prefix: str, services: tp.Sequence[str] = ()
    ) -> None:
        services_str = " ".join(services) or "all services"
        LOGGER.info(f"DRY: would start cluster '{prefix}' ({services_str}) from '{compose_file}'.")

    def stop_cluster(
        self, compose_file: ttypes.FileType, prefix: str, wait_group: closer_mod.WaitGroup
    ) -> None:
        LOGGER.info(f"DRY: would stop cluster '{prefix}' from '{compose_file}'.")

    def wait_for_login(self, prefix: str) -> str:
        LOGGER.info(f"DRY: would log into cluster '{prefix}'.")
        return ""

    def wait_for_health(self, prefix: str) -> bool:
        LOGGER.info(f"DRY: would check health of cluster '{prefix}'.")
        return True
