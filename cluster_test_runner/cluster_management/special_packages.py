"""Provisioning of packages that need a prepared dataset.

The `systest/1million` tests expect a cluster with the "1million" dataset already loaded. Zero is
started first, the data are bulk loaded, then the alphas are started on top of the loaded data and
the indexed schema is applied.
"""

import logging
import pathlib as pl

import requests

from cluster_test_runner.cluster_management import cluster_lifecycle
from cluster_test_runner.cluster_management import common
from cluster_test_runner.cluster_management import scheduler
from cluster_test_runner.utils import helpers
from cluster_test_runner.utils import http_client

LOGGER = logging.getLogger(__name__)

BENCHMARKS_URL = "https://github.com/dgraph-io/benchmarks/blob/master/data/{fname}?raw=true"
NOINDEX_SCHEMA = "1million-noindex.schema"
SCHEMA = "1million.schema"
RDF_DATA = "1million.rdf.gz"
DATA_FILES = (NOINDEX_SCHEMA, RDF_DATA, SCHEMA)

ZERO_SERVICE = "zero1"
ALPHA_SERVICES = ("alpha1", "alpha2", "alpha3")

DOWNLOAD_TIMEOUT = 300
CHUNK_SIZE = 1024 * 1024


def download_file(url: str, dest: pl.Path) -> pl.Path:
    LOGGER.info(f"Downloading '{url}' to '{dest}'.")
    with http_client.get_session().get(url, stream=True, timeout=DOWNLOAD_TIMEOUT) as resp:
        resp.raise_for_status()
        with open(dest, "wb") as out_fp:
            for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                out_fp.write(chunk)
    return dest


def get_bulk_load_script(
    compose_file: pl.Path, prefix: str, benchmarks_dir: pl.Path, schema_file: str, data_file: str
) -> str:
    """Return bash script that bulk loads data into 3 alpha groups."""
    data_dir = benchmarks_dir / "data"
    return f"""docker-compose -f {compose_file} -p {prefix} run \
-v {benchmarks_dir}:{benchmarks_dir} --name {prefix}_bulk_load {ZERO_SERVICE} bash -s <<EOF
mkdir -p /data/alpha1 /data/alpha2 /data/alpha3
/gobin/dgraph bulk --schema={data_dir / schema_file} --files={data_dir / data_file} \
--format=rdf --zero={ZERO_SERVICE}:5080 --out=/data/zero1/bulk \
--reduce_shards 3 --map_shards 9 > /data/logs.txt
mv /data/zero1/bulk/0/p /data/alpha1
mv /data/zero1/bulk/1/p /data/alpha2
mv /data/zero1/bulk/2/p /data/alpha3
EOF"""


class OneMillionProvisioner:
    """Start a cluster with the "1million" dataset loaded."""

    def __init__(
        self,
        lifecycle: cluster_lifecycle.ClusterLifecycle,
        work_dir: pl.Path,
        dry: bool = False,
    ) -> None:
        self.lifecycle = lifecycle
        self.work_dir = work_dir
        self.dry = dry

    def _download_data(self, data_dir: pl.Path) -> None:
        for fname in DATA_FILES:
            try:
                download_file(url=BENCHMARKS_URL.format(fname=fname), dest=data_dir / fname)
            except requests.RequestException as err:
                msg = f"Failed to download '{fname}': {err}"
                raise cluster_lifecycle.ProvisioningError(msg) from err

    def _bulk_load(self, compose_file: pl.Path, prefix: str, benchmarks_dir: pl.Path) -> None:
        script = get_bulk_load_script(
            compose_file=compose_file,
            prefix=prefix,
            benchmarks_dir=benchmarks_dir,
            schema_file=NOINDEX_SCHEMA,
            data_file=RDF_DATA,
        )
        try:
            helpers.run_in_bash(script)
        except RuntimeError as err:
            msg = f"Failed to bulk load data into '{prefix}': {err}"
            raise cluster_lifecycle.ProvisioningError(msg) from err

    def _alter_schema(self, prefix: str, token: str, schema_file: pl.Path) -> None:
        instance = cluster_lifecycle.ClusterInstance(prefix=prefix, name=ALPHA_SERVICES[0])
        port = self.lifecycle.resolve_port(instance=instance, private_port=common.HTTP_PORT)
        if not port:
            msg = f"Unable to find container: {instance}"
            raise cluster_lifecycle.ProvisioningError(msg)

        headers = {"X-Dgraph-AccessToken": token} if token else {}
        try:
            resp = http_client.get_session().post(
                f"http://localhost:{port}/alter",
                data=schema_file.read_bytes(),
                headers=headers,
                timeout=DOWNLOAD_TIMEOUT,
            )
            resp.raise_for_status()
            errors = resp.json().get("errors")
        except requests.RequestException as err:
            msg = f"Failed to update schema of '{prefix}': {err}"
            raise cluster_lifecycle.ProvisioningError(msg) from err

        if errors:
            msg = f"Failed to update schema of '{prefix}': {errors}"
            raise cluster_lifecycle.ProvisioningError(msg)

    def provision(self, task: scheduler.Task, prefix: str) -> None:
        """Start cluster instance `prefix` for the task, with data loaded."""
        if self.dry:
            LOGGER.info(f"DRY: would provision '{prefix}' with data for {task.identifier}.")
            return

        benchmarks_dir = self.work_dir / prefix / "benchmarks"
        data_dir = benchmarks_dir / "data"
        data_dir.mkdir(parents=True, exist_ok=True)

        self._download_data(data_dir)

        self.lifecycle.start_cluster(task.compose_file, prefix, [ZERO_SERVICE])
        self._bulk_load(
            compose_file=task.compose_file, prefix=prefix, benchmarks_dir=benchmarks_dir
        )
        self.lifecycle.start_cluster(task.compose_file, prefix, ALPHA_SERVICES)

        token = self.lifecycle.wait_for_login(prefix)
        self._alter_schema(prefix=prefix, token=token, schema_file=data_dir / SCHEMA)
