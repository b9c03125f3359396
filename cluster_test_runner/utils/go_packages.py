"""Discovery of Go packages with tests.

The packages are listed with `go list`. A package directory that contains its own
`docker-compose.yml` needs a dedicated cluster, all other packages can share one.
"""

import dataclasses
import functools
import logging
import pathlib as pl

import cluster_test_runner.utils.types as ttypes
from cluster_test_runner.utils import helpers

LOGGER = logging.getLogger(__name__)

COMPOSE_FILE_NAME = "docker-compose.yml"
TEST_FILE_GLOB = "*_test.go"


@dataclasses.dataclass(frozen=True, order=True)
class PackageCandidate:
    """A single Go package that can be turned into a task."""

    import_path: str
    directory: pl.Path
    has_compose_file: bool
    has_test_files: bool

    @property
    def compose_file(self) -> pl.Path:
        return self.directory / COMPOSE_FILE_NAME


def has_test_files(directory: ttypes.FileType) -> bool:
    """Check if the package directory contains Go test files."""
    return any(pl.Path(directory).glob(TEST_FILE_GLOB))


class GoPackageSource:
    """Discovery source backed by the Go toolchain."""

    def __init__(self, base_dir: ttypes.FileType) -> None:
        self.base_dir = pl.Path(base_dir)

    @functools.cached_property
    def module_path(self) -> str:
        """Return path of the Go module in `base_dir`."""
        out = helpers.run_command(["go", "list", "-m"], workdir=self.base_dir)
        lines = out.decode().strip().splitlines()
        if not lines:
            msg = f"No Go module found in '{self.base_dir}'"
            raise RuntimeError(msg)
        return lines[0]

    def list_candidates(self) -> list[PackageCandidate]:
        """List all packages in the module."""
        out = helpers.run_command(
            ["go", "list", "-f", "{{.ImportPath}}\t{{.Dir}}", "./..."], workdir=self.base_dir
        )

        candidates = []
        for line in out.decode().splitlines():
            if not line.strip():
                continue
            import_path, __, dir_str = line.partition("\t")
            directory = pl.Path(dir_str)
            candidates.append(
                PackageCandidate(
                    import_path=import_path,
                    directory=directory,
                    has_compose_file=(directory / COMPOSE_FILE_NAME).exists(),
                    has_test_files=has_test_files(directory),
                )
            )

        LOGGER.debug(f"Found {len(candidates)} packages in '{self.base_dir}'.")
        return candidates

    def find_dirs_with_test(self, test_name: str) -> set[pl.Path]:
        """Return directories of test files that mention the `test_name`."""
        if not test_name:
            return set()

        dirs = set()
        for test_file in self.base_dir.rglob(TEST_FILE_GLOB):
            try:
                content = test_file.read_text(encoding="utf-8", errors="replace")
            except OSError as err:
                LOGGER.warning(f"Unable to read '{test_file}': {err}")
                continue
            if test_name in content:
                dirs.add(test_file.parent.resolve())

        LOGGER.info(f"Directories with test '{test_name}': {sorted(str(d) for d in dirs)}")
        return dirs
