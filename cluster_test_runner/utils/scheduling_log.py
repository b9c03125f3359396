"""Optional log of scheduling decisions.

Enabled by setting the `SCHEDULING_LOG` env variable to a file path. Every worker appends
a line for each task it receives and for each cluster it starts or stops.
"""

import datetime

import cluster_test_runner.utils.types as ttypes
from cluster_test_runner.utils import configuration
from cluster_test_runner.utils import locking


def log(worker_id: int, msg: str) -> None:
    """Append a message to the scheduling log."""
    if not configuration.SCHEDULING_LOG:
        return

    with (
        locking.get_file_lock(configuration.SCHEDULING_LOG),
        open(configuration.SCHEDULING_LOG, "a", encoding="utf-8") as logfile,
    ):
        logfile.write(
            f"{datetime.datetime.now(tz=datetime.timezone.utc)} on w{worker_id}: {msg}\n"
        )


def get_log_func(worker_id: int) -> ttypes.LogFunc:
    """Return scheduling log function bound to a worker."""

    def _log(msg: str) -> None:
        log(worker_id=worker_id, msg=msg)

    return _log
