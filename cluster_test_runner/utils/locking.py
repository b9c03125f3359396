import logging

from filelock import FileLock

import cluster_test_runner.utils.types as ttypes

# Suppress messages from filelock
logging.getLogger("filelock").setLevel(logging.WARNING)


def get_file_lock(locked_file: ttypes.FileType) -> FileLock:
    """Return lock guarding `locked_file`.

    The lock works both across threads and across processes, so several test runners can
    share e.g. the same scheduling log.
    """
    return FileLock(f"{locked_file}.lock")
