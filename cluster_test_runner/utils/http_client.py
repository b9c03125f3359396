"""HTTP client shared by the probes.

`requests.Session` is not guaranteed to be thread safe, so every worker thread gets its own.
"""

import threading

import requests

_local = threading.local()


def get_session() -> requests.Session:
    """Get a session object for the current thread."""
    session = getattr(_local, "session", None)
    if session is None:
        session = requests.Session()
        _local.session = session
    return session
