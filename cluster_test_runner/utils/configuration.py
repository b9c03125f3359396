"""Test runner configuration taken from environment variables."""

import os
import pathlib as pl

LAUNCH_PATH = pl.Path.cwd()

# All resources created by the runner (containers, networks) start with this string.
# Used also by the `--clear` mode to find leftovers of previous runs.
CLUSTER_PREFIX_BASE = os.environ.get("CLUSTER_PREFIX_BASE") or "test-"
if not CLUSTER_PREFIX_BASE.endswith("-"):
    msg = f"Invalid CLUSTER_PREFIX_BASE '{CLUSTER_PREFIX_BASE}': must end with '-'"
    raise RuntimeError(msg)

# Time given to a freshly started cluster to bind its ports
CLUSTER_STABILIZE_SECS = float(os.environ.get("CLUSTER_STABILIZE_SECS") or 3)

PROBE_ATTEMPTS = int(os.environ.get("PROBE_ATTEMPTS") or 30)
if PROBE_ATTEMPTS < 1:
    msg = f"Invalid PROBE_ATTEMPTS '{PROBE_ATTEMPTS}': must be >= 1"
    raise RuntimeError(msg)
PROBE_INTERVAL_SECS = float(os.environ.get("PROBE_INTERVAL_SECS") or 1)

CLUSTER_LOGIN_USER = os.environ.get("CLUSTER_LOGIN_USER") or "groot"
CLUSTER_LOGIN_PASSWORD = os.environ.get("CLUSTER_LOGIN_PASSWORD") or "password"

TEST_CONCURRENCY = int(os.environ.get("TEST_CONCURRENCY") or 3)
if TEST_CONCURRENCY < 1:
    msg = f"Invalid TEST_CONCURRENCY '{TEST_CONCURRENCY}': must be >= 1"
    raise RuntimeError(msg)

# Cluster instances are kept running after tests finish
KEEP_CLUSTERS_RUNNING = bool(os.environ.get("KEEP_CLUSTERS_RUNNING"))

# Running on TeamCity, test output is produced in JSON format
TEAMCITY_VERSION = os.environ.get("TEAMCITY_VERSION") or ""
IS_TEAMCITY = bool(TEAMCITY_VERSION)

# Resolve SCHEDULING_LOG
SCHEDULING_LOG: str | pl.Path = os.environ.get("SCHEDULING_LOG") or ""
if SCHEDULING_LOG:
    SCHEDULING_LOG = pl.Path(SCHEDULING_LOG).expanduser()
    if not SCHEDULING_LOG.is_absolute():
        # The path is relative to LAUNCH_PATH (current path can differ)
        SCHEDULING_LOG = LAUNCH_PATH / SCHEDULING_LOG
    SCHEDULING_LOG = SCHEDULING_LOG.resolve()
