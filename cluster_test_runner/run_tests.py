#!/usr/bin/env python3
"""Run Go integration tests in parallel, each package against docker-compose clusters."""

import argparse
import logging
import sys

from cluster_test_runner.cluster_management import common
from cluster_test_runner.cluster_management import orchestrator
from cluster_test_runner.cluster_management import scheduler
from cluster_test_runner.utils import configuration
from cluster_test_runner.utils import helpers

LOGGER = logging.getLogger(__name__)


def get_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Get command line arguments."""
    parser = argparse.ArgumentParser(description=(__doc__ or "").split("\n", maxsplit=1)[0])
    parser.add_argument(
        "--base",
        default="../",
        type=helpers.check_dir_arg,
        help="Base dir of the Go module to test (default: %(default)s).",
    )
    parser.add_argument(
        "-p",
        "--pkg",
        default="",
        help="Only run tests for this package.",
    )
    parser.add_argument(
        "-t",
        "--test",
        default="",
        help="Only run this test.",
    )
    parser.add_argument(
        "-o",
        "--custom-only",
        action="store_true",
        help="Run only tests that need a custom cluster.",
    )
    parser.add_argument(
        "-c",
        "--count",
        default=0,
        type=helpers.check_non_negative_int_arg,
        help="Number of times each test should run. Passed to `go test` when > 0.",
    )
    parser.add_argument(
        "-j",
        "--concurrency",
        default=configuration.TEST_CONCURRENCY,
        type=helpers.check_positive_int_arg,
        help="Number of clusters to run concurrently (default: %(default)s).",
    )
    parser.add_argument(
        "-k",
        "--keep",
        action="store_true",
        default=configuration.KEEP_CLUSTERS_RUNNING,
        help="Keep the clusters running on program end.",
    )
    parser.add_argument(
        "-r",
        "--clear",
        action="store_true",
        help="Remove all test containers and networks, don't run any tests.",
    )
    parser.add_argument(
        "--dry",
        action="store_true",
        help="Don't start any clusters, just pretend to run the tests.",
    )
    parser.add_argument(
        "--skip-build",
        action="store_true",
        help="Don't run `make install` before the tests.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    return parser.parse_args(argv)


def get_settings(args: argparse.Namespace) -> common.RunSettings:
    return common.RunSettings(
        base_dir=args.base,
        pkg=args.pkg,
        test=args.test,
        custom_only=args.custom_only,
        count=args.count,
        concurrency=args.concurrency,
        keep_clusters=args.keep,
        clear=args.clear,
        dry=args.dry,
        skip_build=args.skip_build,
        json_output=configuration.IS_TEAMCITY,
    )


def main(argv: list[str] | None = None) -> int:
    args = get_args(argv)
    logging.basicConfig(
        format="%(levelname)s:%(message)s",
        level=logging.DEBUG if args.verbose else logging.INFO,
    )

    if configuration.IS_TEAMCITY:
        LOGGER.info(f"Found Teamcity: {configuration.TEAMCITY_VERSION}")

    settings = get_settings(args)
    try:
        passed = orchestrator.Orchestrator(settings).run()
    except scheduler.ConfigurationError as err:
        LOGGER.error(str(err))  # noqa: TRY400
        return 1

    return 0 if passed else 1


if __name__ == "__main__":
    sys.exit(main())
