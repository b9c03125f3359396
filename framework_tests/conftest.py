import datetime
import io
import typing as tp

import fakes
import pytest

from cluster_test_runner.cluster_management import common
from cluster_test_runner.cluster_management import output_catcher
from cluster_test_runner.utils import configuration


@pytest.fixture(autouse=True)
def _no_scheduling_log(monkeypatch: pytest.MonkeyPatch) -> None:
    """Don't write scheduling log from tests, unless a test enables it."""
    monkeypatch.setattr(configuration, "SCHEDULING_LOG", "")


@pytest.fixture
def catcher_console() -> tuple[output_catcher.OutputCatcher, io.BytesIO]:
    return fakes.get_catcher()


@pytest.fixture
def clock() -> tp.Callable[[], datetime.datetime]:
    return fakes.get_clock(datetime.datetime(2024, 5, 1, 13, 2, 3))


@pytest.fixture
def lifecycle() -> fakes.FakeLifecycle:
    return fakes.FakeLifecycle()


@pytest.fixture
def settings(tmp_path) -> common.RunSettings:
    return common.RunSettings(
        base_dir=tmp_path, concurrency=3, keep_clusters=False, json_output=False
    )
