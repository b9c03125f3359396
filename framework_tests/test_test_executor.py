import fakes
import pytest

from cluster_test_runner.cluster_management import test_executor
from cluster_test_runner.utils import helpers


class TestGetCommand:
    def test_default(self, catcher_console):
        executor = test_executor.GoTestExecutor(catcher_console[0])
        assert executor.get_command("example.com/project/query") == [
            "go",
            "test",
            "-failfast",
            "-v",
            "example.com/project/query",
        ]

    def test_all_options(self, catcher_console):
        executor = test_executor.GoTestExecutor(
            catcher_console[0], count=2, run_test="TestQuery", json_output=True
        )
        assert executor.get_command("pkg") == [
            "go",
            "test",
            "-failfast",
            "-v",
            "-count=2",
            "-run=TestQuery",
            "-json",
            "pkg",
        ]


class TestRun:
    def test_pass(self, monkeypatch: pytest.MonkeyPatch, tmp_path):
        calls = []

        def _stream(cmd, *, sink, workdir, env):
            calls.append((cmd, workdir, env))
            sink(b"=== RUN   TestQuery\n")
            sink(b"--- FAIL: TestFlaky\n")
            return 0

        monkeypatch.setattr(helpers, "stream_command", _stream)
        catcher, console = fakes.get_catcher()
        executor = test_executor.GoTestExecutor(catcher, base_dir=tmp_path)

        executor.run("pkg", "test-001-1", worker_id=2)

        cmd, workdir, env = calls[0]
        assert cmd[-1] == "pkg"
        assert workdir == tmp_path
        assert env[test_executor.PREFIX_ENV] == "test-001-1"
        assert console.getvalue() == b"=== RUN   TestQuery\n--- FAIL: TestFlaky\n"
        assert bytes(catcher.failures.data) == b"--- FAIL: TestFlaky\n"
        assert [(r.worker_id, r.label) for r in catcher.records] == [(2, "pkg")]

    def test_fail(self, monkeypatch: pytest.MonkeyPatch, catcher_console):
        monkeypatch.setattr(helpers, "stream_command", lambda cmd, **kwargs: 1)
        catcher = catcher_console[0]
        executor = test_executor.GoTestExecutor(catcher)

        with pytest.raises(test_executor.TestExecutionError, match="exit status 1"):
            executor.run("pkg", "test-001-1", worker_id=1)
        assert not catcher.records

    def test_missing_binary(self, monkeypatch: pytest.MonkeyPatch, catcher_console):
        def _stream(cmd, **kwargs):
            msg = "No such file or directory: 'go'"
            raise FileNotFoundError(msg)

        monkeypatch.setattr(helpers, "stream_command", _stream)
        executor = test_executor.GoTestExecutor(catcher_console[0])

        with pytest.raises(test_executor.TestExecutionError, match="No such file"):
            executor.run("pkg", "test-001-1", worker_id=1)

    def test_dry(self, monkeypatch: pytest.MonkeyPatch, catcher_console):
        sleeps = []
        monkeypatch.setattr(test_executor.time, "sleep", sleeps.append)
        monkeypatch.setattr(helpers, "stream_command", None)
        catcher = catcher_console[0]
        executor = test_executor.GoTestExecutor(catcher, dry=True)

        executor.run("pkg", "test-001-1", worker_id=1)

        assert sleeps == [test_executor.DRY_RUN_SECS]
        assert [r.label for r in catcher.records] == ["pkg"]
