import argparse
import logging
import pathlib as pl
import subprocess
import typing as tp

import cluster_test_runner.utils.types as ttypes

LOGGER = logging.getLogger(__name__)


def _cmd_str(command: str | list) -> str:
    return command if isinstance(command, str) else " ".join(command)


def run_command(
    command: str | list,
    *,
    workdir: ttypes.FileType = "",
    ignore_fail: bool = False,
    shell: bool = False,
) -> bytes:
    """Run command and return its stdout."""
    cmd: str | list
    if isinstance(command, str):
        cmd = command if shell else command.split()
    else:
        cmd = command
    cmd_str = _cmd_str(command)

    LOGGER.debug("Running `%s`", cmd_str)

    try:
        with subprocess.Popen(
            cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, shell=shell, cwd=workdir or None
        ) as p:
            stdout, stderr = p.communicate()
            retcode = p.returncode
    except OSError as err:
        msg = f"An error occurred while running `{cmd_str}`: {err}"
        raise RuntimeError(msg) from err

    if not ignore_fail and retcode != 0:
        err_dec = stderr.decode()
        err_dec = err_dec or stdout.decode()
        msg = f"An error occurred while running `{cmd_str}`: {err_dec}"
        raise RuntimeError(msg)

    return stdout


def run_in_bash(command: str, *, workdir: ttypes.FileType = "") -> bytes:
    """Run command(s) in bash."""
    cmd = ["bash", "-o", "pipefail", "-c", f"{command}"]
    return run_command(cmd, workdir=workdir)


def stream_command(
    command: list[str],
    *,
    sink: tp.Callable[[bytes], tp.Any],
    workdir: ttypes.FileType = "",
    env: dict | None = None,
) -> int:
    """Run command, pass its stdout to `sink` chunk by chunk and return the exit code.

    The stderr is inherited from the current process.
    """
    LOGGER.debug("Running `%s`", _cmd_str(command))

    with subprocess.Popen(command, stdout=subprocess.PIPE, cwd=workdir or None, env=env) as p:
        for chunk in iter(p.stdout.readline, b""):  # type: ignore[union-attr]
            sink(chunk)
        return p.wait()


def check_dir_arg(dir_path: str) -> pl.Path | None:
    """Check that the dir passed as argparse parameter is a valid existing dir."""
    if not dir_path:
        return None
    abs_path = pl.Path(dir_path).expanduser().resolve()
    if not (abs_path.exists() and abs_path.is_dir()):
        msg = f"check_dir_arg: directory '{dir_path}' doesn't exist"
        raise argparse.ArgumentTypeError(msg)
    return abs_path


def check_positive_int_arg(value: str) -> int:
    """Check that the value passed as argparse parameter is an integer >= 1."""
    try:
        num = int(value)
    except ValueError:
        num = 0
    if num < 1:
        msg = f"check_positive_int_arg: '{value}' is not a positive integer"
        raise argparse.ArgumentTypeError(msg)
    return num


def check_non_negative_int_arg(value: str) -> int:
    """Check that the value passed as argparse parameter is an integer >= 0."""
    try:
        num = int(value)
    except ValueError:
        num = -1
    if num < 0:
        msg = f"check_non_negative_int_arg: '{value}' is not a non-negative integer"
        raise argparse.ArgumentTypeError(msg)
    return num


def format_duration(seconds: float) -> str:
    """Format duration rounded to whole seconds, e.g. `0s`, `45s`, `1m5s`, `1h2m3s`.

    >>> format_duration(3725.4)
    '1h2m5s'
    """
    # Halves are rounded away from zero
    total = int(abs(seconds) + 0.5)
    sign = "-" if seconds < 0 and total else ""
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)

    if hours:
        return f"{sign}{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{sign}{minutes}m{secs}s"
    return f"{sign}{secs}s"
