from __future__ import annotations

import sys
import time

import allure
import pytest

from jobdock.environment.runtime import ContainerRuntime
from jobdock.subprocesses import TIMEOUT_EXIT_CODE, run_command

pytestmark = [
    allure.epic("Environments"),
    allure.feature("Child Processes"),
]


def test_run_command_captures_output_and_exit_code() -> None:
    result = run_command(
        [sys.executable, "-c", "import sys; print(sys.stdin.read().upper()); sys.exit(3)"],
        timeout_seconds=10,
        input_text="hello",
    )

    assert result.exit_code == 3
    assert result.stdout.strip() == "HELLO"
    assert result.timed_out is False
    assert result.ok is False


def test_run_command_timeout_kills_child() -> None:
    started = time.monotonic()
    result = run_command(
        [
            sys.executable,
            "-c",
            "import signal, sys, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
            "print('started', flush=True); time.sleep(60)",
        ],
        timeout_seconds=0.5,
        grace_seconds=0.2,
    )

    assert result.timed_out is True
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert time.monotonic() - started < 10


def test_missing_binary_raises() -> None:
    with pytest.raises(FileNotFoundError):
        run_command(["/definitely/not/a/binary"], timeout_seconds=1)


def test_undecodable_output_is_replaced_not_raised() -> None:
    result = run_command(
        [
            sys.executable,
            "-c",
            "import sys; sys.stdout.buffer.write(b'\\xff\\xfe ok\\n'); "
            "sys.stderr.buffer.write(b'bad \\xc3\\n')",
        ],
        timeout_seconds=10,
    )

    assert result.ok is True
    assert "\ufffd" in result.stdout
    assert result.stdout.endswith(" ok\n")
    assert result.stderr.startswith("bad \ufffd")


def test_container_runtime_survives_undecodable_output() -> None:
    runtime = ContainerRuntime(binary=sys.executable)

    result = runtime.run(
        ["-c", "import sys; sys.stdout.buffer.write(b'name\\x80\\trunning\\n')"],
        timeout_seconds=10,
    )

    assert result.ok is True
    assert result.stdout == "name\ufffd\trunning\n"


def test_new_session_timeout_kills_grandchildren(tmp_path) -> None:
    marker = tmp_path / "grandchild-finished"
    grandchild_seconds = 2
    script = (
        "import subprocess, time\n"
        "subprocess.Popen(['sh', '-c', "
        f"\"trap '' TERM; sleep {grandchild_seconds}; touch {marker}\"])\n"
        "time.sleep(60)\n"
    )
    started = time.monotonic()

    result = run_command(
        [sys.executable, "-c", script],
        timeout_seconds=0.5,
        grace_seconds=0.2,
        new_session=True,
    )

    assert result.timed_out is True
    time.sleep(max(0.0, started + grandchild_seconds + 1.5 - time.monotonic()))
    assert not marker.exists()
