"""Bounded child-process execution with graceful-then-forceful termination."""

from __future__ import annotations

import os
import signal
import subprocess
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

TIMEOUT_EXIT_CODE = 124
DEFAULT_GRACE_SECONDS = 2.0


@dataclass(slots=True)
class CommandResult:
    """Captured outcome of one child process."""

    args: list[str]
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool
    duration_seconds: float

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.exit_code == 0


def run_command(  # noqa: PLR0913
    args: Sequence[str],
    *,
    timeout_seconds: float,
    input_text: str | None = None,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    grace_seconds: float = DEFAULT_GRACE_SECONDS,
    new_session: bool = False,
) -> CommandResult:
    """Run ``args`` to completion or until ``timeout_seconds`` elapse.

    On timeout the child gets SIGTERM, then SIGKILL after ``grace_seconds``;
    whatever output it produced is still returned. With ``new_session`` the
    child leads its own process group and the signals go to the whole group,
    so grandchildren it spawned are stopped too. Output is decoded as UTF-8
    with undecodable bytes replaced. ``FileNotFoundError`` and
    other ``OSError`` from spawning propagate to the caller.
    """

    started = time.monotonic()
    process = subprocess.Popen(  # noqa: S603
        list(args),
        stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        encoding="utf-8",
        errors="replace",
        cwd=cwd,
        env=dict(env) if env is not None else None,
        start_new_session=new_session,
    )
    timed_out = False
    try:
        stdout, stderr = process.communicate(input=input_text, timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        timed_out = True
        terminate_process(process, grace_seconds=grace_seconds, group=new_session)
        stdout, stderr = process.communicate()
    return CommandResult(
        args=list(args),
        exit_code=TIMEOUT_EXIT_CODE if timed_out else process.returncode,
        stdout=stdout or "",
        stderr=stderr or "",
        timed_out=timed_out,
        duration_seconds=time.monotonic() - started,
    )


def terminate_process(
    process: subprocess.Popen[str] | subprocess.Popen[bytes],
    *,
    grace_seconds: float = DEFAULT_GRACE_SECONDS,
    group: bool = False,
) -> None:
    """SIGTERM ``process`` (or its whole process group), then SIGKILL if it lingers."""

    if not _send(process, signal.SIGTERM, group=group):
        return
    try:
        process.wait(timeout=grace_seconds)
        if not group:
            return
    except subprocess.TimeoutExpired:
        pass
    # Group members may outlive the leader, so the group is always killed.
    if not _send(process, signal.SIGKILL, group=group):
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        return


def _send(
    process: subprocess.Popen[str] | subprocess.Popen[bytes],
    signum: signal.Signals,
    *,
    group: bool,
) -> bool:
    try:
        if group:
            os.killpg(process.pid, signum)
        else:
            process.send_signal(signum)
    except OSError:
        return False
    return True
