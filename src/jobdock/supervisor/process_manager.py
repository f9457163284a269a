"""Start, track and stop named background processes for the supervisor."""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from jobdock.common import utc_now
from jobdock.locks import is_pid_alive
from jobdock.subprocesses import run_command
from jobdock.supervisor.paths import ServicePaths
from jobdock.supervisor.session import (
    ProcessRecord,
    ProcessSpec,
    ServiceSession,
    load_session,
    save_session,
)

logger = logging.getLogger(__name__)

DEFAULT_STOP_TIMEOUT_SECONDS = 2.0
_POLL_SECONDS = 0.05
_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9_.-]+")


class ProcessManagerError(RuntimeError):
    """A managed process could not be started."""


class ProcessManager:
    """Own the process table and its session file.

    Mutations hold one re-entrant lock, so concurrent IPC requests apply one at
    a time and the session is rewritten after each.
    """

    def __init__(
        self,
        paths: ServicePaths,
        *,
        is_alive: Callable[[int], bool] = is_pid_alive,
        stop_timeout_seconds: float = DEFAULT_STOP_TIMEOUT_SECONDS,
    ) -> None:
        self.paths = paths
        self.stop_timeout_seconds = stop_timeout_seconds
        self._is_alive = is_alive
        self._lock = threading.RLock()
        self._children: dict[int, subprocess.Popen[bytes]] = {}
        self._session = load_session(paths.session_path)

    def start(self, spec: ProcessSpec) -> ProcessRecord:
        """Start ``spec`` unless a live process with that name already exists."""

        with self._lock:
            existing = self._session.find(spec.name)
            if existing is not None and self._alive(existing.pid):
                logger.info("Process %s already running (pid %d)", spec.name, existing.pid)
                return existing

            self.paths.logs_dir.mkdir(parents=True, exist_ok=True)
            out_log, err_log = log_paths_for(self.paths, spec.name)
            try:
                with out_log.open("ab") as out_handle, err_log.open("ab") as err_handle:
                    process = subprocess.Popen(  # noqa: S603
                        [spec.command, *spec.args],
                        cwd=spec.cwd,
                        env={**os.environ, **spec.env},
                        stdin=subprocess.DEVNULL,
                        stdout=out_handle,
                        stderr=err_handle,
                        start_new_session=True,
                    )
            except FileNotFoundError as error:
                raise ProcessManagerError(f"Command not found: {spec.command}") from error
            except OSError as error:
                raise ProcessManagerError(f"Failed to start {spec.name}: {error}") from error

            self._children[process.pid] = process
            try:
                pgid = os.getpgid(process.pid)
            except ProcessLookupError:
                pgid = process.pid
            record = ProcessRecord(
                name=spec.name,
                pid=process.pid,
                pgid=pgid,
                started_at=utc_now(),
                command=spec.command,
                args=list(spec.args),
                cwd=spec.cwd,
                out_log_path=str(out_log),
                err_log_path=str(err_log),
            )
            self._session.upsert(record)
            self._save()
        logger.info("Started %s (pid %d)", spec.name, record.pid)
        return record

    def stop(self, name: str, *, timeout_seconds: float | None = None) -> bool:
        """Stop the named process group, escalating to SIGKILL. Returns False if unknown."""

        with self._lock:
            record = self._session.find(name)
            if record is None:
                return False
            if self._alive(record.pid):
                self._terminate(record, timeout_seconds or self.stop_timeout_seconds)
            self._session.remove(name)
            self._save()
        logger.info("Stopped %s (pid %d)", name, record.pid)
        return True

    def status(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {**record.to_json(), "running": self._alive(record.pid)}
                for record in self._session.processes
            ]

    def read_session(self) -> dict[str, Any]:
        with self._lock:
            return self._session.to_json()

    def set_base_url(self, base_url: str | None) -> dict[str, Any]:
        with self._lock:
            self._session.base_url = base_url or None
            self._save()
            return self._session.to_json()

    @property
    def session(self) -> ServiceSession:
        return self._session

    def _terminate(self, record: ProcessRecord, timeout_seconds: float) -> None:
        targets = [record.pid, *_descendants(record.pid)]
        self._signal(record, targets, signal.SIGTERM)
        if self._wait_gone(targets, timeout_seconds):
            return
        logger.warning("Process %s ignored SIGTERM, sending SIGKILL", record.name)
        self._signal(record, targets, signal.SIGKILL)
        if not self._wait_gone(targets, timeout_seconds):
            logger.error("Process %s is still alive after SIGKILL", record.name)

    def _signal(self, record: ProcessRecord, pids: list[int], signum: signal.Signals) -> None:
        try:
            os.killpg(record.pgid, signum)
        except (ProcessLookupError, PermissionError) as error:
            logger.debug("killpg(%d) failed: %s", record.pgid, error)
        for pid in pids:
            try:
                os.kill(pid, signum)
            except (ProcessLookupError, PermissionError):
                continue

    def _wait_gone(self, pids: list[int], timeout_seconds: float) -> bool:
        deadline = time.monotonic() + timeout_seconds
        while True:
            if not any(self._alive(pid) for pid in pids):
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(_POLL_SECONDS)

    def _alive(self, pid: int) -> bool:
        child = self._children.get(pid)
        if child is not None and child.poll() is not None:
            del self._children[pid]
            return False
        return self._is_alive(pid)

    def _save(self) -> None:
        save_session(self.paths.session_path, self._session)


def _descendants(root_pid: int) -> list[int]:
    """Child processes of ``root_pid`` at any depth, from ``ps`` output."""

    try:
        result = run_command(["ps", "-eo", "pid=,ppid="], timeout_seconds=5)
    except OSError as error:
        logger.debug("Could not list processes: %s", error)
        return []
    if not result.ok:
        return []
    children: dict[int, list[int]] = {}
    for line in result.stdout.splitlines():
        parts = line.split()
        if len(parts) != 2 or not all(part.isdigit() for part in parts):
            continue
        pid, ppid = int(parts[0]), int(parts[1])
        children.setdefault(ppid, []).append(pid)

    found: list[int] = []
    pending = [root_pid]
    while pending:
        for child in children.get(pending.pop(), []):
            if child not in found:
                found.append(child)
                pending.append(child)
    return found


def log_paths_for(paths: ServicePaths, name: str) -> tuple[Path, Path]:
    safe_name = _SAFE_NAME_RE.sub("_", name)
    return paths.logs_dir / f"{safe_name}.out.log", paths.logs_dir / f"{safe_name}.err.log"
