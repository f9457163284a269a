"""Client side of the supervisor: auto-start on demand and typed method wrappers."""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import time
from collections.abc import Callable
from typing import Any

from jobdock.supervisor.ipc import DEFAULT_CALL_TIMEOUT_SECONDS, IpcClient, can_connect
from jobdock.supervisor.paths import ServicePaths
from jobdock.supervisor.process_manager import DEFAULT_STOP_TIMEOUT_SECONDS, log_paths_for
from jobdock.supervisor.session import ProcessSpec

logger = logging.getLogger(__name__)

DEFAULT_START_RETRIES = 100
DEFAULT_START_INTERVAL_SECONDS = 0.05
SERVICE_LOG_NAME = "service"
# Extra time a stop call may take beyond SIGTERM grace plus SIGKILL wait.
STOP_CALL_MARGIN_SECONDS = 2.0


class SupervisorStartError(RuntimeError):
    """The supervisor was not reachable and could not be started."""


def supervisor_command() -> list[str]:
    return [sys.executable, "-m", "jobdock.main", "service", "serve"]


def spawn_supervisor(paths: ServicePaths) -> int:
    """Launch a detached supervisor whose output goes to the service logs. Returns its pid."""

    paths.ensure_dirs()
    out_log, err_log = log_paths_for(paths, SERVICE_LOG_NAME)
    env = {**os.environ, "JOBDOCK_SERVICE_DIR": str(paths.root_dir)}
    with out_log.open("ab") as out_handle, err_log.open("ab") as err_handle:
        process = subprocess.Popen(  # noqa: S603
            supervisor_command(),
            stdin=subprocess.DEVNULL,
            stdout=out_handle,
            stderr=err_handle,
            env=env,
            start_new_session=True,
        )
    logger.info("Spawned supervisor (pid %d)", process.pid)
    return process.pid


def ensure_running(
    paths: ServicePaths,
    *,
    retries: int = DEFAULT_START_RETRIES,
    interval_seconds: float = DEFAULT_START_INTERVAL_SECONDS,
    spawn: Callable[[ServicePaths], object] = spawn_supervisor,
) -> bool:
    """Make sure a supervisor answers on the socket. Returns True if one had to be spawned.

    Idempotent: concurrent callers may each spawn, but only one spawned instance
    wins the singleton lock and the others exit.
    """

    if can_connect(paths.socket_path):
        return False
    try:
        spawn(paths)
    except OSError as error:
        raise SupervisorStartError(f"Failed to spawn supervisor: {error}") from error
    for _ in range(retries):
        if can_connect(paths.socket_path):
            return True
        time.sleep(interval_seconds)
    out_log, err_log = log_paths_for(paths, SERVICE_LOG_NAME)
    raise SupervisorStartError(
        f"Supervisor did not start listening on {paths.socket_path}. "
        f"Check {out_log} and {err_log}.",
    )


class SupervisorClient:
    """Typed wrappers over IPC methods; each call starts the supervisor when needed."""

    def __init__(
        self,
        paths: ServicePaths,
        *,
        timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        auto_start: bool = True,
        start_retries: int = DEFAULT_START_RETRIES,
        start_interval_seconds: float = DEFAULT_START_INTERVAL_SECONDS,
        stop_timeout_seconds: float = DEFAULT_STOP_TIMEOUT_SECONDS,
    ) -> None:
        self.paths = paths
        self.timeout_seconds = timeout_seconds
        self.stop_timeout_seconds = stop_timeout_seconds
        self.auto_start = auto_start
        self.start_retries = start_retries
        self.start_interval_seconds = start_interval_seconds
        self._ipc = IpcClient(paths.socket_path, timeout_seconds=timeout_seconds)

    def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout_seconds: float | None = None,
    ) -> Any:
        if self.auto_start:
            ensure_running(
                self.paths,
                retries=self.start_retries,
                interval_seconds=self.start_interval_seconds,
            )
        return self._ipc.call(method, params, timeout_seconds=timeout_seconds)

    def ping(self) -> dict[str, Any]:
        return self.call("ping")

    def start_process(self, spec: ProcessSpec) -> dict[str, Any]:
        return self.call(
            "process.start",
            {
                "name": spec.name,
                "command": spec.command,
                "args": spec.args,
                "cwd": spec.cwd,
                "env": spec.env,
            },
        )

    def stop_process(self, name: str, *, timeout_ms: int | None = None) -> dict[str, Any]:
        """Stop ``name``; the call waits out both the SIGTERM grace and the SIGKILL wait."""

        params: dict[str, Any] = {"name": name}
        stop_seconds = self.stop_timeout_seconds
        if timeout_ms is not None:
            params["timeout_ms"] = timeout_ms
            stop_seconds = timeout_ms / 1000
        call_timeout = max(self.timeout_seconds, 2 * stop_seconds + STOP_CALL_MARGIN_SECONDS)
        return self.call("process.stop", params, timeout_seconds=call_timeout)

    def status(self) -> list[dict[str, Any]]:
        return self.call("process.status")

    def read_session(self) -> dict[str, Any]:
        return self.call("process.readSession")

    def set_base_url(self, base_url: str | None) -> dict[str, Any]:
        return self.call("process.setBaseUrl", {"base_url": base_url})
