"""Supervisor process: singleton ownership, method dispatch and the serve loop."""

from __future__ import annotations

import logging
import os
import signal
import threading
from collections.abc import Callable
from typing import Any

from jobdock.common import safe_unlink, utc_now
from jobdock.locks import LockRecord, PidLock, is_pid_alive
from jobdock.supervisor.ipc import IpcServer, can_connect
from jobdock.supervisor.paths import ServicePaths
from jobdock.supervisor.process_manager import DEFAULT_STOP_TIMEOUT_SECONDS, ProcessManager
from jobdock.supervisor.session import ProcessSpec

logger = logging.getLogger(__name__)

# How long a freshly started owner may hold the lock before its socket answers.
STARTUP_GRACE_SECONDS = 5.0


class UnknownMethodError(LookupError):
    """The IPC request named a method the supervisor does not implement."""


class SupervisorService:
    """Map IPC method names onto process-manager operations."""

    def __init__(self, manager: ProcessManager) -> None:
        self.manager = manager
        self._handlers: dict[str, Callable[[dict[str, Any]], Any]] = {
            "ping": self._ping,
            "process.start": self._start,
            "process.stop": self._stop,
            "process.status": self._status,
            "process.readSession": self._read_session,
            "process.setBaseUrl": self._set_base_url,
        }

    def dispatch(self, method: str, params: dict[str, Any]) -> Any:
        handler = self._handlers.get(method)
        if handler is None:
            raise UnknownMethodError(f"Unknown method: {method}")
        return handler(params)

    def _ping(self, _: dict[str, Any]) -> dict[str, Any]:
        return {"ok": True, "pid": os.getpid()}

    def _start(self, params: dict[str, Any]) -> dict[str, Any]:
        return self.manager.start(ProcessSpec.from_params(params)).to_json()

    def _stop(self, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise ValueError("process name is required")
        timeout_ms = params.get("timeout_ms")
        timeout_seconds = None
        if timeout_ms is not None:
            timeout_seconds = float(timeout_ms) / 1000
            if timeout_seconds <= 0:
                raise ValueError("timeout_ms must be > 0")
        stopped = self.manager.stop(name, timeout_seconds=timeout_seconds)
        return {"name": name, "stopped": stopped}

    def _status(self, _: dict[str, Any]) -> list[dict[str, Any]]:
        return self.manager.status()

    def _read_session(self, _: dict[str, Any]) -> dict[str, Any]:
        return self.manager.read_session()

    def _set_base_url(self, params: dict[str, Any]) -> dict[str, Any]:
        base_url = params.get("base_url")
        if base_url is not None and not isinstance(base_url, str):
            raise ValueError("base_url must be a string")
        return self.manager.set_base_url(base_url)


def acquire_singleton(
    paths: ServicePaths,
    *,
    is_alive: Callable[[int], bool] = is_pid_alive,
    pid: int | None = None,
    startup_grace_seconds: float = STARTUP_GRACE_SECONDS,
) -> bool:
    """Claim supervisor ownership for this process.

    An existing owner keeps the role while its pid is alive and either its
    socket accepts connections or it took the lock less than
    ``startup_grace_seconds`` ago and may still be binding. Otherwise the stale
    lock and socket are removed.
    """

    paths.ensure_dirs()
    lock = PidLock(paths.lock_path, pid=pid, is_alive=is_alive)

    def _socket_answers(holder: LockRecord) -> bool:
        if can_connect(paths.socket_path):
            return True
        if holder.started_at is None:
            return False
        age = (utc_now() - holder.started_at).total_seconds()
        return 0 <= age < startup_grace_seconds

    if not lock.acquire(holder_check=_socket_answers):
        return False
    if paths.socket_path.exists():
        logger.info("Removing stale supervisor socket %s", paths.socket_path)
        safe_unlink(paths.socket_path)
    return True


class SupervisorDaemon:
    """Owns the IPC server for one supervisor lifetime."""

    def __init__(
        self,
        paths: ServicePaths,
        *,
        stop_timeout_seconds: float = DEFAULT_STOP_TIMEOUT_SECONDS,
    ) -> None:
        self.paths = paths
        self.stop_timeout_seconds = stop_timeout_seconds
        self.server: IpcServer | None = None

    def open(self) -> bool:
        """Acquire the singleton role and bind the socket. False if another instance owns it."""

        if not acquire_singleton(self.paths):
            logger.info("Supervisor already running (socket: %s)", self.paths.socket_path)
            return False
        manager = ProcessManager(self.paths, stop_timeout_seconds=self.stop_timeout_seconds)
        self.server = IpcServer(self.paths.socket_path, SupervisorService(manager).dispatch)
        logger.info("Supervisor listening on %s (pid %d)", self.paths.socket_path, os.getpid())
        return True

    def serve_forever(self) -> None:
        if self.server is None:
            raise RuntimeError("Supervisor socket is not open")
        try:
            self.server.serve_forever(poll_interval=0.2)
        finally:
            self.close()

    def shutdown(self) -> None:
        """Stop serving; safe to call from any thread except the serving one."""

        if self.server is not None:
            self.server.shutdown()

    def close(self) -> None:
        if self.server is None:
            return
        self.server.server_close()
        self.server = None
        safe_unlink(self.paths.socket_path)
        PidLock(self.paths.lock_path).release()
        logger.info("Supervisor stopped")


def serve(
    paths: ServicePaths,
    *,
    stop_timeout_seconds: float = DEFAULT_STOP_TIMEOUT_SECONDS,
) -> bool:
    """Run the supervisor until SIGTERM/SIGINT. Returns False if another instance owns the role."""

    daemon = SupervisorDaemon(paths, stop_timeout_seconds=stop_timeout_seconds)
    if not daemon.open():
        return False
    original = {signum: signal.getsignal(signum) for signum in (signal.SIGINT, signal.SIGTERM)}

    def _handler(signum: int, _: object | None) -> None:
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        # shutdown() waits for serve_forever to return, so it cannot run on the serving thread.
        threading.Thread(target=daemon.shutdown, daemon=True).start()

    for signum in original:
        signal.signal(signum, _handler)
    try:
        daemon.serve_forever()
    finally:
        for signum, handler in original.items():
            signal.signal(signum, handler)
    return True
