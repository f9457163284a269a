"""Newline-delimited JSON request/response over a unix domain socket."""

from __future__ import annotations

import itertools
import json
import logging
import socket
import socketserver
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_CALL_TIMEOUT_SECONDS = 10.0

Dispatch = Callable[[str, dict[str, Any]], Any]


class SupervisorCallError(RuntimeError):
    """The supervisor answered with an error, or the call could not complete."""

    def __init__(self, message: str, *, error_type: str = "SupervisorCallError") -> None:
        super().__init__(message)
        self.error_type = error_type


class SupervisorConnectionError(SupervisorCallError):
    """Nothing is listening on the supervisor socket."""


def encode_message(message: dict[str, Any]) -> bytes:
    return (json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8")


class _RequestHandler(socketserver.StreamRequestHandler):
    server: IpcServer

    def handle(self) -> None:
        for raw_line in self.rfile:
            line = raw_line.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except (UnicodeDecodeError, json.JSONDecodeError) as error:
                self._send(
                    {
                        "id": None,
                        "error": {"type": "ParseError", "message": f"Invalid JSON: {error}"},
                    },
                )
                return
            if not isinstance(message, dict) or "method" not in message:
                continue
            self._send(self._respond(message))

    def _respond(self, message: dict[str, Any]) -> dict[str, Any]:
        request_id = message.get("id")
        params = message.get("params")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            return {
                "id": request_id,
                "error": {"type": "ValueError", "message": "params must be an object"},
            }
        try:
            result = self.server.dispatch(str(message["method"]), params)
        except Exception as error:  # noqa: BLE001
            logger.info("IPC %s failed: %s", message["method"], error)
            return {
                "id": request_id,
                "error": {"type": type(error).__name__, "message": str(error)},
            }
        return {"id": request_id, "result": result}

    def _send(self, message: dict[str, Any]) -> None:
        try:
            self.wfile.write(encode_message(message))
            self.wfile.flush()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("IPC client went away before the response was written")


class IpcServer(socketserver.ThreadingUnixStreamServer):
    """One thread per connection; ``dispatch`` maps a method name and params to a result."""

    daemon_threads = True

    def __init__(self, socket_path: Path, dispatch: Dispatch) -> None:
        self.dispatch = dispatch
        self.socket_path = socket_path
        super().__init__(str(socket_path), _RequestHandler)


class IpcClient:
    """Send one request per connection and wait for the response carrying its id."""

    def __init__(
        self,
        socket_path: Path,
        *,
        timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
    ) -> None:
        self.socket_path = socket_path
        self.timeout_seconds = timeout_seconds
        self._ids = itertools.count(1)
        self._ids_lock = threading.Lock()

    def request(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Build the next request message; ids increase by one per request."""

        with self._ids_lock:
            request_id = next(self._ids)
        return {"id": request_id, "method": method, "params": params or {}}

    def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout_seconds: float | None = None,
    ) -> Any:
        """Send one request and return its result.

        ``timeout_seconds`` overrides the client default for this call only.
        """

        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        message = self.request(method, params)
        request_id = message["id"]
        payload = encode_message(message)
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            try:
                sock.connect(str(self.socket_path))
            except OSError as error:
                raise SupervisorConnectionError(
                    f"Supervisor is not reachable at {self.socket_path}: {error}",
                ) from error
            try:
                sock.sendall(payload)
                with sock.makefile("rb") as reader:
                    for raw_line in reader:
                        response = _parse_response(raw_line)
                        if response is None or response.get("id") != request_id:
                            continue
                        return _unwrap(response)
            except TimeoutError as error:
                raise SupervisorCallError(
                    f"Supervisor call {method} timed out after {timeout:.1f}s",
                ) from error
            except OSError as error:
                raise SupervisorCallError(f"Supervisor call {method} failed: {error}") from error
        raise SupervisorCallError(f"Supervisor closed the connection during {method}")


def can_connect(socket_path: Path, *, timeout_seconds: float = 0.5) -> bool:
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout_seconds)
        try:
            sock.connect(str(socket_path))
        except OSError:
            return False
    return True


def _parse_response(raw_line: bytes) -> dict[str, Any] | None:
    try:
        message = json.loads(raw_line)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return message if isinstance(message, dict) else None


def _unwrap(response: dict[str, Any]) -> Any:
    error = response.get("error")
    if error is not None:
        if isinstance(error, dict):
            raise SupervisorCallError(
                str(error.get("message", "unknown error")),
                error_type=str(error.get("type", "Error")),
            )
        raise SupervisorCallError(str(error))
    return response.get("result")
