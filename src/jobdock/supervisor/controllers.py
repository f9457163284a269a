"""Controllers for supervisor CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from jobdock.config import Settings
from jobdock.supervisor.client import SupervisorClient
from jobdock.supervisor.paths import ServicePaths
from jobdock.supervisor.service import serve
from jobdock.supervisor.session import ProcessSpec


@dataclass(slots=True)
class ServiceStartProcessCommand:
    """CLI input for starting a supervised process."""

    name: str
    command: str
    args: tuple[str, ...] = ()
    cwd: Path | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ServiceStopProcessCommand:
    """CLI input for stopping a supervised process."""

    name: str
    timeout_ms: int | None = None


class SupervisorCliController:
    """Application controller for the process supervisor."""

    def serve(self) -> list[str]:
        settings = Settings.from_env()
        settings.validate_for_supervisor()
        paths = ServicePaths.for_root(settings.supervisor.root_dir)
        if not serve(paths, stop_timeout_seconds=settings.supervisor.stop_timeout_seconds):
            return [f"Supervisor already running (socket: {paths.socket_path})"]
        return ["Supervisor stopped."]

    def ping(self) -> list[str]:
        result = _client().ping()
        return [f"Supervisor is up: pid={result.get('pid')}"]

    def start_process(self, command: ServiceStartProcessCommand) -> list[str]:
        record = _client().start_process(
            ProcessSpec(
                name=command.name,
                command=command.command,
                args=list(command.args),
                cwd=str(command.cwd) if command.cwd else None,
                env=dict(command.env),
            ),
        )
        return [
            f"Process running: name={record['name']} pid={record['pid']} pgid={record['pgid']}",
            f"Logs: {record['out_log_path']} {record['err_log_path']}",
        ]

    def stop_process(self, command: ServiceStopProcessCommand) -> list[str]:
        result = _client().stop_process(command.name, timeout_ms=command.timeout_ms)
        if not result.get("stopped"):
            return [f"No such process: {command.name}"]
        return [f"Process stopped: {command.name}"]

    def status(self) -> list[str]:
        records = _client().status()
        if not records:
            return ["No supervised processes."]
        return [_render_record(record) for record in records]

    def session(self) -> list[str]:
        return json.dumps(_client().read_session(), indent=2, ensure_ascii=False).splitlines()

    def set_base_url(self, base_url: str | None) -> list[str]:
        session = _client().set_base_url(base_url)
        return [f"Base URL: {session.get('base_url') or '-'}"]


def _client() -> SupervisorClient:
    settings = Settings.from_env()
    settings.validate_for_supervisor()
    return SupervisorClient(
        ServicePaths.for_root(settings.supervisor.root_dir),
        timeout_seconds=settings.supervisor.call_timeout_seconds,
        start_retries=settings.supervisor.start_retries,
        start_interval_seconds=settings.supervisor.start_retry_interval_seconds,
        stop_timeout_seconds=settings.supervisor.stop_timeout_seconds,
    )


def _render_record(record: dict[str, Any]) -> str:
    state = "running" if record.get("running") else "exited"
    return (
        f"{record['name']} {state} pid={record['pid']} "
        f"started_at={record.get('started_at')} command={record.get('command')}"
    )
