"""Supervisor session file: the persisted table of managed processes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from jobdock.common import from_iso, read_json, to_iso, utc_now, write_json_atomic

logger = logging.getLogger(__name__)

SESSION_VERSION = 1


@dataclass(slots=True)
class ProcessSpec:
    """What to launch under a unique name."""

    name: str
    command: str
    args: list[str] = field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> ProcessSpec:
        name = params.get("name")
        command = params.get("command")
        if not isinstance(name, str) or not name.strip():
            raise ValueError("process name is required")
        if not isinstance(command, str) or not command.strip():
            raise ValueError("process command is required")
        args = params.get("args") or []
        env = params.get("env") or {}
        if not isinstance(args, list) or not isinstance(env, dict):
            raise ValueError("args must be a list and env an object")
        cwd = params.get("cwd")
        return cls(
            name=name.strip(),
            command=command,
            args=[str(arg) for arg in args],
            cwd=str(cwd) if cwd else None,
            env={str(key): str(value) for key, value in env.items()},
        )


@dataclass(slots=True)
class ProcessRecord:
    """A process the supervisor has started."""

    name: str
    pid: int
    pgid: int
    started_at: datetime
    command: str
    args: list[str]
    cwd: str | None
    out_log_path: str
    err_log_path: str

    def to_json(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "pid": self.pid,
            "pgid": self.pgid,
            "started_at": to_iso(self.started_at),
            "command": self.command,
            "args": self.args,
            "cwd": self.cwd,
            "out_log_path": self.out_log_path,
            "err_log_path": self.err_log_path,
        }

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> ProcessRecord:
        pid = int(payload["pid"])
        return cls(
            name=str(payload["name"]),
            pid=pid,
            pgid=int(payload.get("pgid") or pid),
            started_at=from_iso(payload.get("started_at")) or utc_now(),
            command=str(payload.get("command", "")),
            args=[str(arg) for arg in payload.get("args") or []],
            cwd=payload.get("cwd"),
            out_log_path=str(payload.get("out_log_path", "")),
            err_log_path=str(payload.get("err_log_path", "")),
        )


@dataclass(slots=True)
class ServiceSession:
    version: int = SESSION_VERSION
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    base_url: str | None = None
    processes: list[ProcessRecord] = field(default_factory=list)

    def find(self, name: str) -> ProcessRecord | None:
        return next((record for record in self.processes if record.name == name), None)

    def upsert(self, record: ProcessRecord) -> None:
        self.processes = [item for item in self.processes if item.name != record.name]
        self.processes.append(record)

    def remove(self, name: str) -> ProcessRecord | None:
        record = self.find(name)
        if record is not None:
            self.processes = [item for item in self.processes if item.name != name]
        return record

    def to_json(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "base_url": self.base_url,
            "processes": [record.to_json() for record in self.processes],
        }

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> ServiceSession:
        if payload.get("version") != SESSION_VERSION:
            raise ValueError(f"unsupported session version {payload.get('version')!r}")
        processes = payload.get("processes")
        if not isinstance(processes, list):
            raise ValueError("session processes must be a list")
        return cls(
            version=SESSION_VERSION,
            created_at=from_iso(payload.get("created_at")) or utc_now(),
            updated_at=from_iso(payload.get("updated_at")) or utc_now(),
            base_url=payload.get("base_url") or None,
            processes=[ProcessRecord.from_json(item) for item in processes],
        )


def load_session(path: Path) -> ServiceSession:
    """Load the session, starting fresh when the file is missing or invalid."""

    payload = read_json(path, None)
    if payload is None:
        return ServiceSession()
    try:
        if not isinstance(payload, dict):
            raise ValueError("session must be an object")
        return ServiceSession.from_json(payload)
    except (KeyError, TypeError, ValueError) as error:
        logger.warning("Ignoring invalid session file %s: %s", path, error)
        return ServiceSession()


def save_session(path: Path, session: ServiceSession) -> None:
    session.updated_at = utc_now()
    write_json_atomic(path, session.to_json())
