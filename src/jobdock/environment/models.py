"""Descriptors and results for container environments."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

MAX_CONTAINER_NAME_LENGTH = 63
_UNSAFE_NAME_CHARS_RE = re.compile(r"[^a-z0-9_.-]+")


class EnvironmentKind(str, Enum):
    WARM_WORKER = "warm-worker"
    JOB = "job"
    SERVICE = "service"


@dataclass(slots=True, frozen=True)
class Mount:
    source: Path
    target: str
    read_only: bool = True

    def to_arg(self) -> str:
        spec = f"{self.source.resolve()}:{self.target}"
        return f"{spec}:ro" if self.read_only else f"{spec}:rw"


@dataclass(slots=True)
class EnvironmentDescriptor:
    """Everything needed to create one container."""

    name: str
    kind: EnvironmentKind
    image: str
    network: str
    cpu_limit: str | None = None
    mem_limit: str | None = None
    mounts: list[Mount] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    platform: str | None = None
    restart_policy: str | None = None
    workdir: str | None = None

    def run_args(self, command: list[str], *, detach: bool, remove: bool) -> list[str]:
        """Build ``docker run`` arguments for this descriptor."""

        args = ["run"]
        if detach:
            args.append("-d")
        if remove:
            args.append("--rm")
        args += ["--name", self.name, "--network", self.network]
        if self.platform:
            args += ["--platform", self.platform]
        if self.cpu_limit:
            args += ["--cpus", self.cpu_limit]
        if self.mem_limit:
            args += ["--memory", self.mem_limit]
        if self.restart_policy:
            args += ["--restart", self.restart_policy]
        if self.workdir:
            args += ["--workdir", self.workdir]
        labels = {"jobdock.kind": self.kind.value, **self.labels}
        for key, value in labels.items():
            args += ["--label", f"{key}={value}"]
        for mount in self.mounts:
            args += ["-v", mount.to_arg()]
        for key, value in self.env.items():
            args += ["-e", f"{key}={value}"]
        args.append(self.image)
        args += command
        return args


@dataclass(slots=True)
class JobResult:
    """Outcome of one one-shot job container."""

    job_id: str
    container: str
    ok: bool
    exit_code: int | None
    timed_out: bool = False
    duration_seconds: float = 0.0
    log_path: Path | None = None
    error: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "container": self.container,
            "ok": self.ok,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "duration_seconds": round(self.duration_seconds, 3),
            "log_path": str(self.log_path) if self.log_path else None,
            "error": self.error,
        }

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> JobResult:
        log_path = payload.get("log_path")
        return cls(
            job_id=str(payload["job_id"]),
            container=str(payload.get("container", "")),
            ok=bool(payload.get("ok")),
            exit_code=payload.get("exit_code"),
            timed_out=bool(payload.get("timed_out", False)),
            duration_seconds=float(payload.get("duration_seconds", 0.0)),
            log_path=Path(log_path) if log_path else None,
            error=payload.get("error"),
        )


@dataclass(slots=True)
class BatchSummary:
    """Aggregate of a job batch, in input order."""

    total: int
    succeeded: int
    failed: int
    results: list[JobResult]

    @classmethod
    def from_results(cls, results: list[JobResult]) -> BatchSummary:
        succeeded = sum(1 for result in results if result.ok)
        return cls(
            total=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
            results=results,
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "results": [result.to_json() for result in self.results],
        }

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> BatchSummary:
        return cls.from_results([JobResult.from_json(item) for item in payload.get("results", [])])


@dataclass(slots=True, frozen=True)
class ExecResult:
    """Outcome of a command run inside a warm environment.

    ``timed_out`` means the outcome is unknown, not that the command failed.
    """

    ok: bool
    timed_out: bool
    exit_code: int | None
    stdout: str
    stderr: str


@dataclass(slots=True)
class CapacityReport:
    names: list[str]
    created: list[str] = field(default_factory=list)
    started: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    def to_json(self) -> dict[str, Any]:
        return {
            "names": self.names,
            "created": self.created,
            "started": self.started,
            "removed": self.removed,
        }


def job_container_name(job_id: str, *, prefix: str = "jobdock-job-") -> str:
    """Deterministic container name for ``job_id``.

    The same job id always maps to the same name, so a second concurrent run
    of one job collides in the runtime and fails instead of duplicating work.
    """

    safe = _UNSAFE_NAME_CHARS_RE.sub("-", job_id.strip().lower()).strip("-.") or "job"
    return f"{prefix}{safe}"[:MAX_CONTAINER_NAME_LENGTH]


def warm_container_name(index: int, *, prefix: str = "jobdock-worker-") -> str:
    return f"{prefix}{index}"
