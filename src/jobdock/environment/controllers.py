"""Controllers for container environment CLI commands."""

from __future__ import annotations

import functools
import json
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from jobdock.common import append_line
from jobdock.config import Settings
from jobdock.environment.models import BatchSummary
from jobdock.environment.orchestrator import EnvironmentOrchestrator


@dataclass(slots=True)
class EnvBatchCommand:
    """CLI input for running a batch of jobs."""

    job_ids: tuple[str, ...]
    as_json: bool = False
    progress_file: Path | None = None


@dataclass(slots=True)
class EnvExecCommand:
    """CLI input for a command inside a warm worker."""

    name: str | None
    command: str
    timeout_seconds: float


@dataclass(slots=True)
class EnvBatchResult:
    lines: list[str]
    success: bool


class EnvironmentCliController:
    """Application controller for container environment commands."""

    def ensure(self) -> list[str]:
        orchestrator = _orchestrator()
        report = orchestrator.ensure_warm_capacity()
        service = orchestrator.ensure_service()
        lines = [
            f"Warm workers: {', '.join(report.names)}",
            f"Created: {', '.join(report.created) or '-'}",
            f"Started: {', '.join(report.started) or '-'}",
        ]
        if service is not None:
            state = "started" if service else "already running"
            lines.append(f"Service container: {state}")
        return lines

    def run_batch(self, command: EnvBatchCommand) -> EnvBatchResult:
        orchestrator = _orchestrator()
        orchestrator.ensure_network()
        orchestrator.ensure_base_image()
        on_start: Callable[[str], None] | None = None
        if command.progress_file is not None:
            on_start = functools.partial(append_line, command.progress_file)
        summary = orchestrator.run_batch(list(dict.fromkeys(command.job_ids)), on_start=on_start)
        success = summary.failed == 0
        if command.as_json:
            return EnvBatchResult(lines=[json.dumps(summary.to_json())], success=success)
        return EnvBatchResult(lines=_render_summary(summary), success=success)

    def exec_in_warm(self, command: EnvExecCommand) -> EnvBatchResult:
        orchestrator = _orchestrator()
        report = orchestrator.ensure_warm_capacity()
        name = command.name or report.names[0]
        result = orchestrator.exec_in_warm(
            name,
            command.command,
            timeout_seconds=command.timeout_seconds,
        )
        lines = result.stdout.rstrip("\n").splitlines()
        if result.stderr.strip():
            lines += [f"stderr: {line}" for line in result.stderr.rstrip("\n").splitlines()]
        if result.timed_out:
            lines.append(f"Timed out after {command.timeout_seconds:.0f}s (outcome unknown)")
        elif not result.ok:
            lines.append(f"Exit code: {result.exit_code}")
        return EnvBatchResult(lines=lines, success=result.ok)

    def recreate(self) -> list[str]:
        report = _orchestrator().recreate()
        return [
            f"Removed: {', '.join(report.removed) or '-'}",
            f"Warm workers: {', '.join(report.names)}",
        ]


def _orchestrator() -> EnvironmentOrchestrator:
    settings = Settings.from_env()
    settings.validate_for_environment()
    return EnvironmentOrchestrator(settings.environment)


def _render_summary(summary: BatchSummary) -> list[str]:
    lines = [
        f"Batch: total={summary.total} succeeded={summary.succeeded} failed={summary.failed}",
    ]
    for result in summary.results:
        status = "ok" if result.ok else ("timeout" if result.timed_out else "fail")
        line = f"{result.job_id} {status} container={result.container}"
        if result.log_path:
            line += f" log={result.log_path}"
        if result.error:
            line += f" error={result.error}"
        lines.append(line)
    return lines
