"""Hand a batch of job ids to the environment runner as a bounded child process."""

from __future__ import annotations

import json
import logging
import sys
import tempfile
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from jobdock.environment.models import BatchSummary
from jobdock.subprocesses import run_command

logger = logging.getLogger(__name__)

PROGRESS_FILE_NAME = "started.txt"


@dataclass(slots=True)
class DispatchOutcome:
    """Result of one batch dispatch.

    ``timed_out`` means the batch was killed while running. ``started`` lists
    the jobs that had been launched by then and ``not_started`` the ones that
    never were; callers must not dispatch the started jobs again.
    """

    ok: bool
    timed_out: bool
    exit_code: int | None
    summary: BatchSummary | None = None
    error: str | None = None
    started: list[str] = field(default_factory=list)
    not_started: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ok": self.ok,
            "timed_out": self.timed_out,
            "exit_code": self.exit_code,
            "summary": self.summary.to_json() if self.summary else None,
            "error": self.error,
        }
        if self.timed_out:
            payload["started"] = self.started
            payload["not_started"] = self.not_started
            payload["removed"] = self.removed
        return payload


class BatchDispatcher(Protocol):
    def dispatch(self, job_ids: Sequence[str], *, timeout_seconds: float) -> DispatchOutcome:
        """Run ``job_ids`` as one batch and report the aggregate outcome."""


class SubprocessBatchDispatcher:
    """Run ``jobdock env batch --json`` in a child interpreter with a hard timeout.

    The child gets its own session so a timeout kills it together with every
    container client it spawned. ``cleanup`` is then called with the dispatched
    ids to force-remove their containers.
    """

    def __init__(
        self,
        *,
        python_executable: str = sys.executable,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        cleanup: Callable[[Sequence[str]], Sequence[str]] | None = None,
    ) -> None:
        self.python_executable = python_executable
        self.cwd = cwd
        self.env = env
        self.cleanup = cleanup

    def command(self, job_ids: Sequence[str], *, progress_path: Path | None = None) -> list[str]:
        args = [self.python_executable, "-m", "jobdock.main", "env", "batch", "--json"]
        if progress_path is not None:
            args += ["--progress-file", str(progress_path)]
        return [*args, *job_ids]

    def dispatch(self, job_ids: Sequence[str], *, timeout_seconds: float) -> DispatchOutcome:
        logger.info("Dispatching %d job(s): %s", len(job_ids), ", ".join(job_ids))
        with tempfile.TemporaryDirectory(prefix="jobdock-dispatch-") as tmp:
            progress_path = Path(tmp) / PROGRESS_FILE_NAME
            result = run_command(
                self.command(job_ids, progress_path=progress_path),
                timeout_seconds=timeout_seconds,
                cwd=self.cwd,
                env=self.env,
                new_session=True,
            )
            if result.timed_out:
                return self._timed_out(job_ids, timeout_seconds, read_started(progress_path))

        summary = parse_batch_summary(result.stdout)
        error = None
        if result.exit_code != 0:
            tail = [line for line in result.stderr.strip().splitlines() if line.strip()]
            error = tail[-1] if tail else f"Dispatch exited with code {result.exit_code}"
        return DispatchOutcome(
            ok=result.exit_code == 0,
            timed_out=False,
            exit_code=result.exit_code,
            summary=summary,
            error=error,
        )

    def _timed_out(
        self,
        job_ids: Sequence[str],
        timeout_seconds: float,
        started: set[str],
    ) -> DispatchOutcome:
        not_started = [job_id for job_id in job_ids if job_id not in started]
        logger.warning(
            "Batch dispatch timed out after %.0fs; %d job(s) never started",
            timeout_seconds,
            len(not_started),
        )
        removed: list[str] = []
        if self.cleanup is not None:
            try:
                removed = list(self.cleanup(job_ids))
            except (RuntimeError, OSError) as error:
                logger.warning("Could not remove containers after dispatch timeout: %s", error)
        return DispatchOutcome(
            ok=False,
            timed_out=True,
            exit_code=None,
            error=f"Dispatch timed out after {timeout_seconds:.0f}s",
            started=[job_id for job_id in job_ids if job_id in started],
            not_started=not_started,
            removed=removed,
        )


def read_started(path: Path) -> set[str]:
    """Job ids recorded by the batch runner as launched."""

    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return set()
    return {line.strip() for line in text.splitlines() if line.strip()}


def parse_batch_summary(stdout: str) -> BatchSummary | None:
    """Parse the last JSON object printed by ``env batch --json``."""

    for raw_line in reversed(stdout.strip().splitlines()):
        line = raw_line.strip()
        if not line.startswith("{"):
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict) and "results" in payload:
            try:
                return BatchSummary.from_json(payload)
            except (KeyError, TypeError, ValueError) as error:
                logger.warning("Malformed batch summary: %s", error)
                return None
    return None
