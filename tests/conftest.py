"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

import pytest

from jobdock.environment.models import BatchSummary, CapacityReport, ExecResult, JobResult
from jobdock.orchestrator.dispatch import DispatchOutcome
from jobdock.orchestrator.tracker import TrackerIssue


@dataclass
class FakeEnvironments:
    """Warm-capacity and exec double for worker tests."""

    timed_out_branches: set[str] = field(default_factory=set)
    existing_branches: set[str] = field(default_factory=set)
    capacity_calls: int = 0
    exec_commands: list[str] = field(default_factory=list)
    fail_capacity: Exception | None = None

    def ensure_warm_capacity(self) -> CapacityReport:
        self.capacity_calls += 1
        if self.fail_capacity is not None:
            raise self.fail_capacity
        return CapacityReport(names=["jobdock-worker-1"])

    def exec_in_warm(self, name: str, command: str, *, timeout_seconds: float) -> ExecResult:
        self.exec_commands.append(command)
        if any(branch in command for branch in self.timed_out_branches):
            return ExecResult(ok=False, timed_out=True, exit_code=None, stdout="", stderr="")
        exists = any(branch in command for branch in self.existing_branches)
        return ExecResult(
            ok=exists,
            timed_out=False,
            exit_code=0 if exists else 2,
            stdout="",
            stderr="",
        )


@dataclass
class FakeDispatcher:
    """Batch dispatcher double recording every dispatched batch."""

    batches: list[list[str]] = field(default_factory=list)
    timed_out: bool = False
    not_started: list[str] = field(default_factory=list)
    failed_jobs: set[str] = field(default_factory=set)
    timeouts: list[float] = field(default_factory=list)

    def dispatch(self, job_ids: Sequence[str], *, timeout_seconds: float) -> DispatchOutcome:
        self.batches.append(list(job_ids))
        self.timeouts.append(timeout_seconds)
        if self.timed_out:
            return DispatchOutcome(
                ok=False,
                timed_out=True,
                exit_code=None,
                error="timed out",
                started=[job_id for job_id in job_ids if job_id not in self.not_started],
                not_started=[job_id for job_id in job_ids if job_id in self.not_started],
            )
        summary = BatchSummary.from_results(
            [
                JobResult(
                    job_id=job_id,
                    container=f"jobdock-job-{job_id.lower()}",
                    ok=job_id not in self.failed_jobs,
                    exit_code=1 if job_id in self.failed_jobs else 0,
                )
                for job_id in job_ids
            ],
        )
        ok = summary.failed == 0
        return DispatchOutcome(ok=ok, timed_out=False, exit_code=0 if ok else 1, summary=summary)


@dataclass
class FakeTracker:
    issues: list[TrackerIssue] = field(default_factory=list)
    queries: list[str | None] = field(default_factory=list)

    def search_open_assigned(self, *, queue: str | None) -> list[TrackerIssue]:
        self.queries.append(queue)
        return list(self.issues)


@pytest.fixture()
def fake_environments() -> FakeEnvironments:
    return FakeEnvironments()


@pytest.fixture()
def fake_dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path) -> None:
    """Keep settings from leaking in from the developer environment."""

    monkeypatch.setenv("JOBDOCK_STATE_DIR", str(tmp_path / "prompts"))
    monkeypatch.setenv("JOBDOCK_SERVICE_DIR", str(tmp_path / "service"))
    monkeypatch.setenv("JOBDOCK_CACHE_DIR", str(tmp_path / "jobs"))
    for name in ("JOBDOCK_TRACKER_URL", "JOBDOCK_TRACKER_TOKEN", "JOBDOCK_TRACKER_QUEUE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def fake_tracker() -> FakeTracker:
    return FakeTracker()
