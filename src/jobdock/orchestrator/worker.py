"""Singleton background worker that turns queued prompts into dispatched job batches."""

from __future__ import annotations

import logging
import math
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from jobdock.common import append_line, utc_now
from jobdock.config import WorkerSettings
from jobdock.environment.models import CapacityReport, ExecResult
from jobdock.locks import PidLock
from jobdock.orchestrator.dispatch import BatchDispatcher, DispatchOutcome
from jobdock.orchestrator.probe import ChangeRequestProbe, ProbeResult
from jobdock.orchestrator.routing import (
    UNRECOGNIZED_HELP,
    ExplicitIssueKeys,
    ImplicitQuery,
    Intent,
    Unrecognized,
    route,
)
from jobdock.orchestrator.tracker import IssueTracker
from jobdock.queue.models import QueueItem, QueueStatus
from jobdock.queue.store import PromptQueueStore, QueueStoreError

logger = logging.getLogger(__name__)

DEFAULT_PROBE_COMMAND_TEMPLATE = WorkerSettings().probe_command_template
DISPATCH_MARGIN_SECONDS = 300


class WorkerPhase(str, Enum):
    """Per-prompt processing phases recorded in the audit log."""

    IDLE = "idle"
    CLAIMED = "claimed"
    ROUTED = "routed"
    CAPACITY_ENSURED = "capacity_ensured"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"
    FAILED = "failed"


class Environments(Protocol):
    def ensure_warm_capacity(self) -> CapacityReport: ...

    def exec_in_warm(self, name: str, command: str, *, timeout_seconds: float) -> ExecResult: ...


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    timeouts: int = 0
    idle_polls: int = 0
    errors: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.timeouts += other.timeouts
        self.idle_polls += other.idle_polls
        self.errors += other.errors


@dataclass(slots=True)
class ItemOutcome:
    """Terminal decision for one prompt."""

    status: QueueStatus
    result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    timed_out: bool = False


class AuditLog:
    """Append-only, best-effort phase log. Write failures never affect processing."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def write(self, phase: WorkerPhase, message: str = "", **fields: object) -> None:
        parts = [utc_now().isoformat(), f"[{phase.value}]"]
        if message:
            parts.append(message)
        parts += [f"{key}={value}" for key, value in fields.items() if value is not None]
        try:
            append_line(self.path, " ".join(parts))
        except OSError as error:
            logger.debug("Audit log write failed: %s", error)


class PromptWorker:
    """Claims one prompt at a time, routes it, and dispatches its jobs."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: PromptQueueStore,
        environments: Environments,
        dispatcher: BatchDispatcher,
        tracker: IssueTracker | None = None,
        lock: PidLock | None = None,
        audit: AuditLog | None = None,
        poll_interval_seconds: float = 1.5,
        dispatch_timeout_seconds: float | None = None,
        job_timeout_seconds: float = 1_800,
        max_parallel_jobs: int = 4,
        probe_timeout_seconds: float = 45,
        probe_command_template: str = DEFAULT_PROBE_COMMAND_TEMPLATE,
        max_history: int = 200,
        default_queue: str | None = None,
        recover_on_start: bool = True,
    ) -> None:
        self.store = store
        self.environments = environments
        self.dispatcher = dispatcher
        self.tracker = tracker
        self.lock = lock or PidLock(store.lock_path)
        self.audit = audit or AuditLog(store.audit_log_path)
        self.poll_interval_seconds = poll_interval_seconds
        self.dispatch_timeout_seconds = dispatch_timeout_seconds
        self.job_timeout_seconds = job_timeout_seconds
        self.max_parallel_jobs = max_parallel_jobs
        self.probe_timeout_seconds = probe_timeout_seconds
        self.probe_command_template = probe_command_template
        self.max_history = max_history
        self.default_queue = default_queue
        self.recover_on_start = recover_on_start
        self._stop_requested = False
        self._pending: tuple[QueueItem, ItemOutcome] | None = None

    def acquire_lock(self) -> bool:
        """Become the single active worker. Returns False if a live worker already runs."""

        if not self.lock.acquire():
            holder = self.lock.read()
            logger.info("Worker already running (pid %s)", holder.pid if holder else "?")
            return False
        self.audit.write(WorkerPhase.IDLE, "worker started", pid=self.lock.pid)
        if self.recover_on_start:
            for item_id in self.store.recover_interrupted():
                self.audit.write(WorkerPhase.FAILED, "recovered interrupted prompt", id=item_id)
        return True

    def release_lock(self) -> None:
        self.lock.release()
        self.audit.write(WorkerPhase.IDLE, "worker stopped", pid=self.lock.pid)

    def run_once(self) -> WorkerRunSummary:
        """Process at most one prompt from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary
        if self._pending is not None and not self._flush_pending():
            summary.errors = 1
            summary.idle_polls = 1
            return summary

        try:
            self.store.prune_history(self.max_history)
            item = self.store.claim_next()
        except (OSError, QueueStoreError) as error:
            logger.warning("Queue store unavailable, retrying next poll: %s", error)
            summary.errors = 1
            summary.idle_polls = 1
            return summary
        if item is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self.audit.write(WorkerPhase.CLAIMED, item.id)
        try:
            outcome = self.handle(item)
        except Exception as error:  # noqa: BLE001
            logger.exception("Prompt %s failed", item.id)
            outcome = ItemOutcome(
                status=QueueStatus.FAILED,
                error=str(error) or type(error).__name__,
            )

        if outcome.status == QueueStatus.DONE:
            summary.succeeded = 1
        else:
            summary.failed = 1
        if outcome.timed_out:
            summary.timeouts = 1
        self._pending = (item, outcome)
        if not self._flush_pending():
            summary.errors = 1
        return summary

    def run_loop(
        self,
        *,
        max_prompts: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Poll the queue until stopped by a signal.

        Args:
            max_prompts: Stop after processing this many prompts (None = unlimited).
            max_idle_polls: Stop after this many consecutive empty polls (None = never).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while not self._stop_requested:
                if max_prompts is not None and aggregate.processed >= max_prompts:
                    break
                summary = self.run_once()
                aggregate.add(summary)
                if summary.processed:
                    consecutive_idle = 0
                    continue
                consecutive_idle += 1
                if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                    break
                self._sleep_with_stop(self.poll_interval_seconds)
        return aggregate

    def request_stop(self) -> None:
        self._stop_requested = True

    def handle(self, item: QueueItem) -> ItemOutcome:
        """Route one claimed prompt and dispatch the jobs it resolves to."""

        intent = route(item.prompt)
        self.audit.write(WorkerPhase.ROUTED, item.id, intent=intent.type.value)
        result: dict[str, Any] = {"intent": intent.to_json()}
        if isinstance(intent, Unrecognized):
            return ItemOutcome(status=QueueStatus.FAILED, result=result, error=UNRECOGNIZED_HELP)

        capacity = self.environments.ensure_warm_capacity()
        self.audit.write(
            WorkerPhase.CAPACITY_ENSURED,
            item.id,
            warm=",".join(capacity.names),
            created=",".join(capacity.created) or None,
        )

        result["capacity"] = capacity.to_json()
        job_ids, probes = self._resolve_jobs(intent, capacity)
        result["job_ids"] = job_ids
        if probes:
            result["probes"] = [probe.to_json() for probe in probes]
        if not job_ids:
            result["dispatched"] = False
            result["reason"] = "no_issue_keys"
            return ItemOutcome(status=QueueStatus.DONE, result=result)

        outcome = self.dispatcher.dispatch(
            job_ids,
            timeout_seconds=self.dispatch_timeout_for(len(job_ids)),
        )
        self.audit.write(
            WorkerPhase.DISPATCHED,
            item.id,
            jobs=",".join(job_ids),
            ok=outcome.ok,
            timed_out=outcome.timed_out,
        )
        result["dispatched"] = True
        result["dispatch"] = outcome.to_json()
        return _outcome_from_dispatch(outcome, result)

    def dispatch_timeout_for(self, job_count: int) -> float:
        """Configured dispatch timeout, or one job timeout per wave of parallel jobs."""

        if self.dispatch_timeout_seconds is not None:
            return self.dispatch_timeout_seconds
        waves = max(1, math.ceil(job_count / max(1, self.max_parallel_jobs)))
        return self.job_timeout_seconds * waves + DISPATCH_MARGIN_SECONDS

    def _resolve_jobs(
        self,
        intent: Intent,
        capacity: CapacityReport,
    ) -> tuple[list[str], list[ProbeResult]]:
        if isinstance(intent, ExplicitIssueKeys):
            return list(intent.keys), []
        if not isinstance(intent, ImplicitQuery):
            return [], []
        if self.tracker is None:
            raise RuntimeError("Issue tracker is not configured; set JOBDOCK_TRACKER_URL.")
        if not capacity.names:
            raise RuntimeError("No warm worker available for change-request checks.")

        issues = self.tracker.search_open_assigned(queue=intent.queue or self.default_queue)
        probe = ChangeRequestProbe(
            self.environments,
            warm_name=capacity.names[0],
            command_template=self.probe_command_template,
            timeout_seconds=self.probe_timeout_seconds,
        )
        job_ids: list[str] = []
        probes: list[ProbeResult] = []
        for issue in issues:
            if issue.key in job_ids:
                continue
            checked = probe.check(issue)
            probes.append(checked)
            if not checked.exists:
                job_ids.append(issue.key)
        logger.info(
            "Implicit query matched %d open issue(s), %d without a change request",
            len(issues),
            len(job_ids),
        )
        return job_ids, probes

    def _flush_pending(self) -> bool:
        """Persist the last prompt outcome; kept for the next poll if the store fails."""

        if self._pending is None:
            return True
        item, outcome = self._pending
        try:
            if outcome.status == QueueStatus.DONE:
                self.store.mark_done(item.id, outcome.result)
            else:
                self.store.fail_prompt(item.id, outcome.error or "failed", result=outcome.result)
        except OSError as error:
            logger.warning("Could not record outcome of %s, will retry: %s", item.id, error)
            return False
        self._pending = None
        phase = WorkerPhase.COMPLETED if outcome.status == QueueStatus.DONE else WorkerPhase.FAILED
        self.audit.write(phase, item.id, error=outcome.error)
        return True

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Received %s, stopping after current prompt", signal.Signals(signum).name)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _outcome_from_dispatch(outcome: DispatchOutcome, result: dict[str, Any]) -> ItemOutcome:
    if outcome.timed_out:
        if outcome.not_started:
            error = f"Dispatch timed out; never started: {', '.join(outcome.not_started)}"
            return ItemOutcome(
                status=QueueStatus.FAILED,
                result=result,
                error=error,
                timed_out=True,
            )
        # Every job was launched; finishing as done keeps them from being dispatched again.
        return ItemOutcome(status=QueueStatus.DONE, result=result, timed_out=True)
    summary = outcome.summary
    if outcome.ok and (summary is None or summary.failed == 0):
        return ItemOutcome(status=QueueStatus.DONE, result=result)
    if summary is not None and summary.failed:
        error = f"{summary.failed} of {summary.total} job(s) failed"
    else:
        error = outcome.error or "Dispatch failed"
    return ItemOutcome(status=QueueStatus.FAILED, result=result, error=error)
