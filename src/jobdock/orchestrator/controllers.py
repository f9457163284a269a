"""Controllers for prompt queue and background worker CLI commands."""

from __future__ import annotations

import json
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path

from jobdock.config import Settings
from jobdock.environment.orchestrator import EnvironmentOrchestrator
from jobdock.locks import PidLock, is_pid_alive
from jobdock.orchestrator.dispatch import SubprocessBatchDispatcher
from jobdock.orchestrator.routing import route
from jobdock.orchestrator.tracker import HttpIssueTracker
from jobdock.orchestrator.worker import PromptWorker
from jobdock.queue.models import QueueStatus
from jobdock.queue.store import PromptQueueStore

WORKER_START_WAIT_SECONDS = 5.0
WORKER_STOP_WAIT_SECONDS = 10.0
_WAIT_POLL_SECONDS = 0.1


@dataclass(slots=True)
class PromptEnqueueCommand:
    """CLI input for prompt enqueue."""

    state_dir: Path | None
    prompt: str
    source: str = "cli"


@dataclass(slots=True)
class PromptListCommand:
    """CLI input for prompt listing."""

    state_dir: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class PromptMutateCommand:
    """CLI input for single-prompt operations."""

    state_dir: Path | None
    prompt_id: str


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for foreground worker execution."""

    state_dir: Path | None
    max_prompts: int | None
    max_idle_polls: int | None


@dataclass(slots=True)
class WorkerControlCommand:
    """CLI input for background worker start/stop/status."""

    state_dir: Path | None


class OrchestratorCliController:
    """Application controller for prompt and worker commands."""

    def enqueue(self, command: PromptEnqueueCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        store = PromptQueueStore(settings.queue.state_dir)
        item = store.enqueue(command.prompt, meta={"source": command.source})
        intent = route(item.prompt)
        return [
            f"Prompt enqueued: id={item.id} status={item.status.value}",
            f"Routed as: {intent.type.value}",
        ]

    def list_prompts(self, command: PromptListCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        store = PromptQueueStore(settings.queue.state_dir)
        status_filter = QueueStatus(command.status) if command.status else None
        items = [
            item
            for item in store.list_items()
            if status_filter is None or item.status == status_filter
        ][-command.limit :]
        counts = store.counts()
        lines = [
            "Prompts: " + " ".join(f"{name}={count}" for name, count in counts.items()),
        ]
        if not items:
            lines.append("No prompts found.")
            return lines
        for item in items:
            lines.append(
                f"{item.id} status={item.status.value} "
                f"created_at={item.created_at.isoformat()} prompt={_preview(item.prompt)}",
            )
            if item.error:
                lines.append(f"  error: {item.error}")
        return lines

    def show(self, command: PromptMutateCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        item = PromptQueueStore(settings.queue.state_dir).get(command.prompt_id)
        if item is None:
            raise RuntimeError(f"Prompt not found: {command.prompt_id}")
        return json.dumps(item.to_json(), indent=2, ensure_ascii=False).splitlines()

    def retry(self, command: PromptMutateCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        PromptQueueStore(settings.queue.state_dir).retry(command.prompt_id)
        return [f"Prompt re-queued: {command.prompt_id}"]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        settings.validate_for_worker()
        worker = build_worker(settings)
        if not worker.acquire_lock():
            holder = worker.lock.read()
            return [f"Worker already running: pid={holder.pid if holder else '?'}"]
        try:
            summary = worker.run_loop(
                max_prompts=command.max_prompts,
                max_idle_polls=command.max_idle_polls,
            )
        finally:
            worker.release_lock()
        return [
            "Worker finished: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} timeouts={summary.timeouts} "
            f"idle_polls={summary.idle_polls} errors={summary.errors}",
        ]

    def start_background(self, command: WorkerControlCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        settings.validate_for_worker()
        store = PromptQueueStore(settings.queue.state_dir)
        lock = PidLock(store.lock_path)
        holder = lock.read()
        if holder is not None and is_pid_alive(holder.pid):
            return [f"Worker already running: pid={holder.pid}"]

        store.state_dir.mkdir(parents=True, exist_ok=True)
        env = {**os.environ, "JOBDOCK_STATE_DIR": str(store.state_dir.absolute())}
        with store.worker_output_path.open("ab") as output:
            process = subprocess.Popen(  # noqa: S603
                [sys.executable, "-m", "jobdock.main", "worker", "run"],
                stdin=subprocess.DEVNULL,
                stdout=output,
                stderr=subprocess.STDOUT,
                env=env,
                start_new_session=True,
            )
        deadline = time.monotonic() + WORKER_START_WAIT_SECONDS
        while time.monotonic() < deadline:
            holder = lock.read()
            if holder is not None and holder.pid == process.pid:
                return [f"Worker started: pid={process.pid}", f"Log: {store.worker_output_path}"]
            if process.poll() is not None:
                break
            time.sleep(_WAIT_POLL_SECONDS)
        if process.poll() is not None:
            raise RuntimeError(
                f"Worker exited with code {process.returncode}; "
                f"see {store.worker_output_path}",
            )
        return [
            f"Worker spawned: pid={process.pid} (lock not yet taken)",
            f"Log: {store.worker_output_path}",
        ]

    def stop_background(self, command: WorkerControlCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        store = PromptQueueStore(settings.queue.state_dir)
        holder = PidLock(store.lock_path).read()
        if holder is None or not is_pid_alive(holder.pid):
            return ["Worker is not running."]
        os.kill(holder.pid, signal.SIGTERM)
        deadline = time.monotonic() + WORKER_STOP_WAIT_SECONDS
        while time.monotonic() < deadline:
            if not is_pid_alive(holder.pid):
                return [f"Worker stopped: pid={holder.pid}"]
            time.sleep(_WAIT_POLL_SECONDS)
        return [f"Stop requested: pid={holder.pid} is finishing its current prompt"]

    def status(self, command: WorkerControlCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        store = PromptQueueStore(settings.queue.state_dir)
        holder = PidLock(store.lock_path).read()
        running = holder is not None and is_pid_alive(holder.pid)
        state = store.read_state()
        counts = store.counts()
        lines = [
            f"Worker: {'running' if running else 'stopped'}"
            + (f" pid={holder.pid}" if holder is not None and running else ""),
            f"Active prompt: {state.running_id or '-'}"
            + (f" since={state.since.isoformat()}" if state.since else ""),
            "Queue: " + " ".join(f"{name}={count}" for name, count in counts.items()),
            f"State dir: {store.state_dir}",
        ]
        return lines


def build_worker(settings: Settings) -> PromptWorker:
    store = PromptQueueStore(settings.queue.state_dir)
    tracker = None
    if settings.tracker.base_url:
        settings.validate_for_tracker()
        tracker = HttpIssueTracker(
            base_url=settings.tracker.base_url,
            token=settings.tracker.token,
            org_id=settings.tracker.org_id,
            timeout_seconds=settings.tracker.request_timeout_seconds,
        )
    environments = EnvironmentOrchestrator(settings.environment)
    return PromptWorker(
        store=store,
        environments=environments,
        dispatcher=SubprocessBatchDispatcher(cleanup=environments.remove_job_containers),
        tracker=tracker,
        poll_interval_seconds=settings.worker.poll_interval_seconds,
        dispatch_timeout_seconds=settings.worker.dispatch_timeout_seconds,
        job_timeout_seconds=settings.environment.job_timeout_seconds,
        max_parallel_jobs=settings.environment.max_parallel_jobs,
        probe_timeout_seconds=settings.worker.probe_timeout_seconds,
        probe_command_template=settings.worker.probe_command_template,
        max_history=settings.queue.max_history,
        default_queue=settings.tracker.queue or None,
        recover_on_start=settings.worker.recover_on_start,
    )


def _preview(text: str, limit: int = 60) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= limit else flat[: limit - 3] + "..."
