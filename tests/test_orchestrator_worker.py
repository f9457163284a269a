from __future__ import annotations

import os

import allure
import pytest

from jobdock.environment.models import CapacityReport
from jobdock.locks import PidLock
from jobdock.orchestrator.routing import UNRECOGNIZED_HELP
from jobdock.orchestrator.tracker import TrackerIssue
from jobdock.orchestrator.worker import (
    DISPATCH_MARGIN_SECONDS,
    AuditLog,
    PromptWorker,
    WorkerPhase,
)
from jobdock.queue.models import QueueStatus
from jobdock.queue.store import PromptQueueStore

pytestmark = [
    allure.epic("Orchestrator"),
    allure.feature("Background Worker"),
]


@pytest.fixture()
def store(tmp_path) -> PromptQueueStore:
    return PromptQueueStore(tmp_path / "queue")


def _worker(
    store: PromptQueueStore,
    environments,
    dispatcher,
    **kwargs,
) -> PromptWorker:
    kwargs.setdefault("poll_interval_seconds", 0)
    kwargs.setdefault("probe_command_template", "check {branch}")
    return PromptWorker(
        store=store,
        environments=environments,
        dispatcher=dispatcher,
        **kwargs,
    )


def test_explicit_keys_are_dispatched_and_marked_done(
    store,
    fake_environments,
    fake_dispatcher,
) -> None:
    item = store.enqueue("fix TICKET-42")
    worker = _worker(store, fake_environments, fake_dispatcher)

    summary = worker.run_once()

    assert summary.processed == 1
    assert summary.succeeded == 1
    assert fake_dispatcher.batches == [["TICKET-42"]]
    assert fake_environments.capacity_calls == 1
    done = store.get(item.id)
    assert done.status == QueueStatus.DONE
    assert done.result["job_ids"] == ["TICKET-42"]
    assert done.result["dispatched"] is True
    assert done.result["dispatch"]["summary"]["succeeded"] == 1
    assert done.result["capacity"]["names"] == ["jobdock-worker-1"]
    assert store.read_state().running_id is None


def test_implicit_query_skips_issues_whose_probe_times_out(
    store,
    fake_environments,
    fake_dispatcher,
    fake_tracker,
) -> None:
    tracker = fake_tracker
    tracker.issues = [
        TrackerIssue(key="A-1", summary="first", status="open"),
        TrackerIssue(key="B-2", summary="second", status="open"),
    ]
    fake_environments.timed_out_branches.add("A-1_JD_")
    item = store.enqueue("my tasks without PRs")
    worker = _worker(store, fake_environments, fake_dispatcher, tracker=tracker)

    worker.run_once()

    assert fake_dispatcher.batches == [["B-2"]]
    result = store.get(item.id).result
    assert [probe["issue_key"] for probe in result["probes"]] == ["A-1", "B-2"]
    assert result["probes"][0]["timed_out"] is True


def test_implicit_query_uses_prompt_queue_then_default(
    store,
    fake_environments,
    fake_dispatcher,
    fake_tracker,
) -> None:
    tracker = fake_tracker
    store.enqueue("CRM issues with no merge request")
    store.enqueue("my tasks without PRs")
    worker = _worker(
        store,
        fake_environments,
        fake_dispatcher,
        tracker=tracker,
        default_queue="OPS",
    )

    worker.run_loop(max_prompts=2)

    assert tracker.queries == ["CRM", "OPS"]
    assert fake_dispatcher.batches == []
    results = [item.result for item in store.list_items()]
    assert all(result["reason"] == "no_issue_keys" for result in results)
    assert all(item.status == QueueStatus.DONE for item in store.list_items())


def test_implicit_query_without_tracker_fails_prompt(
    store,
    fake_environments,
    fake_dispatcher,
) -> None:
    item = store.enqueue("my tasks without PRs")

    _worker(store, fake_environments, fake_dispatcher).run_once()

    failed = store.get(item.id)
    assert failed.status == QueueStatus.FAILED
    assert "tracker is not configured" in failed.error


def test_each_prompt_is_dispatched_once(store, fake_environments, fake_dispatcher) -> None:
    store.enqueue("fix ABC-1")
    worker = _worker(store, fake_environments, fake_dispatcher)

    first = worker.run_once()
    second = worker.run_once()

    assert first.processed == 1
    assert second.processed == 0
    assert second.idle_polls == 1
    assert fake_dispatcher.batches == [["ABC-1"]]


def test_unrecognized_prompt_fails_with_help(store, fake_environments, fake_dispatcher) -> None:
    item = store.enqueue("hello there")

    _worker(store, fake_environments, fake_dispatcher).run_once()

    failed = store.get(item.id)
    assert failed.status == QueueStatus.FAILED
    assert failed.error == UNRECOGNIZED_HELP
    assert fake_environments.capacity_calls == 0
    assert fake_dispatcher.batches == []


def test_exception_during_processing_fails_prompt_and_loop_continues(
    store,
    fake_environments,
    fake_dispatcher,
) -> None:
    environments = fake_environments
    environments.fail_capacity = RuntimeError("docker is down")
    broken = store.enqueue("fix ABC-1")
    later = store.enqueue("fix ABC-2")
    worker = _worker(store, environments, fake_dispatcher)

    summary = worker.run_loop(max_prompts=2)

    assert summary.processed == 2
    assert summary.failed == 2
    assert store.get(broken.id).error == "docker is down"
    assert store.get(later.id).status == QueueStatus.FAILED


def test_dispatch_timeout_marks_done_with_timeout(
    store,
    fake_environments,
    fake_dispatcher,
) -> None:
    dispatcher = fake_dispatcher
    dispatcher.timed_out = True
    item = store.enqueue("fix ABC-1")

    summary = _worker(store, fake_environments, dispatcher).run_once()

    assert summary.timeouts == 1
    done = store.get(item.id)
    assert done.status == QueueStatus.DONE
    assert done.result["dispatch"]["timed_out"] is True
    assert done.result["dispatch"]["not_started"] == []


def test_dispatch_timeout_with_unstarted_jobs_fails_prompt(
    store,
    fake_environments,
    fake_dispatcher,
) -> None:
    dispatcher = fake_dispatcher
    dispatcher.timed_out = True
    dispatcher.not_started = ["ABC-2", "ABC-3"]
    item = store.enqueue("fix ABC-1 ABC-2 ABC-3")

    summary = _worker(store, fake_environments, dispatcher).run_once()

    assert summary.timeouts == 1
    assert summary.failed == 1
    failed = store.get(item.id)
    assert failed.status == QueueStatus.FAILED
    assert failed.error == "Dispatch timed out; never started: ABC-2, ABC-3"
    assert failed.result["dispatch"]["started"] == ["ABC-1"]
    assert failed.result["dispatch"]["not_started"] == ["ABC-2", "ABC-3"]


@pytest.mark.parametrize(
    ("job_count", "expected"),
    [
        (1, 600 + DISPATCH_MARGIN_SECONDS),
        (2, 600 + DISPATCH_MARGIN_SECONDS),
        (3, 1200 + DISPATCH_MARGIN_SECONDS),
        (5, 1800 + DISPATCH_MARGIN_SECONDS),
    ],
)
def test_dispatch_timeout_covers_every_wave_of_jobs(
    store,
    fake_environments,
    fake_dispatcher,
    job_count,
    expected,
) -> None:
    worker = _worker(
        store,
        fake_environments,
        fake_dispatcher,
        job_timeout_seconds=600,
        max_parallel_jobs=2,
    )
    store.enqueue("fix " + " ".join(f"ABC-{index}" for index in range(1, job_count + 1)))

    worker.run_once()

    assert worker.dispatch_timeout_for(job_count) == expected
    assert fake_dispatcher.timeouts == [expected]


def test_explicit_dispatch_timeout_is_used_as_is(store, fake_environments) -> None:
    worker = _worker(store, fake_environments, None, dispatch_timeout_seconds=42)

    assert worker.dispatch_timeout_for(100) == 42


def test_partial_batch_failure_fails_prompt(
    store,
    fake_environments,
    fake_dispatcher,
) -> None:
    dispatcher = fake_dispatcher
    dispatcher.failed_jobs.add("ABC-2")
    item = store.enqueue("fix ABC-1 ABC-2")

    _worker(store, fake_environments, dispatcher).run_once()

    failed = store.get(item.id)
    assert failed.status == QueueStatus.FAILED
    assert failed.error == "1 of 2 job(s) failed"


def test_audit_log_failure_does_not_affect_processing(
    store,
    fake_environments,
    fake_dispatcher,
    tmp_path,
) -> None:
    blocked = tmp_path / "not-a-dir"
    blocked.write_text("", encoding="utf-8")
    item = store.enqueue("fix ABC-1")
    worker = _worker(
        store,
        fake_environments,
        fake_dispatcher,
        audit=AuditLog(blocked / "worker.log"),
    )

    worker.run_once()

    assert store.get(item.id).status == QueueStatus.DONE


def test_audit_log_records_phases(store, fake_environments, fake_dispatcher) -> None:
    item = store.enqueue("fix ABC-1")

    _worker(store, fake_environments, fake_dispatcher).run_once()

    lines = store.audit_log_path.read_text(encoding="utf-8").splitlines()
    phases = [line.split()[1] for line in lines]
    assert phases == [
        f"[{WorkerPhase.CLAIMED.value}]",
        f"[{WorkerPhase.ROUTED.value}]",
        f"[{WorkerPhase.CAPACITY_ENSURED.value}]",
        f"[{WorkerPhase.DISPATCHED.value}]",
        f"[{WorkerPhase.COMPLETED.value}]",
    ]
    assert all(item.id in line for line in lines)


def test_lock_is_exclusive_and_recovers_interrupted(
    store,
    fake_environments,
    fake_dispatcher,
) -> None:
    interrupted = store.enqueue("fix ABC-1")
    store.claim_next()
    stale_owner = 999_999
    assert PidLock(store.lock_path, pid=stale_owner, is_alive=lambda _pid: False).acquire()

    worker = _worker(
        store,
        fake_environments,
        fake_dispatcher,
        lock=PidLock(store.lock_path, is_alive=lambda pid: pid == os.getpid()),
    )
    assert worker.acquire_lock() is True
    assert store.get(interrupted.id).status == QueueStatus.FAILED

    rival = _worker(
        store,
        fake_environments,
        fake_dispatcher,
        lock=PidLock(store.lock_path, pid=stale_owner, is_alive=lambda _pid: True),
    )
    assert rival.acquire_lock() is False

    worker.release_lock()
    assert not store.lock_path.exists()


def test_run_loop_stops_after_idle_polls(store, fake_environments, fake_dispatcher) -> None:
    summary = _worker(store, fake_environments, fake_dispatcher).run_loop(max_idle_polls=2)

    assert summary.processed == 0
    assert summary.idle_polls == 2


def test_request_stop_halts_loop(store, fake_environments, fake_dispatcher) -> None:
    store.enqueue("fix ABC-1")
    worker = _worker(store, fake_environments, fake_dispatcher)
    worker.request_stop()

    summary = worker.run_loop()

    assert summary.processed == 0
    assert fake_dispatcher.batches == []


def test_history_is_pruned_before_claim(store, fake_environments, fake_dispatcher) -> None:
    for index in range(3):
        item = store.enqueue(f"fix OLD-{index}")
        store.claim_next()
        store.mark_done(item.id)
    store.enqueue("fix NEW-1")

    _worker(store, fake_environments, fake_dispatcher, max_history=2).run_once()

    prompts = [item.prompt for item in store.list_items()]
    assert prompts == ["fix OLD-2", "fix NEW-1"]


def test_capacity_report_is_serialisable() -> None:
    report = CapacityReport(names=["w1"], created=["w1"])

    assert report.to_json() == {"names": ["w1"], "created": ["w1"], "started": [], "removed": []}
