from __future__ import annotations

import json
import os

import allure
import pytest

from jobdock.common import read_json, write_json_atomic
from jobdock.queue.models import QueueStatus
from jobdock.queue.store import PromptQueueStore, QueueStoreError

pytestmark = [
    allure.epic("Prompt Queue"),
    allure.feature("Durable Store"),
]


@pytest.fixture()
def store(tmp_path) -> PromptQueueStore:
    return PromptQueueStore(tmp_path / "queue")


def test_enqueue_assigns_increasing_ids_and_persists(store) -> None:
    first = store.enqueue("fix ABC-1", meta={"source": "test"})
    second = store.enqueue("  fix ABC-2  ")

    assert first.id < second.id
    assert second.prompt == "fix ABC-2"
    assert first.status == QueueStatus.QUEUED

    reloaded = PromptQueueStore(store.state_dir).list_items()
    assert [item.id for item in reloaded] == [first.id, second.id]
    assert reloaded[0].meta == {"source": "test"}

    payload = json.loads(store.queue_path.read_text(encoding="utf-8"))
    assert payload[0]["status"] == "queued"
    assert "created_at" in payload[0]


def test_enqueue_rejects_blank_prompt(store) -> None:
    with pytest.raises(ValueError, match="empty"):
        store.enqueue("   ")


def test_claim_is_fifo_and_single_active(store) -> None:
    first = store.enqueue("one")
    second = store.enqueue("two")

    claimed = store.claim_next()
    assert claimed is not None
    assert claimed.id == first.id
    assert claimed.status == QueueStatus.PROCESSING
    assert claimed.claimed_at is not None
    assert store.read_state().running_id == first.id

    assert store.claim_next() is None
    assert store.get(second.id).status == QueueStatus.QUEUED

    store.mark_done(first.id, {"ok": True})
    assert store.read_state().running_id is None

    claimed_again = store.claim_next()
    assert claimed_again is not None
    assert claimed_again.id == second.id


def test_claim_on_empty_queue(store) -> None:
    assert store.claim_next() is None


def test_fail_prompt_records_error_and_clears_state(store) -> None:
    item = store.enqueue("boom")
    store.claim_next()

    failed = store.fail_prompt(item.id, "exploded", result={"intent": {"type": "x"}})

    assert failed is not None
    assert failed.status == QueueStatus.FAILED
    assert failed.error == "exploded"
    assert failed.completed_at is not None
    assert store.read_state().running_id is None
    assert store.get(item.id).result == {"intent": {"type": "x"}}


def test_complete_unknown_prompt_returns_none(store) -> None:
    assert store.mark_done("P-missing") is None


def test_retry_requeues_failed_prompt_in_place(store) -> None:
    failed = store.enqueue("first")
    later = store.enqueue("second")
    store.claim_next()
    store.fail_prompt(failed.id, "nope")

    retried = store.retry(failed.id)

    assert retried.status == QueueStatus.QUEUED
    assert retried.error is None
    assert retried.meta["retries"] == 1
    assert [item.id for item in store.list_items()] == [failed.id, later.id]
    assert store.claim_next().id == failed.id


def test_retry_rejects_non_failed_and_unknown(store) -> None:
    item = store.enqueue("queued")

    with pytest.raises(QueueStoreError, match="cannot be retried"):
        store.retry(item.id)
    with pytest.raises(QueueStoreError, match="not found"):
        store.retry("P-unknown")


def test_recover_interrupted_fails_processing_items(store) -> None:
    item = store.enqueue("long running")
    store.claim_next()

    recovered = PromptQueueStore(store.state_dir).recover_interrupted(reason="crashed")

    assert recovered == [item.id]
    assert store.get(item.id).status == QueueStatus.FAILED
    assert store.get(item.id).error == "crashed"
    assert store.read_state().running_id is None
    assert store.recover_interrupted() == []


def test_prune_evicts_finished_first_and_never_processing(store) -> None:
    done = store.enqueue("done")
    store.claim_next()
    store.mark_done(done.id)
    processing = store.enqueue("processing")
    store.claim_next()
    queued_old = store.enqueue("queued old")
    queued_new = store.enqueue("queued new")

    result = store.prune_history(2)

    assert result.pruned == 2
    assert result.total == 2
    remaining = [item.id for item in store.list_items()]
    assert remaining == [processing.id, queued_new.id]
    assert queued_old.id not in remaining


def test_prune_noop_and_validation(store) -> None:
    store.enqueue("only")

    assert store.prune_history(5).pruned == 0
    with pytest.raises(ValueError):
        store.prune_history(0)


def test_list_limit_and_counts(store) -> None:
    ids = [store.enqueue(f"prompt {index}").id for index in range(4)]
    store.claim_next()

    assert [item.id for item in store.list_items(limit=2)] == ids[-2:]
    assert store.list_items(limit=0) == []
    assert store.counts() == {"queued": 3, "processing": 1, "done": 0, "failed": 0}


def test_corrupt_queue_file_reads_as_empty(store) -> None:
    store.state_dir.mkdir(parents=True)
    store.queue_path.write_text("{not json", encoding="utf-8")

    assert store.list_items() == []
    item = store.enqueue("after corruption")
    assert [entry.id for entry in store.list_items()] == [item.id]


def test_malformed_entries_are_skipped(store) -> None:
    good = store.enqueue("good")
    payload = json.loads(store.queue_path.read_text(encoding="utf-8"))
    payload.append({"id": "P-bad", "status": "bogus"})
    store.queue_path.write_text(json.dumps(payload), encoding="utf-8")

    assert [item.id for item in store.list_items()] == [good.id]


def test_failed_atomic_write_keeps_previous_version(tmp_path, monkeypatch) -> None:
    target = tmp_path / "data.json"
    write_json_atomic(target, {"version": 1})

    def _broken_replace(*_args, **_kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", _broken_replace)
    with pytest.raises(OSError, match="disk full"):
        write_json_atomic(target, {"version": 2})

    assert read_json(target, None) == {"version": 1}
    assert [path.name for path in tmp_path.iterdir()] == ["data.json"]
