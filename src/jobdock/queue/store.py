"""File-backed prompt queue with atomic claim and single-active semantics."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from jobdock.common import locked_file, read_json, utc_now, write_json_atomic
from jobdock.queue.models import PruneResult, QueueItem, QueueStatus, RunState

logger = logging.getLogger(__name__)

QUEUE_FILENAME = "queue.json"
STATE_FILENAME = "state.json"
WORKER_LOCK_FILENAME = "worker.lock"
AUDIT_LOG_FILENAME = "worker.log"
WORKER_OUTPUT_FILENAME = "worker.out.log"
_MUTEX_FILENAME = ".queue.lock"
_ID_PREFIX = "P-"


class QueueStoreError(RuntimeError):
    """Raised when a queue operation cannot be applied."""


class PromptQueueStore:
    """Durable prompt queue persisted as JSON files in ``state_dir``.

    Every read-modify-write cycle holds an advisory lock on a sidecar file so
    producers (CLI enqueue) and the worker never interleave, and every write
    replaces the file atomically.
    """

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir

    @property
    def queue_path(self) -> Path:
        return self.state_dir / QUEUE_FILENAME

    @property
    def state_path(self) -> Path:
        return self.state_dir / STATE_FILENAME

    @property
    def lock_path(self) -> Path:
        return self.state_dir / WORKER_LOCK_FILENAME

    @property
    def audit_log_path(self) -> Path:
        return self.state_dir / AUDIT_LOG_FILENAME

    @property
    def worker_output_path(self) -> Path:
        return self.state_dir / WORKER_OUTPUT_FILENAME

    def enqueue(self, prompt: str, *, meta: dict[str, Any] | None = None) -> QueueItem:
        """Append a new queued prompt and return it."""

        text = prompt.strip()
        if not text:
            raise ValueError("Prompt must not be empty.")
        with self._locked():
            items = self._load_items()
            item = QueueItem(
                id=_next_id(items),
                prompt=text,
                status=QueueStatus.QUEUED,
                created_at=utc_now(),
                meta=dict(meta or {}),
            )
            items.append(item)
            self._save_items(items)
        logger.info("Enqueued prompt %s", item.id)
        return item

    def claim_next(self) -> QueueItem | None:
        """Move the oldest queued prompt to processing.

        Returns None when nothing is queued or when another prompt is already
        processing.
        """

        with self._locked():
            items = self._load_items()
            active = next((item for item in items if item.status == QueueStatus.PROCESSING), None)
            if active is not None:
                logger.debug("Claim refused: %s is still processing", active.id)
                return None
            candidate = next((item for item in items if item.status == QueueStatus.QUEUED), None)
            if candidate is None:
                return None
            now = utc_now()
            candidate.status = QueueStatus.PROCESSING
            candidate.claimed_at = now
            candidate.completed_at = None
            candidate.error = None
            self._save_items(items)
            write_json_atomic(
                self.state_path,
                RunState(running_id=candidate.id, since=now).to_json(),
            )
        logger.info("Claimed prompt %s", candidate.id)
        return candidate

    def mark_done(self, item_id: str, result: dict[str, Any] | None = None) -> QueueItem | None:
        return self._complete(item_id, status=QueueStatus.DONE, result=result, error=None)

    def fail_prompt(
        self,
        item_id: str,
        error: str,
        *,
        result: dict[str, Any] | None = None,
    ) -> QueueItem | None:
        return self._complete(item_id, status=QueueStatus.FAILED, result=result, error=error)

    def retry(self, item_id: str) -> QueueItem:
        """Re-queue a failed prompt in place for another processing attempt."""

        with self._locked():
            items = self._load_items()
            item = _find(items, item_id)
            if item is None:
                raise QueueStoreError(f"Prompt not found: {item_id}")
            if item.status != QueueStatus.FAILED:
                raise QueueStoreError(
                    f"Prompt {item_id} cannot be retried from status {item.status.value}",
                )
            retries = int(item.meta.get("retries", 0)) + 1
            item.status = QueueStatus.QUEUED
            item.claimed_at = None
            item.completed_at = None
            item.error = None
            item.result = None
            item.meta = {**item.meta, "retries": retries}
            self._save_items(items)
        logger.info("Re-queued prompt %s (retry %d)", item_id, retries)
        return item

    def recover_interrupted(self, reason: str = "Worker stopped while processing") -> list[str]:
        """Fail prompts left in processing by a worker that is no longer running."""

        recovered: list[str] = []
        with self._locked():
            items = self._load_items()
            now = utc_now()
            for item in items:
                if item.status != QueueStatus.PROCESSING:
                    continue
                item.status = QueueStatus.FAILED
                item.completed_at = now
                item.error = reason
                recovered.append(item.id)
            if recovered:
                self._save_items(items)
            if recovered or self._read_state().running_id is not None:
                write_json_atomic(self.state_path, RunState().to_json())
        for item_id in recovered:
            logger.warning("Recovered interrupted prompt %s", item_id)
        return recovered

    def prune_history(self, max_entries: int) -> PruneResult:
        """Evict old entries until at most ``max_entries`` remain.

        Finished prompts go first (oldest first), then the oldest queued ones.
        The processing prompt is never evicted.
        """

        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        with self._locked():
            items = self._load_items()
            excess = len(items) - max_entries
            if excess <= 0:
                return PruneResult(pruned=0, total=len(items))
            finished = [item.id for item in items if item.status.is_terminal]
            queued = [item.id for item in items if item.status == QueueStatus.QUEUED]
            evicted = set((finished + queued)[:excess])
            kept = [item for item in items if item.id not in evicted]
            self._save_items(kept)
        logger.info("Pruned %d prompt(s) from history", len(evicted))
        return PruneResult(pruned=len(evicted), total=len(kept))

    def get(self, item_id: str) -> QueueItem | None:
        return _find(self._load_items(), item_id)

    def list_items(self, *, limit: int | None = None) -> list[QueueItem]:
        """Return prompts in queue order, keeping the newest ``limit`` entries."""

        items = self._load_items()
        if limit is not None and limit >= 0:
            return items[-limit:] if limit else []
        return items

    def counts(self) -> dict[str, int]:
        totals = {status.value: 0 for status in QueueStatus}
        for item in self._load_items():
            totals[item.status.value] += 1
        return totals

    def read_state(self) -> RunState:
        return self._read_state()

    def _complete(
        self,
        item_id: str,
        *,
        status: QueueStatus,
        result: dict[str, Any] | None,
        error: str | None,
    ) -> QueueItem | None:
        with self._locked():
            items = self._load_items()
            item = _find(items, item_id)
            if item is None:
                logger.warning("Cannot complete unknown prompt %s", item_id)
                return None
            item.status = status
            item.completed_at = utc_now()
            item.result = result
            item.error = error
            self._save_items(items)
            if self._read_state().running_id == item_id:
                write_json_atomic(self.state_path, RunState().to_json())
        logger.info("Prompt %s finished with status %s", item_id, status.value)
        return item

    def _load_items(self) -> list[QueueItem]:
        payload = read_json(self.queue_path, [])
        if not isinstance(payload, list):
            logger.warning("Ignoring malformed queue file %s", self.queue_path)
            return []
        items: list[QueueItem] = []
        for entry in payload:
            try:
                items.append(QueueItem.from_json(entry))
            except (KeyError, TypeError, ValueError, AttributeError) as error:
                logger.warning("Skipping malformed queue entry: %s", error)
        return items

    def _save_items(self, items: list[QueueItem]) -> None:
        write_json_atomic(self.queue_path, [item.to_json() for item in items])

    def _read_state(self) -> RunState:
        return RunState.from_json(read_json(self.state_path, {}))

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with locked_file(self.state_dir / _MUTEX_FILENAME):
            yield


def _find(items: list[QueueItem], item_id: str) -> QueueItem | None:
    return next((item for item in items if item.id == item_id), None)


def _next_id(items: list[QueueItem]) -> str:
    """Build a sortable id that is strictly greater than any existing one."""

    stamp = time.time_ns()
    for item in items:
        previous = _id_timestamp(item.id)
        if previous is not None and previous >= stamp:
            stamp = previous + 1
    return f"{_ID_PREFIX}{stamp:020d}-{os.getpid()}"


def _id_timestamp(item_id: str) -> int | None:
    if not item_id.startswith(_ID_PREFIX):
        return None
    head = item_id[len(_ID_PREFIX) :].split("-", 1)[0]
    return int(head) if head.isdigit() else None
