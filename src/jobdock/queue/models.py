"""Typed models for the prompt queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from jobdock.common import from_iso, to_iso


class QueueStatus(str, Enum):
    """Lifecycle state of a queued prompt."""

    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {QueueStatus.DONE, QueueStatus.FAILED}


@dataclass(slots=True)
class QueueItem:
    """One prompt and its processing outcome."""

    id: str
    prompt: str
    status: QueueStatus
    created_at: datetime
    claimed_at: datetime | None = None
    completed_at: datetime | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "status": self.status.value,
            "created_at": to_iso(self.created_at),
            "claimed_at": to_iso(self.claimed_at),
            "completed_at": to_iso(self.completed_at),
            "result": self.result,
            "error": self.error,
            "meta": self.meta,
        }

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> QueueItem:
        created_at = from_iso(payload.get("created_at"))
        if created_at is None:
            raise ValueError(f"Queue item {payload.get('id')!r} has no created_at")
        result = payload.get("result")
        meta = payload.get("meta")
        return cls(
            id=str(payload["id"]),
            prompt=str(payload.get("prompt", "")),
            status=QueueStatus(payload["status"]),
            created_at=created_at,
            claimed_at=from_iso(payload.get("claimed_at")),
            completed_at=from_iso(payload.get("completed_at")),
            result=result if isinstance(result, dict) else None,
            error=payload.get("error"),
            meta=meta if isinstance(meta, dict) else {},
        )


@dataclass(slots=True)
class RunState:
    """Which prompt, if any, is currently being processed."""

    running_id: str | None = None
    since: datetime | None = None

    def to_json(self) -> dict[str, Any]:
        return {"running_id": self.running_id, "since": to_iso(self.since)}

    @classmethod
    def from_json(cls, payload: object) -> RunState:
        if not isinstance(payload, dict):
            return cls()
        running_id = payload.get("running_id")
        try:
            since = from_iso(payload.get("since"))
        except (TypeError, ValueError):
            since = None
        return cls(
            running_id=running_id if isinstance(running_id, str) and running_id else None,
            since=since,
        )


@dataclass(slots=True, frozen=True)
class PruneResult:
    """Outcome of a history prune pass."""

    pruned: int
    total: int
