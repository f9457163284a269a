"""PID-based singleton locks shared by the background worker and the supervisor."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from jobdock.common import from_iso, read_json, safe_unlink, to_iso, utc_now

logger = logging.getLogger(__name__)

_ACQUIRE_ATTEMPTS = 3


@dataclass(slots=True, frozen=True)
class LockRecord:
    """Owner of a singleton lock as written to disk."""

    pid: int
    started_at: datetime | None

    def to_json(self) -> dict[str, object]:
        return {"pid": self.pid, "started_at": to_iso(self.started_at)}

    @classmethod
    def from_json(cls, payload: object) -> LockRecord | None:
        if not isinstance(payload, dict):
            return None
        pid = payload.get("pid")
        if not isinstance(pid, int) or isinstance(pid, bool) or pid <= 0:
            return None
        raw_started = payload.get("started_at")
        try:
            started_at = from_iso(raw_started) if isinstance(raw_started, str) else None
        except ValueError:
            started_at = None
        return cls(pid=pid, started_at=started_at)


def is_pid_alive(pid: int) -> bool:
    """Return True when ``pid`` names a running, non-zombie process."""

    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return not _is_zombie(pid)


def _is_zombie(pid: int) -> bool:
    stat_path = Path(f"/proc/{pid}/stat")
    try:
        raw = stat_path.read_text(encoding="utf-8")
    except OSError:
        return False
    # Format: "<pid> (<comm>) <state> ..."; comm may contain spaces or parens.
    _, _, rest = raw.rpartition(")")
    fields = rest.split()
    return bool(fields) and fields[0] == "Z"


class PidLock:
    """Singleton lock file whose ownership is re-verified by process liveness.

    ``is_alive`` is injectable so stale-lock takeover can be exercised without
    real dead processes.
    """

    def __init__(
        self,
        path: Path,
        *,
        pid: int | None = None,
        is_alive: Callable[[int], bool] = is_pid_alive,
    ) -> None:
        self.path = path
        self.pid = pid if pid is not None else os.getpid()
        self._is_alive = is_alive

    def read(self) -> LockRecord | None:
        return LockRecord.from_json(read_json(self.path, None))

    def holder_alive(self) -> bool:
        record = self.read()
        return record is not None and self._is_alive(record.pid)

    def acquire(self, *, holder_check: Callable[[LockRecord], bool] | None = None) -> bool:
        """Take the lock unless a live holder owns it.

        ``holder_check`` adds a second condition a live holder must satisfy to
        keep the lock (for example, that its IPC socket still answers). Returns
        False when another live process holds the lock. I/O errors propagate.
        """

        for _ in range(_ACQUIRE_ATTEMPTS):
            holder = self.read()
            if holder is not None:
                if holder.pid == self.pid:
                    return True
                if self._is_alive(holder.pid) and (holder_check is None or holder_check(holder)):
                    return False
                logger.info("Taking over stale lock %s from pid %s", self.path, holder.pid)
                safe_unlink(self.path)
            elif self.path.exists():
                logger.warning("Removing unreadable lock file %s", self.path)
                safe_unlink(self.path)
            if self._create():
                return True
        return False

    def release(self) -> None:
        holder = self.read()
        if holder is not None and holder.pid == self.pid:
            safe_unlink(self.path)

    def _create(self) -> bool:
        """Publish the lock with a hard link so the file never appears half-written."""

        self.path.parent.mkdir(parents=True, exist_ok=True)
        record = LockRecord(pid=self.pid, started_at=utc_now())
        tmp = self.path.with_name(f".{self.path.name}.{self.pid}.{time.time_ns()}.tmp")
        try:
            tmp.write_text(json.dumps(record.to_json()) + "\n", encoding="utf-8")
            with contextlib.suppress(FileExistsError):
                os.link(tmp, self.path)
                return True
            return False
        finally:
            safe_unlink(tmp)
