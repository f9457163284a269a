"""Filesystem layout of the supervisor state directory."""

from __future__ import annotations

import hashlib
import tempfile
from dataclasses import dataclass
from pathlib import Path

# AF_UNIX paths are limited to ~104 bytes on macOS and 108 on Linux.
MAX_SOCKET_PATH_LENGTH = 100


@dataclass(slots=True, frozen=True)
class ServicePaths:
    root_dir: Path
    logs_dir: Path
    ipc_dir: Path
    socket_path: Path
    session_path: Path
    lock_path: Path

    @classmethod
    def for_root(cls, root_dir: Path) -> ServicePaths:
        root = root_dir.absolute()
        ipc_dir = root / "ipc"
        return cls(
            root_dir=root,
            logs_dir=root / "logs",
            ipc_dir=ipc_dir,
            socket_path=_socket_path(ipc_dir / "supervisor.sock"),
            session_path=root / "session.json",
            lock_path=root / "service.lock",
        )

    def ensure_dirs(self) -> None:
        for directory in (self.root_dir, self.logs_dir, self.ipc_dir, self.socket_path.parent):
            directory.mkdir(parents=True, exist_ok=True)


def _socket_path(preferred: Path) -> Path:
    if len(str(preferred)) <= MAX_SOCKET_PATH_LENGTH:
        return preferred
    digest = hashlib.sha1(str(preferred).encode("utf-8")).hexdigest()[:12]  # noqa: S324
    return Path(tempfile.gettempdir()) / f"jobdock-{digest}.sock"
