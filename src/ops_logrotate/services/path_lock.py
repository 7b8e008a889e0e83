from __future__ import annotations

import fcntl
import hashlib
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from ops_logrotate.errors import LockBusyError


class PathLocks:
    """Per-live-path advisory lockfiles so two daemons never rotate the same file."""

    def __init__(self, lock_dir: str) -> None:
        self.lock_dir = Path(lock_dir)

    def lock_path(self, live_path: str) -> Path:
        digest = hashlib.sha1(os.path.abspath(live_path).encode("utf-8")).hexdigest()[:20]
        return self.lock_dir / f"{digest}.lock"

    @contextmanager
    def hold(self, live_path: str) -> Iterator[None]:
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path(live_path), os.O_RDWR | os.O_CREAT, 0o644)
        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                raise LockBusyError(live_path) from None
            try:
                os.ftruncate(fd, 0)
                os.write(fd, f"{os.getpid()} {live_path}\n".encode("utf-8"))
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
