from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerJob:
    key: str
    fn: Callable[[], Any]
    on_result: Callable[[Any], None] | None = None
    on_error: Callable[[BaseException], None] | None = None


class WorkerPool:
    """Background jobs grouped by key so callers can wait for one key's work."""

    def __init__(self, max_workers: int = 2) -> None:
        self._ex = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="ops_logrotate")
        self._lock = threading.Lock()
        self._pending: dict[str, list[Future]] = {}

    def submit(self, job: WorkerJob) -> Future:
        fut = self._ex.submit(self._run, job)
        with self._lock:
            self._pending.setdefault(job.key, []).append(fut)
        fut.add_done_callback(lambda f, k=job.key: self._forget(k, f))
        return fut

    def pending(self, key: str) -> int:
        with self._lock:
            return len(self._pending.get(key, ()))

    def wait(self, key: str) -> None:
        with self._lock:
            futs = list(self._pending.get(key, ()))
        for f in futs:
            # errors were already reported through on_error
            f.exception()

    def shutdown(self, wait: bool = True) -> None:
        self._ex.shutdown(wait=wait)

    def _run(self, job: WorkerJob) -> Any:
        try:
            res = job.fn()
        except Exception as e:  # noqa: BLE001
            if job.on_error is not None:
                job.on_error(e)
            else:
                logger.error("background job for %s failed: %s", job.key, e)
            raise
        if job.on_result is not None:
            job.on_result(res)
        return res

    def _forget(self, key: str, fut: Future) -> None:
        with self._lock:
            futs = self._pending.get(key)
            if not futs:
                return
            if fut in futs:
                futs.remove(fut)
            if not futs:
                del self._pending[key]
