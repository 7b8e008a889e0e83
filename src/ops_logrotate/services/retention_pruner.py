from __future__ import annotations

import logging
import os
import time
from typing import Callable

from ops_logrotate.errors import PruneError
from ops_logrotate.models.rotation import ArchivalEvent, Generation, WatchedFile
from ops_logrotate.services.rotation_engine import RotationEngine

logger = logging.getLogger(__name__)

ArchivalListener = Callable[[ArchivalEvent], None]


class RetentionPruner:
    """Deletes generations past the retention count or older than the max age.

    Subscribers get an ArchivalEvent right before each deletion and may copy
    the file out; deletion does not wait for them.
    """

    def __init__(self, engine: RotationEngine, clock: Callable[[], float] = time.time) -> None:
        self.engine = engine
        self.clock = clock
        self._listeners: list[ArchivalListener] = []

    def subscribe(self, listener: ArchivalListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: ArchivalListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def expired(self, watched: WatchedFile, gens: list[Generation], now: float | None = None) -> list[Generation]:
        policy = watched.policy
        ts = self.clock() if now is None else now
        rows: list[Generation] = []
        for g in sorted(gens, key=lambda x: x.sequence_index):
            if g.sequence_index >= policy.retention_count:
                rows.append(g)
            elif policy.retention_age_seconds is not None and ts - g.created_at >= policy.retention_age_seconds:
                rows.append(g)
        return rows

    def prune(self, watched: WatchedFile) -> list[Generation]:
        self.engine.ledger.remove_stale(watched.path, busy=self.engine.is_compressing)
        gens = self.engine.generations(watched, refresh=True)
        removed: list[Generation] = []
        failures: list[str] = []

        for g in self.expired(watched, gens):
            if self.engine.is_compressing(g.file_path):
                logger.debug("skip %s: compression in progress", g.file_path)
                continue
            self._emit(ArchivalEvent(generation_path=g.file_path, policy_id=watched.policy.policy_id))
            try:
                os.unlink(g.file_path)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("could not prune %s: %s", g.file_path, e)
                failures.append(f"{g.file_path}: {e}")
                continue
            logger.info("pruned %s (index %d)", g.file_path, g.sequence_index)
            removed.append(g)

        if removed:
            self.engine.ledger.forget(watched.path)
        if failures:
            raise PruneError(watched.path, "; ".join(failures), removed=removed)
        return removed

    def _emit(self, event: ArchivalEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:  # noqa: BLE001
                logger.warning("archival listener failed for %s: %s", event.generation_path, e)
