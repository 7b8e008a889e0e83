from __future__ import annotations

import logging
import signal
import threading
import time
from datetime import datetime
from typing import Callable

from ops_logrotate.collectors.file_inspector import FileInspector
from ops_logrotate.errors import (
    ConfigError,
    LockBusyError,
    NotFoundError,
    PruneError,
    RotationError,
    SignalError,
    error_kind,
    format_error,
)
from ops_logrotate.models.policy import PolicySnapshot, RotationPolicy
from ops_logrotate.models.rotation import CycleReport, FileOutcome, Generation, WatchedFile
from ops_logrotate.services.hooks import HookRegistry
from ops_logrotate.services.path_lock import PathLocks
from ops_logrotate.services.policy_store import PolicyStore
from ops_logrotate.services.reopen_signaler import ReopenSignaler
from ops_logrotate.services.report_service import ReportService
from ops_logrotate.services.retention_pruner import RetentionPruner
from ops_logrotate.services.rotation_engine import RotationEngine
from ops_logrotate.workers import WorkerPool

logger = logging.getLogger(__name__)


class Scheduler:
    """Single-threaded driver: one evaluation cycle at a time, never overlapping.

    Owns the process-wide state: the policy snapshot in use, the watched set
    and the next-cycle deadline. Reload requests are applied only at a cycle
    boundary.
    """

    def __init__(
        self,
        store: PolicyStore,
        engine: RotationEngine | None = None,
        pruner: RetentionPruner | None = None,
        hooks: HookRegistry | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        snap = store.snapshot()
        self.hooks = hooks or HookRegistry(snap.settings.hooks)
        if engine is None:
            engine = RotationEngine(
                inspector=FileInspector(),
                signaler=ReopenSignaler(self.hooks),
                pool=WorkerPool(snap.settings.compress_workers),
                offload_bytes=snap.settings.compress_offload_bytes,
                clock=clock,
            )
        self.engine = engine
        self.inspector = engine.inspector
        self.signaler = engine.signaler
        self.pruner = pruner or RetentionPruner(engine, clock=clock)
        self.reports = ReportService()
        self.clock = clock

        self._snapshot: PolicySnapshot = snap
        self._locks = PathLocks(snap.settings.lock_dir or ".")
        self._watched: dict[str, WatchedFile] = {}
        self._stop = threading.Event()
        self._reload_requested = threading.Event()
        self.next_cycle_at: float | None = None

    @property
    def snapshot(self) -> PolicySnapshot:
        return self._snapshot

    def watched(self) -> dict[str, WatchedFile]:
        return dict(self._watched)

    # ---- control -------------------------------------------------------

    def request_stop(self) -> None:
        self._stop.set()

    def request_reload(self) -> None:
        self._reload_requested.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def install_signal_handlers(self) -> None:
        """SIGTERM/SIGINT stop after the current file; SIGHUP reloads next cycle."""
        signal.signal(signal.SIGTERM, lambda _s, _f: self.request_stop())
        signal.signal(signal.SIGINT, lambda _s, _f: self.request_stop())
        if hasattr(signal, "SIGHUP"):
            signal.signal(signal.SIGHUP, lambda _s, _f: self.request_reload())

    def _apply_reload(self) -> None:
        self._reload_requested.clear()
        try:
            snap = self.store.reload()
        except ConfigError as e:
            logger.error("reload failed, keeping v%d: %s", self._snapshot.version, format_error(e))
            return
        self.hooks.configure(snap.settings.hooks)
        self._locks = PathLocks(snap.settings.lock_dir or ".")
        self._snapshot = snap
        logger.info("policy snapshot v%d active", snap.version)

    # ---- cycles --------------------------------------------------------

    def run_cycle(self) -> CycleReport:
        if self._reload_requested.is_set():
            self._apply_reload()

        snap = self._snapshot
        ts = datetime.now()
        outcomes: list[FileOutcome] = []
        notes: list[str] = []
        seen: set[str] = set()

        for policy in snap.policies:
            if self._stop.is_set():
                notes.append("stop requested; cycle cut short")
                break
            matched = 0
            for path in self.inspector.resolve(policy.path_pattern):
                if self._stop.is_set():
                    break
                if path in seen:
                    logger.debug("%s already claimed by an earlier policy", path)
                    continue
                seen.add(path)
                matched += 1
                outcomes.append(self._process(path, policy))
            if matched == 0:
                notes.append(f"no files match {policy.path_pattern}")

        for gone in set(self._watched) - seen:
            self._watched.pop(gone, None)
            self.engine.ledger.forget(gone)

        return CycleReport(ts=ts, snapshot_version=snap.version, outcomes=outcomes, notes=notes)

    def run_forever(self) -> None:
        """Cycle every `interval` until stopped. A long cycle delays the next one."""
        logger.info("scheduler started (interval=%.0fs)", self._snapshot.settings.interval_seconds)
        try:
            while not self._stop.is_set():
                started = self.clock()
                result = self.run_cycle()
                self._log_cycle(result)
                if self._stop.is_set():
                    break
                self.next_cycle_at = started + self._snapshot.settings.interval_seconds
                self._stop.wait(max(0.0, self.next_cycle_at - self.clock()))
        finally:
            self.engine.shutdown()
            logger.info("scheduler stopped")

    def _log_cycle(self, result: CycleReport) -> None:
        logger.info(
            "cycle done: %d file(s), %d rotated, %d warning(s)",
            len(result.outcomes),
            result.count("rotated"),
            result.warning_count,
        )
        if result.warning_count:
            logger.warning("%s", self.reports.build_report(result))

    def _process(self, path: str, policy: RotationPolicy) -> FileOutcome:
        now = self.clock()
        pid = policy.policy_id
        try:
            st = self.inspector.stat(path)
        except NotFoundError as e:
            self._watched.pop(path, None)
            return FileOutcome(path=path, policy_id=pid, action="skipped", error_kind=error_kind(e), message=str(e))

        wf = self._watched.get(path)
        if wf is None:
            wf = WatchedFile(
                path=path,
                policy=policy,
                last_known_size=st.size_bytes,
                last_known_inode=st.inode,
                first_seen=now,
            )
            self._watched[path] = wf
        else:
            wf.refresh(st, policy)

        gen: Generation | None = None
        removed: list[Generation] = []
        kind: str | None = None
        message = "unchanged"
        try:
            with self._locks.hold(path):
                if self.engine.evaluate(wf, now=now):
                    self.signaler.prepare(policy, path)
                    gen = self.engine.rotate(wf)
                    message = f"rotated to {gen.file_path}"
                    try:
                        self.signaler.notify(policy, path)
                    except SignalError as e:
                        kind, message = error_kind(e), f"rotated, but {e}"
                try:
                    removed = self.pruner.prune(wf)
                except PruneError as e:
                    removed = e.removed
                    if kind is None:
                        kind, message = error_kind(e), str(e)
        except LockBusyError as e:
            return FileOutcome(path=path, policy_id=pid, action="skipped", error_kind=error_kind(e), message=str(e))
        except NotFoundError as e:
            self._watched.pop(path, None)
            return FileOutcome(path=path, policy_id=pid, action="skipped", error_kind=error_kind(e), message=str(e))
        except RotationError as e:
            logger.error("rotation of %s failed: %s", path, format_error(e))
            return FileOutcome(path=path, policy_id=pid, action="failed", error_kind=error_kind(e), message=str(e))
        except Exception as e:  # noqa: BLE001
            logger.exception("unexpected failure on %s", path)
            return FileOutcome(path=path, policy_id=pid, action="failed", error_kind=error_kind(e), message=str(e))

        return FileOutcome(
            path=path,
            policy_id=pid,
            action="rotated" if gen is not None else "unchanged",
            error_kind=kind,
            message=message,
            generation=gen,
            removed=removed,
        )
