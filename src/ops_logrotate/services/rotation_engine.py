from __future__ import annotations

import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable

from ops_logrotate.collectors.file_inspector import TEMP_MARKER, FileInspector
from ops_logrotate.errors import RotationError, RotationPermissionError
from ops_logrotate.models.policy import Compression, RotationPolicy
from ops_logrotate.models.rotation import FileStat, Generation, WatchedFile
from ops_logrotate.services.compressor import compress_file
from ops_logrotate.services.reopen_signaler import ReopenSignaler
from ops_logrotate.workers import WorkerJob, WorkerPool

logger = logging.getLogger(__name__)


def generation_path(live_path: str, index: int, suffix: str = "") -> str:
    """On-disk name of generation `index`: index 0 is `<live>.1`."""
    return f"{live_path}.{index + 1}{suffix}"


class GenerationLedger:
    """In-memory view of each live file's generations.

    The directory listing is the only persisted state; entries are rebuilt
    from `<live>.<n>[.gz|.xz]` names whenever a path is (re)loaded.
    """

    def __init__(self, inspector: FileInspector) -> None:
        self._inspector = inspector
        self._lock = threading.Lock()
        self._by_path: dict[str, list[Generation]] = {}

    def get(self, live_path: str) -> list[Generation]:
        with self._lock:
            gens = self._by_path.get(live_path)
        if gens is None:
            gens = self.load(live_path)
        return list(gens)

    def load(self, live_path: str) -> list[Generation]:
        """Rebuild from the directory. Read-only: duplicates are skipped, not removed."""
        entries = self._inspector.generation_entries(live_path)
        gens: list[Generation] = []
        seen: set[int] = set()
        for e in entries:
            if e.number in seen:
                continue
            seen.add(e.number)
            gens.append(
                Generation(
                    sequence_index=e.number - 1,
                    file_path=e.path,
                    size_bytes=e.size_bytes,
                    created_at=e.mod_time,
                    compressed=bool(e.suffix),
                )
            )
        with self._lock:
            self._by_path[live_path] = gens
        return list(gens)

    def remove_stale(self, live_path: str, busy: Callable[[str], bool] | None = None) -> list[str]:
        """Unlink plain leftovers of compressions that already renamed into place."""
        removed: list[str] = []
        entries = self._inspector.generation_entries(live_path)
        compressed = {e.number for e in entries if e.suffix}
        for e in entries:
            if e.suffix or e.number not in compressed or (busy is not None and busy(e.path)):
                continue
            logger.warning("removing stale uncompressed duplicate %s", e.path)
            Path(e.path).unlink(missing_ok=True)
            removed.append(e.path)
        if removed:
            self.forget(live_path)
        return removed

    def forget(self, live_path: str) -> None:
        with self._lock:
            self._by_path.pop(live_path, None)


class RotationEngine:
    def __init__(
        self,
        inspector: FileInspector | None = None,
        signaler: ReopenSignaler | None = None,
        pool: WorkerPool | None = None,
        offload_bytes: int = 64 * 1024 * 1024,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.inspector = inspector or FileInspector()
        self.signaler = signaler or ReopenSignaler()
        self.ledger = GenerationLedger(self.inspector)
        self.pool = pool
        self.offload_bytes = int(offload_bytes)
        self.clock = clock
        self._compressing: set[str] = set()
        self._compressing_lock = threading.Lock()

    # ---- queries -------------------------------------------------------

    def generations(self, watched: WatchedFile, refresh: bool = False) -> list[Generation]:
        if refresh:
            return self.ledger.load(watched.path)
        return self.ledger.get(watched.path)

    def age_origin(self, watched: WatchedFile) -> float:
        """Time of the last rotation, or when the file was first observed.

        Retention may delete every generation, so a rotation done by this
        process counts even when nothing it produced is left on disk.
        """
        gens = self.ledger.get(watched.path)
        newest = min(gens, key=lambda g: g.sequence_index, default=None)
        if watched.last_rotated_at is not None:
            if newest is None:
                return watched.last_rotated_at
            return max(watched.last_rotated_at, newest.created_at)
        if newest is None:
            return watched.first_seen
        return newest.created_at

    def evaluate(self, watched: WatchedFile, now: float | None = None) -> bool:
        """Decide from the last refreshed stat whether the file is due."""
        policy = watched.policy
        size = watched.last_known_size
        if size == 0 and not policy.rotate_empty:
            return False
        if policy.min_size_bytes is not None and size < policy.min_size_bytes:
            return False

        trig = policy.trigger
        if trig.size_bytes is not None and size >= trig.size_bytes:
            return True
        if trig.age_seconds is not None:
            ts = self.clock() if now is None else now
            if ts - self.age_origin(watched) >= trig.age_seconds:
                return True
        return False

    def is_compressing(self, path: str) -> bool:
        with self._compressing_lock:
            return path in self._compressing

    # ---- rotation ------------------------------------------------------

    def rotate(self, watched: WatchedFile) -> Generation:
        live = watched.path
        policy = watched.policy
        if self.pool is not None:
            self.pool.wait(live)

        st = self.inspector.stat(live)
        self.ledger.remove_stale(live)
        gens = self.ledger.load(live)
        now = self.clock()

        if policy.copy_truncate_only:
            self._rotate_copy_truncate(live, gens)
        else:
            self._rotate_rename(live, st, policy, gens)

        gen0 = generation_path(live, 0)
        try:
            os.utime(gen0, (now, now))
        except OSError as e:
            logger.debug("could not stamp %s: %s", gen0, e)

        gens = self.ledger.load(live)
        gen0_path = self._compress_due(live, policy, gens)

        self.ledger.load(live)
        new_st = self.inspector.stat(live)
        watched.last_known_size = new_st.size_bytes
        watched.last_known_inode = new_st.inode
        watched.last_rotated_at = now

        try:
            size = os.stat(gen0_path).st_size
        except FileNotFoundError:
            size = st.size_bytes
        logger.info("rotated %s -> %s", live, gen0_path)
        return Generation(
            sequence_index=0,
            file_path=gen0_path,
            size_bytes=int(size),
            created_at=now,
            compressed=gen0_path != gen0,
        )

    def shutdown(self) -> None:
        if self.pool is not None:
            self.pool.shutdown(wait=True)

    def _rotate_rename(self, live: str, st: FileStat, policy: RotationPolicy, gens: list[Generation]) -> None:
        tmp = self._prepare_replacement(live, st, policy)
        try:
            moved = self._shift(live, gens)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

        gen0 = generation_path(live, 0)
        try:
            self._swap_in(live, tmp, gen0)
        except OSError as e:
            Path(tmp).unlink(missing_ok=True)
            self._unshift(moved)
            raise self._wrap(live, e) from e

    def _rotate_copy_truncate(self, live: str, gens: list[Generation]) -> None:
        moved = self._shift(live, gens)
        gen0 = generation_path(live, 0)
        try:
            self.signaler.copy_truncate(live, gen0)
        except OSError as e:
            # live still holds every byte; drop the copy and restore names
            if os.path.exists(live):
                Path(gen0).unlink(missing_ok=True)
            self._unshift(moved)
            raise self._wrap(live, e) from e

    def _prepare_replacement(self, live: str, st: FileStat, policy: RotationPolicy) -> str:
        """Empty file beside `live` with the policy's mode and the old owner."""
        d = os.path.dirname(live) or "."
        try:
            fd, tmp = tempfile.mkstemp(prefix=f".{os.path.basename(live)}{TEMP_MARKER}", suffix=".tmp", dir=d)
        except OSError as e:
            raise self._wrap(live, e) from e
        try:
            mode = policy.create_mode if policy.create_mode is not None else st.mode
            os.fchmod(fd, mode)
            if hasattr(os, "geteuid") and os.geteuid() == 0:
                os.fchown(fd, st.uid, st.gid)
        except OSError as e:
            os.close(fd)
            Path(tmp).unlink(missing_ok=True)
            raise self._wrap(live, e) from e
        os.close(fd)
        return tmp

    def _shift(self, live: str, gens: list[Generation]) -> list[tuple[str, str]]:
        """Renumber so the generation at position p lands on index p+1.

        Upward moves run highest first and downward moves (closing gaps)
        lowest first, so no rename ever targets an occupied name.
        """
        ordered = sorted(gens, key=lambda g: g.sequence_index)
        up: list[tuple[str, str]] = []
        down: list[tuple[str, str]] = []
        for pos, g in enumerate(ordered):
            suffix = ".gz" if g.file_path.endswith(".gz") else ".xz" if g.file_path.endswith(".xz") else ""
            dst = generation_path(live, pos + 1, suffix)
            if dst == g.file_path:
                continue
            if pos + 1 > g.sequence_index:
                up.append((g.file_path, dst))
            else:
                down.append((g.file_path, dst))

        done: list[tuple[str, str]] = []
        try:
            for src, dst in down + list(reversed(up)):
                if os.path.exists(dst):
                    raise FileExistsError(dst)
                os.rename(src, dst)
                done.append((src, dst))
        except OSError as e:
            self._unshift(done)
            raise self._wrap(live, e) from e
        return done

    def _unshift(self, moved: list[tuple[str, str]]) -> None:
        for src, dst in reversed(moved):
            try:
                os.rename(dst, src)
            except OSError as e:
                logger.error("rollback rename %s -> %s failed: %s", dst, src, e)

    def _swap_in(self, live: str, tmp: str, gen0: str) -> None:
        """Move the live file to `gen0` and put `tmp` in its place.

        With hard links the live name is never absent: link, then replace.
        """
        try:
            os.link(live, gen0)
        except FileExistsError:
            raise
        except OSError as e:
            logger.debug("hard link unavailable for %s (%s); using rename", live, e)
        else:
            try:
                os.replace(tmp, live)
            except OSError:
                Path(gen0).unlink(missing_ok=True)
                raise
            return

        os.rename(live, gen0)
        try:
            os.replace(tmp, live)
        except OSError:
            try:
                os.rename(gen0, live)
            except OSError as e:
                logger.critical("could not restore %s from %s: %s", live, gen0, e)
            raise

    def _compress_due(self, live: str, policy: RotationPolicy, gens: list[Generation]) -> str:
        """Compress every plain generation the policy wants compressed.

        With `delay_compress` index 0 stays plain for one cycle. Returns the
        current path of generation 0.
        """
        gen0 = generation_path(live, 0)
        gen0_path = next((g.file_path for g in gens if g.sequence_index == 0), gen0)
        if policy.compression is Compression.NONE:
            return gen0_path

        first = 1 if policy.delay_compress else 0
        for g in gens:
            if g.compressed or g.sequence_index < first or self.is_compressing(g.file_path):
                continue
            if self.pool is not None and g.size_bytes >= self.offload_bytes:
                self._compress_later(self.pool, live, g, policy.compression)
                continue
            try:
                out = compress_file(g.file_path, policy.compression)
            except OSError as e:
                logger.warning("compression of %s failed, leaving it plain: %s", g.file_path, e)
                continue
            if g.sequence_index == 0:
                gen0_path = out
        return gen0_path

    def _compress_later(self, pool: WorkerPool, live: str, g: Generation, compression: Compression) -> None:
        with self._compressing_lock:
            self._compressing.add(g.file_path)

        def _done(_res: object = None) -> None:
            with self._compressing_lock:
                self._compressing.discard(g.file_path)
            self.ledger.forget(live)

        def _failed(e: BaseException) -> None:
            _done()
            logger.warning("background compression of %s failed: %s", g.file_path, e)

        logger.info("compressing %s in background (%d bytes)", g.file_path, g.size_bytes)
        pool.submit(
            WorkerJob(
                key=live,
                fn=lambda: compress_file(g.file_path, compression),
                on_result=_done,
                on_error=_failed,
            )
        )

    @staticmethod
    def _wrap(live: str, e: OSError) -> RotationError:
        if isinstance(e, PermissionError):
            return RotationPermissionError(live, e)
        return RotationError(live, e)
