from __future__ import annotations

from pathlib import Path

from ops_logrotate.models.policy import Compression, RotationPolicy, Trigger
from ops_logrotate.models.rotation import WatchedFile


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_policy(path: Path | str, **kw) -> RotationPolicy:
    trigger = kw.pop("trigger", None) or Trigger(size_bytes=kw.pop("size", 1000), age_seconds=kw.pop("age", None))
    kw.setdefault("retention_count", 2)
    kw.setdefault("compression", Compression.GZIP)
    return RotationPolicy(path_pattern=str(path), trigger=trigger, **kw)


def watch(path: Path, policy: RotationPolicy, first_seen: float = 0.0) -> WatchedFile:
    st = path.stat()
    return WatchedFile(
        path=str(path),
        policy=policy,
        last_known_size=st.st_size,
        last_known_inode=st.st_ino,
        first_seen=first_seen,
    )
