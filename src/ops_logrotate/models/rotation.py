from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from ops_logrotate.models.policy import RotationPolicy


@dataclass(frozen=True)
class FileStat:
    size_bytes: int
    mod_time: float
    inode: int
    mode: int
    uid: int
    gid: int


@dataclass
class WatchedFile:
    path: str
    policy: RotationPolicy
    last_known_size: int
    last_known_inode: int
    first_seen: float
    last_rotated_at: float | None = None

    def refresh(self, st: FileStat, policy: RotationPolicy) -> None:
        self.policy = policy
        self.last_known_size = st.size_bytes
        self.last_known_inode = st.inode


@dataclass(frozen=True)
class Generation:
    sequence_index: int
    file_path: str
    size_bytes: int
    created_at: float
    compressed: bool


@dataclass(frozen=True)
class ArchivalEvent:
    generation_path: str
    policy_id: str
    eligible_for_archival: bool = True


@dataclass(frozen=True)
class SignalResult:
    hook: str | None
    invoked: bool
    ok: bool
    message: str


@dataclass(frozen=True)
class FileOutcome:
    path: str
    policy_id: str
    action: str
    message: str
    error_kind: str | None = None
    generation: Generation | None = None
    removed: list[Generation] = field(default_factory=list)


@dataclass(frozen=True)
class CycleReport:
    """Outcome of one scheduler pass over every watched path."""

    ts: datetime
    snapshot_version: int
    outcomes: list[FileOutcome]
    notes: list[str] = field(default_factory=list)

    @property
    def problems(self) -> list[FileOutcome]:
        return [o for o in self.outcomes if o.error_kind is not None]

    @property
    def status(self) -> str:
        return "WARN" if self.problems else "OK"

    @property
    def warning_count(self) -> int:
        return len(self.problems)

    @property
    def warnings(self) -> list[str]:
        return [f"{o.path}: {o.error_kind}: {o.message}" for o in self.problems]

    def count(self, action: str) -> int:
        return sum(1 for o in self.outcomes if o.action == action)
