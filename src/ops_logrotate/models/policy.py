from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Compression(str, Enum):
    NONE = "none"
    GZIP = "gzip"
    XZ = "xz"

    @property
    def suffix(self) -> str:
        if self is Compression.GZIP:
            return ".gz"
        if self is Compression.XZ:
            return ".xz"
        return ""


@dataclass(frozen=True)
class Trigger:
    """Size and/or age thresholds. Either one firing qualifies the file."""

    size_bytes: int | None = None
    age_seconds: float | None = None

    @property
    def kind(self) -> str:
        if self.size_bytes is not None and self.age_seconds is not None:
            return "both"
        if self.size_bytes is not None:
            return "size"
        return "age"


@dataclass(frozen=True)
class RotationPolicy:
    path_pattern: str
    trigger: Trigger
    retention_count: int
    retention_age_seconds: float | None = None
    compression: Compression = Compression.GZIP
    delay_compress: bool = False
    post_rotate_action: str | None = None
    copy_truncate_only: bool = False
    create_mode: int | None = None
    rotate_empty: bool = True
    min_size_bytes: int | None = None

    @property
    def policy_id(self) -> str:
        return self.path_pattern


@dataclass(frozen=True)
class HookSpec:
    name: str
    signal: str | None = None
    pidfile: str | None = None
    process_name: str | None = None
    writers: bool = False
    command: tuple[str, ...] | None = None
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class DaemonSettings:
    interval_seconds: float = 60.0
    lock_dir: str | None = None
    compress_offload_bytes: int = 64 * 1024 * 1024
    compress_workers: int = 2
    hooks: tuple[HookSpec, ...] = ()


@dataclass(frozen=True)
class PolicySnapshot:
    """One immutable, fully validated view of the configuration."""

    version: int
    loaded_at: datetime
    settings: DaemonSettings
    policies: tuple[RotationPolicy, ...] = field(default_factory=tuple)
