from __future__ import annotations

import json
import logging
import os
import re
import signal
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Union

from ops_logrotate.errors import ConfigError
from ops_logrotate.models.policy import (
    Compression,
    DaemonSettings,
    HookSpec,
    PolicySnapshot,
    RotationPolicy,
    Trigger,
)

logger = logging.getLogger(__name__)

ConfigSource = Union[str, os.PathLike, Mapping[str, Any]]

_SIZE_RE = re.compile(r"^\s*(\d+)\s*([kKmMgG]?)\s*$")
_SIZE_MULT = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3}

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhdw]?)\s*$")
_DURATION_MULT = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400, "w": 7 * 86400}
_DURATION_WORDS = {
    "hourly": 3600,
    "daily": 86400,
    "weekly": 7 * 86400,
    "monthly": 30 * 86400,
    "yearly": 365 * 86400,
}

_TOP_KEYS = {"interval", "lock_dir", "compress_offload_bytes", "compress_workers", "hooks", "policies"}
_POLICY_KEYS = {
    "path",
    "size",
    "age",
    "rotate",
    "max_age",
    "compress",
    "delay_compress",
    "post_rotate",
    "copy_truncate",
    "create_mode",
    "rotate_empty",
    "min_size",
}
_HOOK_KEYS = {"signal", "pidfile", "process_name", "writers", "command", "timeout"}


def parse_size(value: Any, where: str = "size") -> int:
    """Parse `1000`, `"100k"`, `"10M"` or `"1G"` into bytes (binary multiples)."""
    if isinstance(value, bool):
        raise ConfigError(f"{where}: expected a size, got {value!r}")
    if isinstance(value, int):
        n = value
    else:
        m = _SIZE_RE.match(str(value))
        if not m:
            raise ConfigError(f"{where}: malformed size {value!r}")
        n = int(m.group(1)) * _SIZE_MULT[m.group(2).lower()]
    if n <= 0:
        raise ConfigError(f"{where}: size must be > 0, got {value!r}")
    return n


def parse_duration(value: Any, where: str = "duration") -> float:
    """Parse seconds, `"30m"`, `"7d"`, `"2w"` or `daily`-style keywords."""
    if isinstance(value, bool):
        raise ConfigError(f"{where}: expected a duration, got {value!r}")
    if isinstance(value, (int, float)):
        secs = float(value)
    else:
        text = str(value).strip().lower()
        if text in _DURATION_WORDS:
            secs = float(_DURATION_WORDS[text])
        else:
            m = _DURATION_RE.match(text)
            if not m:
                raise ConfigError(f"{where}: malformed duration {value!r}")
            secs = float(m.group(1)) * _DURATION_MULT[m.group(2)]
    if secs <= 0:
        raise ConfigError(f"{where}: duration must be > 0, got {value!r}")
    return secs


def _parse_bool(value: Any, where: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigError(f"{where}: expected true/false, got {value!r}")


def _check_keys(obj: Mapping[str, Any], allowed: set[str], where: str) -> None:
    unknown = sorted(set(obj) - allowed)
    if unknown:
        raise ConfigError(f"{where}: unknown key(s): {', '.join(unknown)}")


def _parse_policy(idx: int, raw: Any) -> RotationPolicy:
    where = f"policies[{idx}]"
    if not isinstance(raw, Mapping):
        raise ConfigError(f"{where}: expected an object")
    _check_keys(raw, _POLICY_KEYS, where)

    pattern = raw.get("path")
    if not isinstance(pattern, str) or not pattern.strip():
        raise ConfigError(f"{where}.path: required non-empty string")

    size = parse_size(raw["size"], f"{where}.size") if raw.get("size") is not None else None
    age = parse_duration(raw["age"], f"{where}.age") if raw.get("age") is not None else None
    if size is None and age is None:
        raise ConfigError(f"{where}: needs at least one of 'size' or 'age'")

    count = raw.get("rotate", 4)
    if isinstance(count, bool) or not isinstance(count, int):
        raise ConfigError(f"{where}.rotate: expected an integer, got {count!r}")
    if count < 1:
        raise ConfigError(f"{where}.rotate: retention count must be >= 1, got {count}")

    max_age = None
    if raw.get("max_age") is not None:
        max_age = parse_duration(raw["max_age"], f"{where}.max_age")

    try:
        compression = Compression(str(raw.get("compress", "gzip")).lower())
    except ValueError:
        raise ConfigError(f"{where}.compress: expected none, gzip or xz, got {raw.get('compress')!r}") from None

    hook = raw.get("post_rotate")
    if hook is not None:
        if not isinstance(hook, str) or not hook:
            raise ConfigError(f"{where}.post_rotate: expected a hook name")

    mode = None
    if raw.get("create_mode") is not None:
        try:
            mode = int(str(raw["create_mode"]), 8)
        except ValueError:
            raise ConfigError(f"{where}.create_mode: expected an octal mode, got {raw['create_mode']!r}") from None
        if not 0 <= mode <= 0o7777:
            raise ConfigError(f"{where}.create_mode: out of range {raw['create_mode']!r}")

    min_size = parse_size(raw["min_size"], f"{where}.min_size") if raw.get("min_size") is not None else None

    return RotationPolicy(
        path_pattern=os.path.abspath(os.path.expanduser(pattern.strip())),
        trigger=Trigger(size_bytes=size, age_seconds=age),
        retention_count=count,
        retention_age_seconds=max_age,
        compression=compression,
        delay_compress=_parse_bool(raw.get("delay_compress", False), f"{where}.delay_compress"),
        post_rotate_action=hook,
        copy_truncate_only=_parse_bool(raw.get("copy_truncate", False), f"{where}.copy_truncate"),
        create_mode=mode,
        rotate_empty=_parse_bool(raw.get("rotate_empty", True), f"{where}.rotate_empty"),
        min_size_bytes=min_size,
    )


def _parse_hook(name: str, raw: Any) -> HookSpec:
    where = f"hooks.{name}"
    if not isinstance(raw, Mapping):
        raise ConfigError(f"{where}: expected an object")
    _check_keys(raw, _HOOK_KEYS, where)

    command = raw.get("command")
    sig = raw.get("signal")
    if command is None and sig is None:
        raise ConfigError(f"{where}: needs 'signal' or 'command'")
    if command is not None and sig is not None:
        raise ConfigError(f"{where}: 'signal' and 'command' are mutually exclusive")

    cmd: tuple[str, ...] | None = None
    if command is not None:
        if isinstance(command, str) or not isinstance(command, list) or not command:
            raise ConfigError(f"{where}.command: expected a non-empty argv list")
        cmd = tuple(str(c) for c in command)

    writers = _parse_bool(raw.get("writers", False), f"{where}.writers")
    if sig is not None:
        targets = sum(1 for k in ("pidfile", "process_name") if raw.get(k)) + int(writers)
        if targets != 1:
            raise ConfigError(f"{where}: signal hooks need exactly one of pidfile, process_name or writers")
        sig = str(sig).upper().removeprefix("SIG")
        if not isinstance(getattr(signal, f"SIG{sig}", None), signal.Signals):
            raise ConfigError(f"{where}.signal: unknown signal {raw['signal']!r}")

    timeout = parse_duration(raw.get("timeout", 30), f"{where}.timeout")
    return HookSpec(
        name=name,
        signal=sig,
        pidfile=raw.get("pidfile"),
        process_name=raw.get("process_name"),
        writers=writers,
        command=cmd,
        timeout_seconds=timeout,
    )


def parse_config(obj: Any, version: int = 1) -> PolicySnapshot:
    """Validate a parsed config document into a snapshot. Raises ConfigError."""
    if not isinstance(obj, Mapping):
        raise ConfigError("config: expected a JSON object")
    _check_keys(obj, _TOP_KEYS, "config")

    raw_hooks = obj.get("hooks") or {}
    if not isinstance(raw_hooks, Mapping):
        raise ConfigError("hooks: expected an object")
    hooks = tuple(_parse_hook(str(k), v) for k, v in raw_hooks.items())

    raw_policies = obj.get("policies")
    if not isinstance(raw_policies, list):
        raise ConfigError("policies: expected a list")

    policies: list[RotationPolicy] = []
    seen: set[str] = set()
    for idx, raw in enumerate(raw_policies):
        p = _parse_policy(idx, raw)
        if p.path_pattern in seen:
            raise ConfigError(f"policies[{idx}].path: duplicate pattern {p.path_pattern!r}")
        seen.add(p.path_pattern)
        policies.append(p)

    workers = obj.get("compress_workers", 2)
    if isinstance(workers, bool) or not isinstance(workers, int) or workers < 1:
        raise ConfigError(f"compress_workers: expected an integer >= 1, got {workers!r}")

    lock_dir = obj.get("lock_dir") or os.path.join(tempfile.gettempdir(), "ops_logrotate-locks")
    settings = DaemonSettings(
        interval_seconds=parse_duration(obj.get("interval", 60), "interval"),
        lock_dir=str(lock_dir),
        compress_offload_bytes=parse_size(obj.get("compress_offload_bytes", "64M"), "compress_offload_bytes"),
        compress_workers=workers,
        hooks=hooks,
    )
    return PolicySnapshot(
        version=version,
        loaded_at=datetime.now(),
        settings=settings,
        policies=tuple(policies),
    )


class PolicyStore:
    """Owns the active policy snapshot. Swaps it whole, never piecemeal."""

    def __init__(self, source: ConfigSource | None = None) -> None:
        self.source: ConfigSource = source if source is not None else self.default_path()
        self._lock = threading.Lock()
        self._active: PolicySnapshot | None = None
        self._version = 0

    @staticmethod
    def default_path() -> Path:
        env = os.environ.get("OPS_LOGROTATE_CONFIG")
        if env:
            return Path(env)
        xdg = os.environ.get("XDG_CONFIG_HOME")
        if xdg:
            base = Path(xdg)
        else:
            base = Path.home() / ".config"
        return base / "ops_logrotate" / "config.json"

    def load(self, source: ConfigSource | None = None) -> list[RotationPolicy]:
        if source is not None:
            self.source = source
        snap = parse_config(self._read(self.source), version=self._version + 1)
        with self._lock:
            self._version = snap.version
            self._active = snap
        logger.info("loaded %d policies (v%d)", len(snap.policies), snap.version)
        return list(snap.policies)

    def reload(self) -> PolicySnapshot:
        """Re-read the source. On ConfigError the previous snapshot stays active."""
        previous = self._active
        try:
            self.load()
        except ConfigError:
            if previous is not None:
                logger.warning("reload rejected; keeping policy snapshot v%d", previous.version)
            raise
        return self.snapshot()

    def snapshot(self) -> PolicySnapshot:
        with self._lock:
            snap = self._active
        if snap is None:
            raise ConfigError("no policy snapshot loaded")
        return snap

    def _read(self, source: ConfigSource) -> Any:
        if isinstance(source, Mapping):
            return source
        p = Path(source)
        try:
            with open(p, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            raise ConfigError(f"config not found: {p}") from None
        except json.JSONDecodeError as e:
            raise ConfigError(f"{p}: invalid JSON: {e}") from None
        except OSError as e:
            raise ConfigError(f"{p}: {e}") from None
