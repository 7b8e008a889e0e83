from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from typing import Callable, Iterable

import psutil

from ops_logrotate.errors import SignalError
from ops_logrotate.models.policy import HookSpec, RotationPolicy

logger = logging.getLogger(__name__)

HookFn = Callable[[RotationPolicy, str], None]

_PROC_ERRORS = (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess)


def _pid_from_file(pidfile: str) -> int:
    with open(pidfile, "r", encoding="utf-8") as f:
        text = f.read().strip()
    try:
        return int(text.split()[0])
    except (ValueError, IndexError):
        raise ValueError(f"pidfile {pidfile} holds no pid: {text!r}") from None


def _by_name(name: str) -> list[psutil.Process]:
    rows: list[psutil.Process] = []
    for p in psutil.process_iter(attrs=["pid", "name"]):
        if p.info.get("name") == name:
            rows.append(p)
    return rows


def _writers_of(path: str) -> list[psutil.Process]:
    """Processes that currently hold `path` open."""
    target = os.path.realpath(path)
    rows: list[psutil.Process] = []
    for p in psutil.process_iter(attrs=["pid"]):
        if p.pid == os.getpid():
            continue
        try:
            files = p.open_files()
        except _PROC_ERRORS:
            continue
        if any(os.path.realpath(f.path) == target for f in files):
            rows.append(p)
    return rows


def signal_hook(spec: HookSpec) -> HookFn:
    sig = getattr(signal, f"SIG{spec.signal}")

    def _invoke(policy: RotationPolicy, live_path: str) -> None:
        if spec.pidfile:
            procs = [psutil.Process(_pid_from_file(spec.pidfile))]
        else:
            procs = _by_name(spec.process_name or "")
            if not procs:
                raise ProcessLookupError(f"no process named {spec.process_name!r}")

        for p in procs:
            p.send_signal(sig)
            logger.info("hook %s: sent SIG%s to pid %d", spec.name, spec.signal, p.pid)

    return _invoke


class WritersHook:
    """Signals every process that has the live file open.

    A rename rotation takes the live name away from the writers' inode, so
    they can no longer be found by path afterwards. `prepare` records them
    before the swap and the call after it signals those plus any current
    holders.
    """

    def __init__(self, spec: HookSpec) -> None:
        self.spec = spec
        self._sig = getattr(signal, f"SIG{spec.signal}")
        self._lock = threading.Lock()
        self._pending: dict[str, set[int]] = {}

    def prepare(self, live_path: str) -> None:
        pids = {p.pid for p in _writers_of(live_path)}
        with self._lock:
            self._pending[live_path] = pids

    def __call__(self, policy: RotationPolicy, live_path: str) -> None:
        with self._lock:
            pids = self._pending.pop(live_path, set())
        pids |= {p.pid for p in _writers_of(live_path)}
        if not pids:
            logger.info("hook %s: no process holds %s open", self.spec.name, live_path)
            return

        for pid in sorted(pids):
            try:
                psutil.Process(pid).send_signal(self._sig)
            except psutil.NoSuchProcess:
                logger.debug("hook %s: pid %d already gone", self.spec.name, pid)
                continue
            logger.info("hook %s: sent SIG%s to pid %d", self.spec.name, self.spec.signal, pid)


def command_hook(spec: HookSpec) -> HookFn:
    argv = list(spec.command or ())
    if not argv:
        raise ValueError(f"hook {spec.name} has no command")

    def _invoke(policy: RotationPolicy, live_path: str) -> None:
        env = dict(os.environ)
        env["OPS_LOGROTATE_FILE"] = live_path
        env["OPS_LOGROTATE_POLICY"] = policy.policy_id
        proc = subprocess.run(
            argv,
            env=env,
            capture_output=True,
            text=True,
            timeout=spec.timeout_seconds,
        )
        if proc.returncode != 0:
            err = (proc.stderr or proc.stdout or "").strip().splitlines()
            tail = err[-1] if err else ""
            raise RuntimeError(f"exit status {proc.returncode}" + (f": {tail}" if tail else ""))

    return _invoke


def build_hook(spec: HookSpec) -> HookFn:
    if spec.command is not None:
        return command_hook(spec)
    if spec.writers:
        return WritersHook(spec)
    return signal_hook(spec)


class HookRegistry:
    """Named reload hooks. Config-defined ones are replaced on reload,
    hooks registered from code persist."""

    def __init__(self, specs: Iterable[HookSpec] = ()) -> None:
        self._configured: dict[str, HookFn] = {}
        self._registered: dict[str, HookFn] = {}
        self.configure(specs)

    def configure(self, specs: Iterable[HookSpec]) -> None:
        self._configured = {s.name: build_hook(s) for s in specs}

    def register(self, name: str, fn: HookFn) -> None:
        self._registered[name] = fn

    def names(self) -> list[str]:
        return sorted(set(self._configured) | set(self._registered))

    def prepare(self, name: str, live_path: str) -> None:
        """Let the hook look at the file before it is rotated. Unknown names are left to `invoke`."""
        fn = self._registered.get(name) or self._configured.get(name)
        prep = getattr(fn, "prepare", None)
        if prep is None:
            return
        try:
            prep(live_path)
        except (OSError, psutil.Error) as e:
            raise SignalError(name, e) from e

    def invoke(self, name: str, policy: RotationPolicy, live_path: str) -> None:
        fn = self._registered.get(name) or self._configured.get(name)
        if fn is None:
            raise SignalError(name, "no such hook")
        try:
            fn(policy, live_path)
        except SignalError:
            raise
        except (OSError, subprocess.SubprocessError, psutil.Error, RuntimeError, ValueError) as e:
            raise SignalError(name, e) from e
