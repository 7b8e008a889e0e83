from __future__ import annotations


class OpsLogrotateError(Exception):
    """Base class for operator-facing errors."""


class ConfigError(OpsLogrotateError):
    """Malformed policy or daemon configuration."""


class NotFoundError(OpsLogrotateError):
    """Target vanished between resolve and stat. Skip for this cycle."""

    def __init__(self, path: str) -> None:
        super().__init__(f"not found: {path}")
        self.path = path


class RotationError(OpsLogrotateError):
    def __init__(self, path: str, cause: BaseException | str) -> None:
        super().__init__(f"{path}: {cause}")
        self.path = path
        self.cause = cause


class RotationPermissionError(RotationError, PermissionError):
    """Cannot create, rename or truncate a file belonging to a watched path."""


class SignalError(OpsLogrotateError):
    def __init__(self, hook: str, cause: BaseException | str) -> None:
        super().__init__(f"hook {hook!r} failed: {cause}")
        self.hook = hook
        self.cause = cause


class PruneError(OpsLogrotateError):
    def __init__(self, path: str, cause: BaseException | str, removed: list | None = None) -> None:
        super().__init__(f"{path}: {cause}")
        self.path = path
        self.cause = cause
        self.removed = list(removed or [])


class LockBusyError(OpsLogrotateError):
    """Another instance is working on the same live path."""

    def __init__(self, path: str) -> None:
        super().__init__(f"lock busy: {path}")
        self.path = path


def error_kind(e: BaseException) -> str:
    if isinstance(e, RotationPermissionError):
        return "PermissionError"
    if isinstance(e, NotFoundError):
        return "NotFound"
    return e.__class__.__name__


def format_error(e: BaseException) -> str:
    """Return a short message like 'RotationError: detail'."""
    msg = str(e).strip()
    kind = error_kind(e)
    return f"{kind}: {msg}" if msg else kind
