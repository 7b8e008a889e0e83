from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path

from ops_logrotate.collectors.file_inspector import TEMP_MARKER
from ops_logrotate.errors import SignalError
from ops_logrotate.models.policy import RotationPolicy
from ops_logrotate.models.rotation import SignalResult
from ops_logrotate.services.hooks import HookRegistry

logger = logging.getLogger(__name__)


class ReopenSignaler:
    """Gets writers off the rotated inode.

    Two ways: run the policy's reload hook after a rename rotation, or, for
    `copy_truncate` policies, copy the content aside and truncate in place.
    """

    def __init__(self, hooks: HookRegistry | None = None) -> None:
        self.hooks = hooks or HookRegistry()

    def prepare(self, policy: RotationPolicy, live_path: str) -> None:
        """Called right before rotating; a failed lookup only costs the signal."""
        hook = policy.post_rotate_action
        if not hook:
            return
        try:
            self.hooks.prepare(hook, live_path)
        except SignalError as e:
            logger.warning("pre-rotation lookup for %s failed: %s", live_path, e)

    def notify(self, policy: RotationPolicy, live_path: str) -> SignalResult:
        hook = policy.post_rotate_action
        if not hook:
            msg = "copy-truncate: writer keeps its inode" if policy.copy_truncate_only else "no reload hook"
            return SignalResult(hook=None, invoked=False, ok=True, message=msg)

        try:
            self.hooks.invoke(hook, policy, live_path)
        except SignalError as e:
            logger.warning("reopen signal for %s failed: %s", live_path, e)
            raise
        logger.info("reopen signal for %s sent via %s", live_path, hook)
        return SignalResult(hook=hook, invoked=True, ok=True, message="ok")

    def copy_truncate(self, live_path: str, dest_path: str) -> int:
        """Copy `live_path` to `dest_path`, then truncate the original to zero.

        The inode at `live_path` is kept. Bytes the writer appends between
        the end of the copy and the truncate are lost.
        """
        d = os.path.dirname(dest_path) or "."
        fd, tmp = tempfile.mkstemp(prefix=f".{os.path.basename(live_path)}{TEMP_MARKER}", suffix=".tmp", dir=d)
        try:
            with os.fdopen(fd, "wb") as f_out, open(live_path, "rb") as f_in:
                shutil.copyfileobj(f_in, f_out, 1024 * 1024)
                copied = f_out.tell()
            shutil.copymode(live_path, tmp)
            os.replace(tmp, dest_path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

        os.truncate(live_path, 0)
        logger.debug("copy-truncate %s -> %s (%d bytes)", live_path, dest_path, copied)
        return copied
