from __future__ import annotations

import faulthandler
import logging
import os
import sys

from ops_logrotate.errors import ConfigError, format_error
from ops_logrotate.services.policy_store import PolicyStore
from ops_logrotate.services.report_service import ReportService
from ops_logrotate.services.scheduler import Scheduler

logger = logging.getLogger("ops_logrotate")


def _setup_logging() -> None:
    level = os.environ.get("OPS_LOGROTATE_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build() -> Scheduler:
    store = PolicyStore()
    try:
        store.load()
    except ConfigError as e:
        logger.error("cannot start: %s", format_error(e))
        raise SystemExit(2) from None
    return Scheduler(store)


def run() -> None:
    """Run as a daemon until SIGTERM/SIGINT. SIGHUP reloads the policies."""
    faulthandler.enable()
    _setup_logging()

    sched = _build()
    sched.install_signal_handlers()
    sched.run_forever()
    raise SystemExit(0)


def run_once() -> None:
    """One cycle, then exit; for cron or systemd timers."""
    _setup_logging()

    sched = _build()
    try:
        result = sched.run_cycle()
    finally:
        sched.engine.shutdown()
    sys.stdout.write(ReportService().build_report(result))
    failed = any(o.action == "failed" for o in result.outcomes)
    raise SystemExit(1 if failed else 0)
