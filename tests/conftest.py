from __future__ import annotations

import pytest

from helpers import FakeClock
from ops_logrotate.collectors.file_inspector import FileInspector
from ops_logrotate.services.reopen_signaler import ReopenSignaler
from ops_logrotate.services.rotation_engine import RotationEngine


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(clock: FakeClock) -> RotationEngine:
    return RotationEngine(inspector=FileInspector(), signaler=ReopenSignaler(), clock=clock)
