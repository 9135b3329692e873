from __future__ import annotations

import pytest

from chatpipe.core.config import get_settings
from chatpipe.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Settings and in-process counters are module-level; start every test clean.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
