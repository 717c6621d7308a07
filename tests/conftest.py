import gc
import time
from typing import Callable

import pytest

from gcdispose.config.environment import Environment
from gcdispose.observability.metrics import shutdown_metrics
from gcdispose.runtime.disposal_queue import DisposalQueue, reset_default_queue
from gcdispose.runtime.drainer import DisposalDrainer, shutdown_default_drainer
from gcdispose.runtime.soft_retention import reset_soft_retention_pool


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        gc.collect()
        time.sleep(interval)
    return predicate()


@pytest.fixture(autouse=True)
def isolate_runtime(monkeypatch, tmp_path):
    """Keep user settings out of the tests and reset process-wide singletons."""
    monkeypatch.setenv("GCDISPOSE_CONFIG_DIR", str(tmp_path))
    monkeypatch.delenv("GCDISPOSE_METRICS_ENABLED", raising=False)
    Environment.reset()
    yield
    shutdown_default_drainer(timeout=2.0)
    reset_soft_retention_pool()
    reset_default_queue()
    shutdown_metrics()
    Environment.reset()


@pytest.fixture
def wait_for():
    """Poll a predicate until it holds, collecting garbage between attempts."""
    return _wait_for


@pytest.fixture
def disposal_queue():
    return DisposalQueue()


@pytest.fixture
def drainer(disposal_queue):
    drainer = DisposalDrainer(disposal_queue, poll_interval=0.01)
    drainer.start()
    yield drainer
    drainer.stop(timeout=2.0)
