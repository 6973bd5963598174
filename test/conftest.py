import copy
import time

import pytest

from quorum.config import DEFAULT_CONFIG
from quorum.orchestrator import build_orchestrator
from quorum.pipeline.clock import ManualClock
from quorum.store.threads import InMemoryThreadStore


def make_cfg(**sections) -> dict:
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["logging"]["level"] = "ERROR"
    for name, values in sections.items():
        cfg[name].update(values)
    return cfg


def wait_for(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def threads():
    return InMemoryThreadStore(["thread-42", "thread-7"])


@pytest.fixture
def orch(clock, threads):
    orchestrator = build_orchestrator(make_cfg(), clock=clock, thread_store=threads)
    yield orchestrator
    orchestrator.shutdown()
