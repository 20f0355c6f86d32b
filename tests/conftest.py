"""
Pytest configuration and fixtures
"""

import asyncio
import copy
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from core.clock import MockClock
from core.observability import ObservabilitySink
from pipeline.orchestrator import PipelineOrchestrator
from pipeline.stores.memory import MemoryDataStore

START = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class RecordingSink(ObservabilitySink):
    """Observability sink that keeps everything it receives"""

    def __init__(self):
        self.breadcrumbs: List[tuple] = []
        self.exceptions: List[tuple] = []
        self.metrics: List[tuple] = []

    def add_breadcrumb(self, message, category, data=None):
        self.breadcrumbs.append((message, category, data))

    def capture_exception(self, error, context=None):
        self.exceptions.append((error, context))

    def record_metric(self, name, value, tags=None):
        self.metrics.append((name, value, tags))


class GatedStore(MemoryDataStore):
    """
    Memory store whose queries on gated collections block until the gate
    opens. Tracks how many gated queries are in flight at once.
    """

    def __init__(self, gated, initial=None):
        super().__init__(initial)
        self.gated = set(gated)
        self.gate = asyncio.Event()
        self.in_flight = 0
        self.max_in_flight = 0

    async def query(self, collection, filters=None, order_by=None, limit=None):
        if collection in self.gated:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                await self.gate.wait()
            finally:
                self.in_flight -= 1
        return await super().query(collection, filters, order_by, limit)


class FailingStore(MemoryDataStore):
    """Memory store that raises on queries against the listed collections"""

    def __init__(self, failing, initial=None):
        super().__init__(initial)
        self.failing = set(failing)

    async def query(self, collection, filters=None, order_by=None, limit=None):
        if collection in self.failing:
            raise RuntimeError(f"source {collection} unreachable")
        return await super().query(collection, filters, order_by, limit)


def job_definition(
    name: str = "orders-sync",
    schedule: Optional[Dict[str, Any]] = None,
    source: Optional[Dict[str, Any]] = None,
    target: Optional[Dict[str, Any]] = None,
    **extra
) -> Dict[str, Any]:
    """
    Minimal valid job definition.

    Extra keyword arguments named after PipelineConfig sections
    (transformations, validation, error_handling, monitoring) go into
    ``config``; anything else is a top-level job field.
    """
    config: Dict[str, Any] = {
        "source": source or {"collection": "orders"},
        "target": target or {"collection": "orders_clean"},
    }
    for section in ("transformations", "validation", "error_handling", "monitoring"):
        if section in extra:
            config[section] = extra.pop(section)

    definition = {
        "name": name,
        "schedule": schedule or {"kind": "interval", "interval_minutes": 15},
        "config": config,
    }
    definition.update(extra)
    return copy.deepcopy(definition)


def sample_orders(count: int = 5) -> List[Dict[str, Any]]:
    return [
        {
            "id": f"ord_{i:03d}",
            "customer": {"name": f"  Customer {i}  ", "email": f"c{i}@example.com"},
            "amount": 10.0 * (i + 1),
            "region": "eu" if i % 2 == 0 else "us",
        }
        for i in range(count)
    ]


async def wait_for(predicate, attempts: int = 200) -> bool:
    """Yield to the event loop until predicate() holds"""
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0)
    return predicate()


@pytest.fixture
def clock():
    return MockClock(START)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def store():
    return MemoryDataStore({"orders": sample_orders()})


@pytest_asyncio.fixture
async def orchestrator(store, clock, sink):
    """Orchestrator over the memory store with the background scheduler off"""
    orch = PipelineOrchestrator(
        store,
        sink=sink,
        clock=clock,
        max_workers=5,
        scheduler_enabled=False
    )
    await orch.initialize()
    yield orch
    await orch.shutdown()
