"""
INFOLOOP Test Configuration
Shared fixtures: isolated receipts ledger, store hub, capacity, scheduler.
"""

import os
import random
import sys
import tempfile
from pathlib import Path
from types import SimpleNamespace

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

# Redirect the receipts ledger BEFORE any module emits
_test_dir = tempfile.mkdtemp(prefix="infoloop_test_")
os.environ["INFOLOOP_RECEIPTS"] = str(Path(_test_dir) / "test_receipts.jsonl")

from capacity import CapacityManager, StaticCapacityOracle  # noqa: E402
from core import KIND_DATA  # noqa: E402
from scheduler import CooperativeScheduler  # noqa: E402
from state import PipelineState  # noqa: E402
from store import StoreHub  # noqa: E402
from symbols import make_symbol  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Configure test environment with an isolated receipts path."""
    yield _test_dir

    for f in Path(_test_dir).glob("*.jsonl"):
        f.unlink(missing_ok=True)


@pytest.fixture(autouse=True)
def clean_receipts():
    """Start every test with an empty receipts ledger."""
    receipts_path = Path(os.environ["INFOLOOP_RECEIPTS"])
    receipts_path.unlink(missing_ok=True)
    yield
    receipts_path.unlink(missing_ok=True)


def build_env(total: float = 1000, channel: float | None = None, seed: int = 7, hub=None):
    """Stores, ledger, state and scheduler wired the way a pipeline wires them."""
    state = PipelineState()
    oracle = StaticCapacityOracle(total, channel)
    return SimpleNamespace(
        state=state,
        hub=hub if hub is not None else StoreHub(),
        oracle=oracle,
        capacity=CapacityManager(oracle, state),
        scheduler=CooperativeScheduler(),
        rng=random.Random(seed),
    )


def stage_kwargs(env) -> dict:
    return {
        "hub": env.hub,
        "capacity": env.capacity,
        "state": env.state,
        "scheduler": env.scheduler,
        "rng": env.rng,
    }


async def seed_store(env, collection: str, values, kind: str = KIND_DATA) -> list[dict]:
    """Put fresh symbols into a collection, charging the ledger for each."""
    records = []
    for value in values:
        record = make_symbol(value, kind)
        env.capacity.admit(record, force=True)
        await env.hub.append(collection, record)
        records.append(record)
    return records


@pytest.fixture
def env():
    return build_env()


# Markers for test categorization
def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow running")
    config.addinivalue_line("markers", "integration: mark test as integration test")
