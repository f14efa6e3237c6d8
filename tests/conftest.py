"""Shared fixtures: a Refiner over a throwaway SQLite file."""

import pytest

from memrefine import Refiner
from memrefine.configs.base import MemRefineConfig, StoreConfig
from memrefine.core.outcome import RecordingOutcomeSink


@pytest.fixture
def sink():
    return RecordingOutcomeSink()


@pytest.fixture
def refiner(tmp_path, sink):
    config = MemRefineConfig(store=StoreConfig(db_path=str(tmp_path / "memrefine.db")))
    r = Refiner(config=config, sinks=[sink])
    yield r
    r.close()


@pytest.fixture
def fill(refiner):
    """Add ``count`` distinct core records of exactly ``chars`` characters each."""
    def _fill(owner_id="agent-1", count=20, chars=1600, **kwargs):
        records = []
        for i in range(count):
            text = (f"fact {i:02d} about {owner_id}: " + "x" * chars)[:chars]
            records.append(refiner.add_memory(owner_id, text, **kwargs))
        return records
    return _fill
