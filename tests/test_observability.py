"""Tests for metrics and structured logging."""

import json
import logging

import pytest

from memrefine.observability import MetricsCollector, StructuredFormatter, metrics


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


def test_measure_records_latency_and_errors():
    collector = MetricsCollector()
    with collector.measure("search"):
        pass
    with pytest.raises(RuntimeError):
        with collector.measure("search"):
            raise RuntimeError("boom")

    data = collector.get_summary()["operations"]["search"]
    assert data["count"] == 2
    assert data["errors"] == 1
    assert data["error_rate"] == 0.5


def test_session_counters_follow_refinement(refiner, fill):
    records = fill(count=4, chars=100)
    sid = refiner.open_session("agent-1").session_id
    refiner.call(sid, "delete", {"id": records[0].id})
    refiner.call(sid, "delete", {"id": 123456})
    refiner.call(sid, "delete", {"id": records[1].id})

    counters = metrics.get_summary()["refinement"]
    assert counters["sessions_opened"] == 1
    assert counters["operations_applied"] == 2
    assert counters["operations_refused"] == 1
    assert counters["per_operation_trips"] == 1
    assert counters["operations_reversed"] == 2


def test_prometheus_export():
    metrics.record_session_opened()
    metrics.record_rollback("manual", reversed_operations=3)
    text = metrics.get_prometheus_metrics()
    assert "memrefine_sessions_opened_total 1" in text
    assert "memrefine_manual_rollbacks_total 1" in text
    assert "memrefine_operations_reversed_total 3" in text


def test_structured_formatter_emits_json():
    record = logging.LogRecord("memrefine", logging.INFO, __file__, 1, "Session opened", None, None)
    record.structured_data = {"session_id": "abc", "pre_mass": 8000}
    data = json.loads(StructuredFormatter().format(record))
    assert data == {
        "level": "INFO",
        "message": "Session opened",
        "logger": "memrefine",
        "session_id": "abc",
        "pre_mass": 8000,
    }


def test_protect_is_counted(refiner, fill):
    records = fill(count=2, chars=100)
    sid = refiner.open_session("agent-1").session_id
    refiner.call(sid, "protect", {"id": records[0].id})
    # already protected: nothing changes, nothing is counted
    refiner.call(sid, "protect", {"id": records[0].id})

    counters = metrics.get_summary()["refinement"]
    assert counters["operations_applied"] == 1
    assert counters["records_protected"] == 1
    assert "memrefine_records_protected_total 1" in metrics.get_prometheus_metrics()
