"""Tests for the circuit breaker and rollback."""

import pytest

from memrefine.core.rollback import plan_reversal
from memrefine.exceptions import SessionNotFoundError, SessionTerminatedError


def _active_snapshot(refiner, owner_id="agent-1"):
    return {r.id: r.content for r in refiner.list_memories(owner_id)}


class TestCircuitBreaker:
    def test_second_consolidation_trips_and_restores_everything(self, refiner, fill, sink):
        records = fill(count=20, chars=1600)
        before = _active_snapshot(refiner)
        session = refiner.open_session("agent-1")
        sid = session.session_id
        assert session.pre_mass == 8000

        first = refiner.call(sid, "consolidate", {"ids": [r.id for r in records[0:4]], "content": "a" * 400})
        assert first["type"] == "consolidated"
        assert refiner.mass("agent-1") == 6500

        second = refiner.call(sid, "consolidate", {"ids": [r.id for r in records[4:8]], "content": "b" * 400})
        assert second["type"] == "circuit_breaker_tripped"
        assert second["rolled_back"] is True
        assert second["trigger"] == "per_operation"
        assert second["mass_at_trip"] == 5000
        assert second["post_mass"] == 8000
        assert second["reversed_operations"] == 2

        third = refiner.call(sid, "delete", {"id": records[9].id})
        assert third["code"] == "session_terminated"

        assert refiner.mass("agent-1") == 8000
        assert _active_snapshot(refiner) == before
        final = refiner.get_session(sid)
        assert final.status == "rolled_back"
        assert final.post_mass == 8000
        operations = [e.operation for e in refiner.audit(sid)]
        assert operations == ["consolidate", "consolidate", "rollback"]
        assert sink.outcomes[-1].status == "rolled_back"

    def test_rollback_writes_corrective_journal(self, refiner, fill):
        records = fill(count=4, chars=100)
        sid = refiner.open_session("agent-1").session_id
        refiner.call(sid, "delete", {"id": records[0].id})
        refiner.call(sid, "delete", {"id": records[1].id})

        (journal,) = refiner.list_memories("agent-1", "journal")
        assert "rolled back" in journal.content
        assert "fewer, smaller edits" in journal.content

    def test_breach_is_strict(self, refiner, fill):
        records = fill(count=4, chars=100)
        sid = refiner.open_session("agent-1").session_id
        # exactly 75% retained stays open
        result = refiner.call(sid, "delete", {"id": records[0].id})
        assert result["type"] == "deleted"
        assert refiner.get_session(sid).active

    def test_empty_memory_never_trips(self, refiner):
        sid = refiner.open_session("agent-1").session_id
        record = refiner.add_memory("agent-1", "new")
        assert refiner.call(sid, "delete", {"id": record.id})["type"] == "deleted"
        assert refiner.get_session(sid).active


class TestManualRollback:
    def test_reverses_update_delete_and_consolidate(self, refiner, fill):
        records = fill(count=6, chars=100)
        before = _active_snapshot(refiner)
        sid = refiner.open_session("agent-1", threshold=0.1).session_id
        refiner.call(sid, "update", {"id": records[0].id, "content": "tightened"})
        refiner.call(sid, "update", {"id": records[0].id, "content": "tightened again"})
        refiner.call(sid, "delete", {"id": records[1].id})
        merged = refiner.call(sid, "consolidate", {"ids": [records[2].id, records[3].id], "content": "merged"})

        outcome = refiner.rollback(sid, "operator request")

        assert outcome["trigger"] == "manual"
        assert outcome["reason"] == "operator request"
        assert outcome["reversed_operations"] == 4
        assert _active_snapshot(refiner) == before
        assert refiner.get_memory(merged["id"]).discarded

    def test_rollback_is_idempotent(self, refiner, fill):
        records = fill(count=4, chars=100)
        sid = refiner.open_session("agent-1").session_id
        refiner.call(sid, "update", {"id": records[0].id, "content": "shorter"})

        first = refiner.rollback(sid, "undo")
        second = refiner.rollback(sid, "undo again")

        assert first == second
        assert [e.operation for e in refiner.audit(sid)].count("rollback") == 1
        assert refiner.get_memory(records[0].id).content == records[0].content

    def test_protection_survives_rollback(self, refiner, fill):
        records = fill(count=4, chars=100)
        sid = refiner.open_session("agent-1").session_id
        refiner.call(sid, "protect", {"id": records[0].id})
        refiner.call(sid, "update", {"id": records[1].id, "content": "edited"})

        outcome = refiner.rollback(sid)

        assert outcome["reversed_operations"] == 1
        assert refiner.get_memory(records[0].id).protected
        assert refiner.get_memory(records[1].id).content == records[1].content

    def test_consolidated_record_discarded_even_if_protected(self, refiner, fill):
        records = fill(count=4, chars=100)
        sid = refiner.open_session("agent-1", threshold=0.1).session_id
        merged = refiner.call(sid, "consolidate", {"ids": [records[0].id, records[1].id], "content": "merged"})
        refiner.call(sid, "protect", {"id": merged["id"]})

        refiner.rollback(sid)

        restored = refiner.get_memory(merged["id"])
        assert restored.discarded
        assert restored.protected
        assert not refiner.get_memory(records[0].id).discarded

    def test_dry_run_changes_nothing(self, refiner, fill):
        records = fill(count=4, chars=100)
        sid = refiner.open_session("agent-1").session_id
        refiner.call(sid, "delete", {"id": records[0].id})

        plan = refiner.rollback(sid, dry_run=True)

        assert plan["dry_run"] is True
        assert plan["steps"][0]["undiscard"] == [records[0].id]
        assert refiner.get_session(sid).active
        assert refiner.get_memory(records[0].id).discarded
        assert [e.operation for e in refiner.audit(sid)] == ["delete"]

    def test_completed_session_cannot_be_rolled_back(self, refiner, fill):
        fill(count=2, chars=40)
        sid = refiner.open_session("agent-1").session_id
        refiner.complete(sid, "done")
        with pytest.raises(SessionTerminatedError):
            refiner.rollback(sid)

    def test_unknown_session(self, refiner):
        with pytest.raises(SessionNotFoundError):
            refiner.rollback("missing")


class TestPlanReversal:
    def test_skips_protect_entries(self, refiner, fill):
        records = fill(count=3, chars=100)
        sid = refiner.open_session("agent-1", threshold=0.1).session_id
        refiner.call(sid, "protect", {"id": records[0].id})
        refiner.call(sid, "delete", {"id": records[1].id})

        steps = plan_reversal(refiner.ledger.reversible_entries(sid))

        assert [s.operation for s in steps] == ["delete"]
        assert steps[0].undiscard == [records[1].id]
