"""Tests for the append-only audit ledger."""

import sqlite3

import pytest

from memrefine.core.models import Operation


@pytest.fixture
def session(refiner, fill):
    fill(count=6, chars=100)
    return refiner.open_session("agent-1", threshold=0.1)


class TestAuditLedger:
    def test_every_mutation_appends_one_entry(self, refiner, session):
        ids = [r.id for r in refiner.list_memories("agent-1")]
        sid = session.session_id

        refiner.call(sid, "update", {"id": ids[0], "content": "tightened"})
        refiner.call(sid, "delete", {"id": ids[1]})
        refiner.call(sid, "consolidate", {"ids": [ids[2], ids[3]], "content": "merged"})
        refiner.call(sid, "protect", {"id": ids[4]})

        entries = refiner.audit(sid)
        assert [e.operation for e in entries] == ["update", "delete", "consolidate", "protect"]
        assert entries[0].before[0]["id"] == ids[0]
        assert entries[0].after["content"] == "tightened"
        assert [snap["id"] for snap in entries[2].before] == [ids[2], ids[3]]
        assert entries[2].after["id"] not in ids

    def test_refused_calls_leave_no_entry(self, refiner, session):
        sid = session.session_id
        result = refiner.call(sid, "update", {"id": 99999, "content": "x"})
        assert result["code"] == "record_not_found"
        result = refiner.call(sid, "consolidate", {"ids": [1], "content": "x"})
        assert result["code"] == "validation_error"
        assert refiner.audit(sid) == []
        assert refiner.get_session(sid).operation_count == 0

    def test_operation_stats(self, refiner, session):
        ids = [r.id for r in refiner.list_memories("agent-1")]
        sid = session.session_id
        refiner.call(sid, "consolidate", {"ids": ids[:3], "content": "merged three"})
        refiner.call(sid, "update", {"id": ids[3], "content": "tightened"})
        refiner.call(sid, "protect", {"id": ids[4]})

        assert refiner.ledger.operation_stats(sid) == {
            "consolidated": 3,
            "updated": 1,
            "deleted": 0,
            "protected": 1,
        }

    def test_entries_are_append_only(self, refiner, session):
        ids = [r.id for r in refiner.list_memories("agent-1")]
        refiner.call(session.session_id, "delete", {"id": ids[0]})

        with pytest.raises(sqlite3.DatabaseError):
            with refiner.db.transaction() as conn:
                conn.execute("UPDATE audit_entries SET operation = 'update'")
        with pytest.raises(sqlite3.DatabaseError):
            with refiner.db.transaction() as conn:
                conn.execute("DELETE FROM audit_entries")
        assert len(refiner.audit(session.session_id)) == 1

    def test_reversible_entries_newest_first(self, refiner, session):
        ids = [r.id for r in refiner.list_memories("agent-1")]
        sid = session.session_id
        refiner.call(sid, "delete", {"id": ids[0]})
        refiner.call(sid, "delete", {"id": ids[1]})

        newest_first = refiner.ledger.reversible_entries(sid)
        assert [e.before[0]["id"] for e in newest_first] == [ids[1], ids[0]]

    def test_append_rejects_unknown_operation(self, refiner, session):
        with pytest.raises(ValueError):
            refiner.ledger.append(session.session_id, "agent-1", "purge")
        assert refiner.ledger.append(session.session_id, "agent-1", Operation.PROTECT).operation == "protect"

    def test_published_to_sink(self, refiner, session, sink):
        ids = [r.id for r in refiner.list_memories("agent-1")]
        refiner.call(session.session_id, "update", {"id": ids[0], "content": "tightened"})
        assert [e.operation for e in sink.audit_entries] == ["update"]
