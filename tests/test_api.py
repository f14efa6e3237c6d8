"""REST API tests for memory records and refinement sessions."""

from __future__ import annotations

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from memrefine.api import server


@pytest.fixture
def client(refiner):
    server.set_refiner(refiner)
    with TestClient(server.app) as test_client:
        yield test_client
    server.set_refiner(None)


def _add(client, content, owner_id="agent-1", **extra):
    response = client.post("/v1/memories", json={"owner_id": owner_id, "content": content, **extra})
    assert response.status_code == 200
    return response.json()


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"


def test_memory_routes(client):
    first = _add(client, "prefers short answers", origin_at="2026-01-01")
    _add(client, "works in UTC")

    listing = client.get("/v1/memories", params={"owner_id": "agent-1"}).json()
    assert listing["count"] == 2
    assert listing["mass"] == 6 + 3

    found = client.post("/v1/search", json={"owner_id": "agent-1", "query": "SHORT"}).json()
    assert found["count"] == 1
    assert found["results"][0]["id"] == first["id"]

    protected = client.post(f"/v1/memories/{first['id']}/protect").json()
    assert protected["protected"] is True

    assert client.get("/v1/memories/999999").status_code == 404


def test_empty_content_is_400(client):
    response = client.post("/v1/memories", json={"owner_id": "agent-1", "content": "  "})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "validation_error"


def test_unprotect_during_session_is_409(client):
    record = _add(client, "speaks french", protected=True)
    session_id = client.post("/v1/sessions", json={"owner_id": "agent-1"}).json()["session_id"]

    response = client.post(f"/v1/memories/{record['id']}/unprotect")

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "session_already_active"
    assert response.json()["detail"]["session_id"] == session_id
    assert client.get(f"/v1/memories/{record['id']}").json()["protected"] is True


def test_session_round_trip(client):
    a = _add(client, "likes tea")
    b = _add(client, "enjoys tea")
    _add(client, "works in UTC")

    opened = client.post("/v1/sessions", json={"owner_id": "agent-1", "threshold": 0.5})
    assert opened.status_code == 201
    session_id = opened.json()["session_id"]

    conflict = client.post("/v1/sessions", json={"owner_id": "agent-1"})
    assert conflict.status_code == 409
    assert conflict.json()["detail"]["code"] == "session_already_active"

    merged = client.post(
        f"/v1/sessions/{session_id}/tools",
        json={"action": "consolidate", "arguments": {"ids": [a["id"], b["id"]], "content": "likes tea"}},
    ).json()
    assert merged["type"] == "consolidated"

    refused = client.post(
        f"/v1/sessions/{session_id}/tools",
        json={"action": "delete", "arguments": {"id": "nope"}},
    )
    assert refused.status_code == 200
    assert refused.json()["code"] == "validation_error"

    done = client.post(
        f"/v1/sessions/{session_id}/tools",
        json={"action": "complete", "arguments": {"summary": "merged tea"}},
    ).json()
    assert done["type"] == "refinement_complete"

    session = client.get(f"/v1/sessions/{session_id}").json()
    assert session["status"] == "completed"

    audit = client.get(f"/v1/sessions/{session_id}/audit").json()
    assert [e["operation"] for e in audit] == ["consolidate", "complete"]


def test_rollback_route(client):
    record = _add(client, "x" * 40)
    _add(client, "y" * 40)
    session_id = client.post("/v1/sessions", json={"owner_id": "agent-1", "threshold": 0.1}).json()["session_id"]
    client.post(f"/v1/sessions/{session_id}/tools", json={"action": "delete", "arguments": {"id": record["id"]}})

    preview = client.post(f"/v1/sessions/{session_id}/rollback", json={"dry_run": True}).json()
    assert preview["dry_run"] is True

    first = client.post(f"/v1/sessions/{session_id}/rollback", json={"reason": "operator"}).json()
    again = client.post(f"/v1/sessions/{session_id}/rollback", json={}).json()
    assert first == again
    assert first["reversed_operations"] == 1

    missing = client.post("/v1/sessions/nope/rollback", json={})
    assert missing.status_code == 404


def test_settings_and_due(client):
    _add(client, "z" * 400, owner_id="agent-2")
    response = client.put("/v1/agents/agent-2/settings", json={"token_budget": 50, "threshold": 0.9})
    assert response.status_code == 200
    assert response.json()["effective_threshold"] == 0.9

    due = client.get("/v1/agents/due").json()
    assert due == [{"owner_id": "agent-2", "mass": 100, "token_budget": 50}]

    assert client.put("/v1/agents/agent-2/settings", json={"threshold": 2}).status_code == 422


def test_agent_session_and_audit(client):
    record = _add(client, "x" * 40)
    _add(client, "y" * 40)
    assert client.get("/v1/agents/agent-1/session").status_code == 404

    session_id = client.post("/v1/sessions", json={"owner_id": "agent-1"}).json()["session_id"]
    assert client.get("/v1/agents/agent-1/session").json()["session_id"] == session_id

    client.post(f"/v1/sessions/{session_id}/tools", json={"action": "protect", "arguments": {"id": record["id"]}})
    client.post(f"/v1/sessions/{session_id}/tools", json={"action": "complete", "arguments": {"summary": "ok"}})

    audit = client.get("/v1/agents/agent-1/audit").json()
    assert [e["operation"] for e in audit] == ["complete", "protect"]
    assert client.get("/v1/agents/agent-1/audit", params={"limit": 1}).json()[0]["operation"] == "complete"


def test_tools_and_stats(client):
    tools = client.get("/v1/tools").json()
    assert tools[0]["function"]["name"] == "refine_memories"

    _add(client, "abcd")
    stats = client.get("/v1/stats", params={"owner_id": "agent-1"}).json()
    assert stats["memories"]["core"]["active"] == 1


def test_discard_and_restore_routes(client, sink):
    record = _add(client, "old address")
    keeper = _add(client, "name is Ada", protected=True)

    discarded = client.post(f"/v1/memories/{record['id']}/discard")
    assert discarded.status_code == 200
    assert discarded.json()["discarded_at"] is not None
    assert client.get("/v1/memories", params={"owner_id": "agent-1"}).json()["count"] == 1

    refused = client.post(f"/v1/memories/{keeper['id']}/discard")
    assert refused.status_code == 409
    assert refused.json()["detail"]["code"] == "protected_record"

    restored = client.post(f"/v1/memories/{record['id']}/restore").json()
    assert restored["discarded_at"] is None
    assert client.post("/v1/memories/999999/restore").status_code == 404

    assert [e.action for e in sink.admin_events] == ["memory_discarded", "memory_restored"]


def test_refinement_prompt_setting(client):
    response = client.put("/v1/agents/agent-1/settings", json={"refinement_prompt": "Keep dates."})
    assert response.status_code == 200
    assert response.json()["refinement_prompt"] == "Keep dates."
    assert client.get("/v1/agents/agent-1/settings").json()["refinement_prompt"] == "Keep dates."
