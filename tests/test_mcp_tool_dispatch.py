"""Tests for the MCP tool handler registry and dispatch."""

import asyncio
import inspect
import json

import pytest

pytest.importorskip("mcp")

from memrefine import mcp_server
from memrefine.mcp_server import _TOOL_HANDLERS, dispatch


@pytest.fixture
def wired(refiner):
    mcp_server.set_refiner(refiner)
    yield refiner
    mcp_server.set_refiner(None)


class TestToolHandlerRegistry:
    def test_known_handlers_registered(self):
        expected = {
            "refine_open_session",
            "refine_memories",
            "refine_session_status",
            "refine_rollback",
            "refine_due_agents",
        }
        assert expected == set(_TOOL_HANDLERS)

    def test_handler_signature(self):
        """Handlers take (refiner, arguments)."""
        for name, handler in _TOOL_HANDLERS.items():
            params = list(inspect.signature(handler).parameters)
            assert len(params) == 2, f"Handler '{name}' should have 2 params, got {params}"

    def test_listed_tools_match_registry(self):
        tools = asyncio.run(mcp_server.list_tools())
        assert {tool.name for tool in tools} == set(_TOOL_HANDLERS)


class TestDispatch:
    def test_unknown_tool(self, wired):
        assert dispatch("forget_everything", {}) == {"error": "Unknown tool: forget_everything"}

    def test_session_flow(self, wired, fill):
        records = fill(count=4, chars=100)

        opened = dispatch("refine_open_session", {"owner_id": "agent-1"})
        sid = opened["session_id"]
        assert opened["pre_mass"] == 100
        assert opened["tools"][0]["function"]["name"] == "refine_memories"

        updated = dispatch("refine_memories", {
            "session_id": sid, "action": "update", "id": records[0].id, "content": "x" * 90,
        })
        assert updated["type"] == "updated"

        status = dispatch("refine_session_status", {"session_id": sid})
        assert status["current_mass"] == 98
        assert [e["operation"] for e in status["audit"]] == ["update"]

        outcome = dispatch("refine_rollback", {"session_id": sid, "reason": "operator"})
        assert outcome["reversed_operations"] == 1
        assert wired.mass("agent-1") == 100

    def test_refusals_become_payloads(self, wired):
        wired.open_session("agent-1")
        conflict = dispatch("refine_open_session", {"owner_id": "agent-1"})
        assert conflict["code"] == "session_already_active"
        assert dispatch("refine_session_status", {"session_id": "nope"})["code"] == "session_not_found"

    def test_due_agents(self, wired, fill):
        fill(owner_id="heavy", count=20, chars=1600)
        assert dispatch("refine_due_agents", {})["agents"][0]["owner_id"] == "heavy"

    def test_call_tool_returns_json_text(self, wired):
        (content,) = asyncio.run(mcp_server.call_tool("refine_due_agents", {}))
        assert json.loads(content.text) == {"agents": []}
