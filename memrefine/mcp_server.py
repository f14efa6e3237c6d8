"""
memrefine MCP Server.

Exposes refinement sessions as MCP tools so an external model loop can open
a session, issue tool calls against it, and inspect the outcome.
"""

import json
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from memrefine.core.gateway import ACTIONS
from memrefine.exceptions import RefinementError
from memrefine.simple import Refiner

logger = logging.getLogger(__name__)

_refiner: Optional[Refiner] = None
_refiner_lock = threading.Lock()


def get_refiner() -> Refiner:
    """Get or create the global Refiner instance."""
    global _refiner
    if _refiner is None:
        with _refiner_lock:
            if _refiner is None:
                _refiner = Refiner()
    return _refiner


def set_refiner(refiner: Optional[Refiner]) -> None:
    """Swap the global instance (tests, embedding)."""
    global _refiner
    with _refiner_lock:
        _refiner = refiner


# Create the MCP server
server = Server("memrefine")

_SESSION_ID = {"type": "string", "description": "Refinement session id returned by refine_open_session"}


@server.list_tools()
async def list_tools() -> List[Tool]:
    """List available memrefine tools."""
    return [
        Tool(
            name="refine_open_session",
            description=(
                "Open a refinement session for an agent. Snapshots the agent's memory mass; "
                "fails if the agent already has an active session."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "owner_id": {"type": "string", "description": "Agent whose memories are refined"},
                    "threshold": {
                        "type": "number",
                        "description": "Fraction of mass that must survive (default from agent settings, then 0.75)",
                    },
                },
                "required": ["owner_id"],
            },
        ),
        Tool(
            name="refine_memories",
            description=(
                "One refinement tool call: search, get, consolidate, update, delete, protect or complete. "
                "At most 10 consolidate/update/delete calls per session. If too much memory disappears "
                "the whole session is rolled back and further calls are refused."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "session_id": _SESSION_ID,
                    "action": {"type": "string", "enum": list(ACTIONS)},
                    "query": {"type": "string", "description": "Text to search for (search)"},
                    "ids": {
                        "type": "array",
                        "items": {"type": "integer"},
                        "description": "Memory ids to merge, at least two (consolidate)",
                    },
                    "id": {"type": "integer", "description": "Memory id (get, update, delete, protect)"},
                    "content": {"type": "string", "description": "New content (consolidate, update)"},
                    "summary": {"type": "string", "description": "What changed and why (complete)"},
                },
                "required": ["session_id", "action"],
            },
        ),
        Tool(
            name="refine_session_status",
            description="Show a session's status, masses, operation count and audit ledger.",
            inputSchema={
                "type": "object",
                "properties": {"session_id": _SESSION_ID},
                "required": ["session_id"],
            },
        ),
        Tool(
            name="refine_rollback",
            description="Administrative rollback of an active session. Idempotent for rolled-back sessions.",
            inputSchema={
                "type": "object",
                "properties": {
                    "session_id": _SESSION_ID,
                    "reason": {"type": "string", "description": "Recorded reason"},
                    "dry_run": {"type": "boolean", "description": "Only show what would be reversed"},
                },
                "required": ["session_id"],
            },
        ),
        Tool(
            name="refine_due_agents",
            description="List agents whose core memory mass exceeds their token budget.",
            inputSchema={"type": "object", "properties": {}},
        ),
    ]


# Tool handler registry for dispatch.
_TOOL_HANDLERS: Dict[str, Callable] = {}


def _tool_handler(name: str):
    """Decorator to register a tool handler function."""
    def decorator(fn):
        _TOOL_HANDLERS[name] = fn
        return fn
    return decorator


@_tool_handler("refine_open_session")
def _handle_open_session(refiner: Refiner, arguments: Dict[str, Any]) -> Any:
    session = refiner.open_session(arguments.get("owner_id", ""), threshold=arguments.get("threshold"))
    return {
        **session.to_dict(),
        "tools": refiner.tool_definitions(),
    }


@_tool_handler("refine_memories")
def _handle_refine_memories(refiner: Refiner, arguments: Dict[str, Any]) -> Any:
    args = dict(arguments)
    session_id = args.pop("session_id", "")
    action = args.pop("action", "")
    return refiner.call(session_id, action, args)


@_tool_handler("refine_session_status")
def _handle_session_status(refiner: Refiner, arguments: Dict[str, Any]) -> Any:
    session_id = arguments.get("session_id", "")
    session = refiner.get_session(session_id)
    return {
        **session.to_dict(),
        "current_mass": refiner.mass(session.owner_id),
        "audit": [entry.to_dict() for entry in refiner.audit(session_id)],
    }


@_tool_handler("refine_rollback")
def _handle_rollback(refiner: Refiner, arguments: Dict[str, Any]) -> Any:
    return refiner.rollback(
        arguments.get("session_id", ""),
        arguments.get("reason"),
        dry_run=bool(arguments.get("dry_run", False)),
    )


@_tool_handler("refine_due_agents")
def _handle_due_agents(refiner: Refiner, arguments: Dict[str, Any]) -> Any:
    from memrefine.scheduler import due_owners
    return {"agents": due_owners(refiner)}


def dispatch(name: str, arguments: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Run one registered handler and turn refusals into payloads."""
    handler = _TOOL_HANDLERS.get(name)
    if handler is None:
        return {"error": f"Unknown tool: {name}"}
    try:
        return handler(get_refiner(), dict(arguments or {}))
    except RefinementError as exc:
        return exc.to_dict()


@server.call_tool()
async def call_tool(name: str, arguments: Dict[str, Any]) -> List[TextContent]:
    """Handle tool calls."""
    try:
        result = dispatch(name, arguments)
        return [TextContent(type="text", text=json.dumps(result, indent=2, default=str))]
    except Exception as e:
        logger.exception("MCP tool '%s' failed", name)
        # Only expose the exception class name + message, not internals
        error_result = {"error": f"{type(e).__name__}: {e}"}
        return [TextContent(type="text", text=json.dumps(error_result, indent=2))]


async def main():
    """Run the MCP server."""
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


def run():
    """Entry point for the MCP server."""
    import asyncio
    asyncio.run(main())


if __name__ == "__main__":
    run()
