"""memrefine REST API Server.

FastAPI-based HTTP server for supervised memory refinement.

Usage:
    memrefine-api                    # Start server on default port 8110
    memrefine-api --port 8080        # Custom port
    memrefine-api --host 0.0.0.0     # Bind to all interfaces
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from memrefine.api.schemas import (
    AddMemoryRequest,
    AgentSettingsRequest,
    OpenSessionRequest,
    ReapRequest,
    RollbackRequest,
    SearchRequest,
    SearchResultResponse,
    SessionResponse,
    ToolCallRequest,
)
from memrefine.exceptions import (
    PolicyError,
    RecordNotFoundError,
    RefinementError,
    SessionNotFoundError,
    ValidationError,
)
from memrefine.observability import add_metrics_routes, metrics
from memrefine.simple import Refiner

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="memrefine API",
    description="Supervised, reversible memory refinement for AI agents",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware for browser access
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add metrics endpoints (/metrics, /metrics/json)
add_metrics_routes(app)

# Global refiner instance (initialized on first use)
_refiner: Optional[Refiner] = None


def get_refiner() -> Refiner:
    """Get or create the global Refiner instance."""
    global _refiner
    if _refiner is None:
        _refiner = Refiner()
    return _refiner


def set_refiner(refiner: Optional[Refiner]) -> None:
    global _refiner
    _refiner = refiner


def _http_error(exc: RefinementError) -> HTTPException:
    if isinstance(exc, (RecordNotFoundError, SessionNotFoundError)):
        status = 404
    elif isinstance(exc, ValidationError):
        status = 400
    elif isinstance(exc, PolicyError):
        status = 409
    else:
        status = 500
    return HTTPException(status_code=status, detail=exc.to_dict())


def _session_response(session) -> Dict[str, Any]:
    return SessionResponse(**session.to_dict()).model_dump()


# Health check
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "memrefine"}


@app.get("/v1/version")
async def get_version():
    """Get API version."""
    from memrefine import __version__
    return {"version": __version__, "api_version": "v1"}


# Memory records
@app.post("/v1/memories", response_model=Dict[str, Any])
async def add_memory(request: AddMemoryRequest):
    """Add a memory record outside any session."""
    try:
        record = get_refiner().add_memory(
            request.owner_id,
            request.content,
            memory_type=request.memory_type,
            origin_at=request.origin_at,
            protected=request.protected,
        )
        return record.to_dict()
    except RefinementError as e:
        raise _http_error(e)


@app.get("/v1/memories", response_model=Dict[str, Any])
async def list_memories(
    owner_id: str = Query(..., description="Agent identifier"),
    memory_type: str = Query(default="core", description="core or journal"),
):
    """List an agent's active records and its current mass."""
    refiner = get_refiner()
    records = refiner.list_memories(owner_id, memory_type)
    return {
        "owner_id": owner_id,
        "mass": refiner.mass(owner_id),
        "memories": [r.to_dict() for r in records],
        "count": len(records),
    }


@app.get("/v1/memories/{memory_id}", response_model=Dict[str, Any])
async def get_memory(memory_id: int):
    record = get_refiner().get_memory(memory_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Memory not found")
    return record.to_dict()


@app.post("/v1/memories/{memory_id}/protect", response_model=Dict[str, Any])
async def protect_memory(memory_id: int):
    """Mark a record constitutional."""
    try:
        return get_refiner().protect(memory_id).to_dict()
    except RefinementError as e:
        raise _http_error(e)


@app.post("/v1/memories/{memory_id}/unprotect", response_model=Dict[str, Any])
async def unprotect_memory(memory_id: int):
    """Administrative: clear the constitutional flag; 409 during an active session."""
    try:
        return get_refiner().unprotect(memory_id).to_dict()
    except RefinementError as e:
        raise _http_error(e)


@app.post("/v1/memories/{memory_id}/discard", response_model=Dict[str, Any])
async def discard_memory(memory_id: int):
    """Administrative soft delete; 409 for constitutional records."""
    try:
        return get_refiner().discard(memory_id).to_dict()
    except RefinementError as e:
        raise _http_error(e)


@app.post("/v1/memories/{memory_id}/restore", response_model=Dict[str, Any])
async def restore_memory(memory_id: int):
    try:
        return get_refiner().restore(memory_id).to_dict()
    except RefinementError as e:
        raise _http_error(e)


@app.post("/v1/search", response_model=SearchResultResponse)
async def search_memories(request: SearchRequest):
    """Case-insensitive substring search over active core records."""
    records = get_refiner().search(request.owner_id, request.query, limit=request.limit)
    return {"results": [r.to_dict() for r in records], "count": len(records)}


# Per-agent settings
@app.get("/v1/agents/due", response_model=List[Dict[str, Any]])
async def due_agents():
    """Agents whose core mass exceeds their token budget."""
    from memrefine.scheduler import due_owners
    return due_owners(get_refiner())


@app.get("/v1/agents/{owner_id}/settings", response_model=Dict[str, Any])
async def get_agent_settings(owner_id: str):
    return get_refiner().get_agent_settings(owner_id)


@app.get("/v1/agents/{owner_id}/session", response_model=SessionResponse)
async def get_active_session(owner_id: str):
    """The agent's active session, if it holds the lease."""
    session = get_refiner().active_session(owner_id)
    if session is None:
        raise HTTPException(status_code=404, detail="No active session")
    return _session_response(session)


@app.get("/v1/agents/{owner_id}/audit", response_model=List[Dict[str, Any]])
async def get_agent_audit(owner_id: str, limit: int = Query(default=100, ge=1, le=1000)):
    """Newest ledger entries across every session of the agent."""
    return [entry.to_dict() for entry in get_refiner().owner_audit(owner_id, limit=limit)]


@app.put("/v1/agents/{owner_id}/settings", response_model=Dict[str, Any])
async def put_agent_settings(owner_id: str, request: AgentSettingsRequest):
    refiner = get_refiner()
    try:
        refiner.set_agent_settings(
            owner_id,
            threshold=request.threshold,
            token_budget=request.token_budget,
            refinement_prompt=request.refinement_prompt,
        )
    except RefinementError as e:
        raise _http_error(e)
    return refiner.get_agent_settings(owner_id)


# Refinement sessions
@app.get("/v1/tools", response_model=List[Dict[str, Any]])
async def tool_definitions():
    """Function-calling schema to hand to the refining model."""
    return get_refiner().tool_definitions()


@app.post("/v1/sessions", response_model=SessionResponse, status_code=201)
async def open_session(request: OpenSessionRequest):
    """Open a session; 409 if the agent already has one active."""
    try:
        session = get_refiner().open_session(request.owner_id, threshold=request.threshold)
    except RefinementError as e:
        raise _http_error(e)
    return _session_response(session)


@app.get("/v1/sessions", response_model=List[SessionResponse])
async def list_sessions(
    owner_id: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
):
    sessions = get_refiner().list_sessions(owner_id=owner_id, status=status, limit=limit)
    return [_session_response(s) for s in sessions]


@app.post("/v1/sessions/reap", response_model=Dict[str, Any])
async def reap_sessions(request: ReapRequest):
    """Mark sessions past their lease as abandoned."""
    reaped = get_refiner().reap_abandoned(request.older_than_minutes)
    return {"reaped": reaped, "count": len(reaped)}


@app.get("/v1/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str):
    try:
        return _session_response(get_refiner().get_session(session_id))
    except RefinementError as e:
        raise _http_error(e)


@app.get("/v1/sessions/{session_id}/audit", response_model=List[Dict[str, Any]])
async def get_session_audit(session_id: str):
    """The session's ledger, oldest first."""
    try:
        return [entry.to_dict() for entry in get_refiner().audit(session_id)]
    except RefinementError as e:
        raise _http_error(e)


@app.post("/v1/sessions/{session_id}/tools", response_model=Dict[str, Any])
async def call_tool(session_id: str, request: ToolCallRequest):
    """Issue one tool call. Refusals are 200 responses with ``type == "error"``,
    so the model loop can feed them straight back to the model."""
    return get_refiner().call(session_id, request.action, request.arguments)


@app.post("/v1/sessions/{session_id}/rollback", response_model=Dict[str, Any])
async def rollback_session(session_id: str, request: RollbackRequest):
    """Administrative rollback; repeat calls return the stored outcome."""
    with metrics.measure("api_rollback"):
        try:
            return get_refiner().rollback(session_id, request.reason, dry_run=request.dry_run)
        except RefinementError as e:
            raise _http_error(e)


@app.get("/v1/stats", response_model=Dict[str, Any])
async def get_stats(owner_id: Optional[str] = Query(default=None)):
    return get_refiner().stats(owner_id)


def run():
    """Run the memrefine API server."""
    import argparse
    import uvicorn

    parser = argparse.ArgumentParser(description="memrefine REST API Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8110, help="Port to listen on")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    args = parser.parse_args()

    print(f"Starting memrefine API server on http://{args.host}:{args.port}")
    print(f"API docs available at http://{args.host}:{args.port}/docs")

    uvicorn.run(
        "memrefine.api.server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


if __name__ == "__main__":
    run()
