"""Pydantic schemas for the memrefine REST API."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

SessionStatusName = Literal["active", "completed", "rolled_back", "abandoned"]


class AddMemoryRequest(BaseModel):
    """Request model for adding memories."""
    owner_id: str = Field(..., min_length=1, description="Agent identifier")
    content: str = Field(..., description="Memory content to store")
    memory_type: Literal["core", "journal"] = Field(default="core")
    origin_at: Optional[str] = Field(default=None, description="ISO timestamp the memory refers to")
    protected: bool = Field(default=False, description="Store as constitutional")


class SearchRequest(BaseModel):
    """Request model for searching memories."""
    owner_id: str = Field(..., min_length=1)
    query: str = Field(..., min_length=1, description="Substring to search for")
    limit: int = Field(default=50, ge=1, le=500)


class AgentSettingsRequest(BaseModel):
    threshold: Optional[float] = Field(default=None, gt=0.0, le=1.0)
    token_budget: Optional[int] = Field(default=None, ge=0)
    refinement_prompt: Optional[str] = Field(
        default=None, description="Extra instructions for this agent's sessions; empty string clears",
    )


class OpenSessionRequest(BaseModel):
    owner_id: str = Field(..., min_length=1)
    threshold: Optional[float] = Field(default=None, gt=0.0, le=1.0)


class ToolCallRequest(BaseModel):
    """One tool call, exactly as the refining model would issue it."""
    action: str = Field(..., description="search, get, consolidate, update, delete, protect or complete")
    arguments: Dict[str, Any] = Field(default_factory=dict)


class RollbackRequest(BaseModel):
    reason: Optional[str] = Field(default=None)
    dry_run: bool = Field(default=False, description="Preview without applying changes")


class ReapRequest(BaseModel):
    older_than_minutes: Optional[int] = Field(default=None, ge=0)


class SessionResponse(BaseModel):
    session_id: str
    owner_id: str
    status: SessionStatusName
    opened_at: str
    pre_mass: int
    threshold: float
    operation_count: int = 0
    post_mass: Optional[int] = None
    closed_at: Optional[str] = None
    terminated_reason: Optional[str] = None


class SearchResultResponse(BaseModel):
    """Response model for search results."""
    results: List[Dict[str, Any]]
    count: int
