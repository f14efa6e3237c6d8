import os
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def _default_db_path() -> str:
    return os.path.join(os.path.expanduser("~"), ".memrefine", "memrefine.db")


class StoreConfig(BaseModel):
    """Where memory records, sessions and the audit ledger live."""
    db_path: str = Field(default_factory=_default_db_path)
    max_content_chars: int = 10_000
    chars_per_token: int = 4  # token estimate = ceil(len / chars_per_token)

    @field_validator("max_content_chars", "chars_per_token")
    @classmethod
    def _positive(cls, v: int) -> int:
        return max(1, int(v))


class RefinementConfig(BaseModel):
    """
    Limits applied to every refinement session.

    - default_threshold: fraction of pre-session mass that must survive
      (0.75 means a session may shed up to 25% before the breaker trips)
    - operation_cap: maximum mutating tool calls per session
    - token_budget: core mass above which an agent is due for refinement
    """
    default_threshold: float = 0.75
    operation_cap: int = 10
    token_budget: int = 4000
    session_lease_minutes: int = 240  # active sessions older than this may be reaped
    search_limit: int = 50
    min_consolidate_ids: int = 2

    @field_validator("default_threshold")
    @classmethod
    def _valid_threshold(cls, v: float) -> float:
        v = float(v)
        if not 0.0 < v <= 1.0:
            raise ValueError(f"threshold must be in (0, 1], got {v}")
        return v

    @field_validator("operation_cap", "min_consolidate_ids", "search_limit")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        return max(1, int(v))

    @field_validator("token_budget", "session_lease_minutes")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        return max(0, int(v))


class AgentOverrides(BaseModel):
    """Per-agent settings; None falls back to the global default."""
    threshold: Optional[float] = None
    token_budget: Optional[int] = None
    refinement_prompt: Optional[str] = None  # extra instructions for this agent's sessions

    @field_validator("refinement_prompt")
    @classmethod
    def _blank_is_unset(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    @field_validator("threshold")
    @classmethod
    def _valid_threshold(cls, v: Optional[float]) -> Optional[float]:
        if v is None:
            return None
        v = float(v)
        if not 0.0 < v <= 1.0:
            raise ValueError(f"threshold must be in (0, 1], got {v}")
        return v

    @field_validator("token_budget")
    @classmethod
    def _non_negative(cls, v: Optional[int]) -> Optional[int]:
        return None if v is None else max(0, int(v))


class MemRefineConfig(BaseModel):
    store: StoreConfig = Field(default_factory=StoreConfig)
    refinement: RefinementConfig = Field(default_factory=RefinementConfig)
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _valid_level(cls, v: str) -> str:
        v = str(v).strip().upper()
        if v not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            return "INFO"
        return v
