"""memrefine package exports.

memrefine: supervised, reversible memory refinement for AI agents
- Mutation gateway with a hard operation cap and protected records
- Per-operation and post-session circuit breaker on memory mass
- Append-only audit ledger; rollback restores the pre-session state

Quick Start:
    from memrefine import Refiner

    refiner = Refiner()
    session = refiner.open_session("agent-1")
    refiner.call(session.session_id, "complete", {"summary": "nothing needed"})
"""

__version__ = "0.1.0"

from memrefine.simple import Refiner
from memrefine.configs.base import MemRefineConfig, RefinementConfig, StoreConfig
from memrefine.core.models import MemoryRecord, RefinementSession, AuditEntry, SessionStatus
from memrefine.core.outcome import OutcomeReport, OutcomeSink, LoggingOutcomeSink, RecordingOutcomeSink
from memrefine.exceptions import (
    RefinementError,
    ValidationError,
    PolicyError,
    CapExceededError,
    ProtectedRecordError,
    SessionAlreadyActiveError,
    SessionTerminatedError,
)

__all__ = [
    "Refiner",
    # Config
    "MemRefineConfig",
    "RefinementConfig",
    "StoreConfig",
    # Models
    "MemoryRecord",
    "RefinementSession",
    "AuditEntry",
    "SessionStatus",
    # Outcome sinks
    "OutcomeReport",
    "OutcomeSink",
    "LoggingOutcomeSink",
    "RecordingOutcomeSink",
    # Errors
    "RefinementError",
    "ValidationError",
    "PolicyError",
    "CapExceededError",
    "ProtectedRecordError",
    "SessionAlreadyActiveError",
    "SessionTerminatedError",
]
