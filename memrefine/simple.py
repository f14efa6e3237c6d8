"""Batteries-included interface for memory refinement.

Usage:
    from memrefine import Refiner

    refiner = Refiner()  # reads ~/.memrefine/config.json and MEMREFINE_* env vars
    refiner.add_memory("agent-1", "Prefers terse answers")
    session = refiner.open_session("agent-1")
    refiner.call(session.session_id, "search", {"query": "answers"})
    refiner.call(session.session_id, "complete", {"summary": "nothing to change"})

Environment Variables:
    MEMREFINE_DB_PATH: SQLite database file (default: ~/.memrefine/memrefine.db)
    MEMREFINE_THRESHOLD: default mass threshold for new sessions (default: 0.75)
"""

from __future__ import annotations

import os
import tempfile
from typing import Any, Callable, Dict, List, Optional

from memrefine.cli_config import build_config
from memrefine.configs.base import MemRefineConfig
from memrefine.core.gateway import MutationGateway
from memrefine.core.ledger import AuditLedger
from memrefine.core.models import AdminAction, AdminEvent, AuditEntry, MemoryRecord, RefinementSession
from memrefine.core.outcome import OutcomeReporter, OutcomeSink
from memrefine.core.session import SessionManager
from memrefine.db.sqlite import SQLiteManager, _utcnow_iso
from memrefine.memory.store import MemoryStore, Timestamp
from memrefine.observability import logger


class Refiner:
    """Wires the store, ledger, session manager and gateway over one database.

    Args:
        config: Full configuration. Loaded from file and environment if not set.
        db_path: Overrides ``config.store.db_path``.
        sinks: Outcome sinks. Defaults to a structured-logging sink.
        in_memory: Use a throwaway database in a temp directory (for testing).
    """

    def __init__(
        self,
        config: Optional[MemRefineConfig] = None,
        db_path: Optional[str] = None,
        sinks: Optional[List[OutcomeSink]] = None,
        in_memory: bool = False,
    ):
        self.config = config or build_config()
        if in_memory and db_path is None:
            db_path = os.path.join(tempfile.mkdtemp(prefix="memrefine_"), "memrefine.db")
        if db_path:
            self.config.store.db_path = db_path
        logger.set_level(self.config.log_level)

        self.db = SQLiteManager(self.config.store.db_path)
        self.store = MemoryStore(self.db, self.config.store)
        self.ledger = AuditLedger(self.db)
        self.reporter = OutcomeReporter(self.store, sinks)
        self.sessions = SessionManager(self.db, self.store, self.ledger, self.reporter, self.config.refinement)
        self.gateway = MutationGateway(self.sessions, self.config.refinement)

    def close(self) -> None:
        self.db.close()

    def __enter__(self) -> "Refiner":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Refiner(db_path={self.config.store.db_path!r})"

    # Records (outside any session)

    def add_memory(
        self,
        owner_id: str,
        content: str,
        *,
        memory_type: str = "core",
        origin_at: Timestamp = None,
        protected: bool = False,
    ) -> MemoryRecord:
        return self.store.create(
            owner_id, content, memory_type=memory_type, origin_at=origin_at, protected=protected,
        )

    def get_memory(self, memory_id: int, owner_id: Optional[str] = None) -> Optional[MemoryRecord]:
        return self.store.get(memory_id, owner_id=owner_id)

    def list_memories(self, owner_id: str, memory_type: str = "core") -> List[MemoryRecord]:
        return self.store.list_active(owner_id, memory_type)

    def search(self, owner_id: str, query: str, limit: int = 50) -> List[MemoryRecord]:
        return self.store.search(owner_id, query, limit)

    def protect(self, memory_id: int) -> MemoryRecord:
        return self._admin(AdminAction.PROTECT, self.store.protect, memory_id)

    def unprotect(self, memory_id: int) -> MemoryRecord:
        """Refused while the owner has an active session."""
        return self._admin(AdminAction.UNPROTECT, self.store.unprotect, memory_id)

    def discard(self, memory_id: int) -> MemoryRecord:
        """Soft-delete a record; constitutional records are refused."""
        return self._admin(AdminAction.DISCARD, self.store.discard, memory_id)

    def restore(self, memory_id: int) -> MemoryRecord:
        return self._admin(AdminAction.RESTORE, self.store.undiscard, memory_id)

    def _admin(
        self,
        action: AdminAction,
        apply: Callable[[int], MemoryRecord],
        memory_id: int,
    ) -> MemoryRecord:
        before = self.store.get(memory_id)
        record = apply(memory_id)
        event = AdminEvent(
            action=action.value,
            memory_id=record.id,
            owner_id=record.owner_id,
            changed=(before.protected, before.discarded_at) != (record.protected, record.discarded_at),
            created_at=_utcnow_iso(),
        )
        logger.info(
            "Admin memory action",
            action=event.action,
            memory_id=event.memory_id,
            owner_id=event.owner_id,
            changed=event.changed,
        )
        self.reporter.publish_admin(event)
        return record

    def mass(self, owner_id: str) -> int:
        return self.store.total_mass(owner_id)

    # Per-agent settings

    def set_agent_settings(
        self,
        owner_id: str,
        *,
        threshold: Optional[float] = None,
        token_budget: Optional[int] = None,
        refinement_prompt: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self.sessions.set_agent_settings(
            owner_id, threshold=threshold, token_budget=token_budget, refinement_prompt=refinement_prompt,
        )

    def get_agent_settings(self, owner_id: str) -> Dict[str, Any]:
        row = self.db.get_agent_settings(owner_id) or {"owner_id": owner_id}
        return {
            **row,
            "effective_threshold": self.sessions.resolve_threshold(owner_id),
            "effective_token_budget": self.sessions.resolve_token_budget(owner_id),
        }

    # Sessions

    def open_session(self, owner_id: str, threshold: Optional[float] = None) -> RefinementSession:
        return self.sessions.open_session(owner_id, threshold=threshold)

    def call(self, session_id: str, action: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """One tool call from the refining model; never raises for refusals."""
        return self.gateway.execute(session_id, action, arguments)

    def complete(self, session_id: str, summary: str) -> Dict[str, Any]:
        return self.gateway.complete(session_id, summary)

    def rollback(self, session_id: str, reason: Optional[str] = None, dry_run: bool = False) -> Dict[str, Any]:
        return self.sessions.rollback(session_id, reason, dry_run=dry_run)

    def reap_abandoned(self, older_than_minutes: Optional[int] = None) -> List[str]:
        return self.sessions.reap_abandoned(older_than_minutes)

    def get_session(self, session_id: str) -> RefinementSession:
        return self.sessions.get_session(session_id)

    def list_sessions(
        self,
        owner_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[RefinementSession]:
        return self.sessions.list_sessions(owner_id=owner_id, status=status, limit=limit)

    def active_session(self, owner_id: str) -> Optional[RefinementSession]:
        return self.sessions.active_session(owner_id)

    def audit(self, session_id: str) -> List[AuditEntry]:
        self.sessions.get_session(session_id)
        return self.ledger.entries_for(session_id)

    def owner_audit(self, owner_id: str, limit: int = 100) -> List[AuditEntry]:
        """Newest ledger entries across all of an owner's sessions."""
        return self.ledger.entries_for_owner(owner_id, limit=limit)

    def tool_definitions(self) -> List[Dict[str, Any]]:
        return self.gateway.tool_definitions()

    def stats(self, owner_id: Optional[str] = None) -> Dict[str, Any]:
        return self.db.get_stats(owner_id)
