"""
Mutation Gateway: the only path by which a refining agent changes memory.

Every call is checked in a fixed order, and the first failing check wins:

1. termination   the session must be active (search and get are exempt)
2. cap           update/delete/consolidate stop at ``operation_cap``
3. protection    any protected target refuses the whole call
4. validation    ids must exist; content must be non-empty and bounded

A call that passes applies its mutation, appends the ledger entry and bumps
``operation_count`` in one transaction. The per-operation mass check runs
right after commit and may roll back the whole session; that is reported as
a ``circuit_breaker_tripped`` payload, not raised.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from memrefine.configs.base import RefinementConfig
from memrefine.core.models import CAPPED_OPERATIONS, AuditEntry, Operation, RefinementSession
from memrefine.core.session import SessionManager
from memrefine.exceptions import (
    CapExceededError,
    ProtectedRecordError,
    RefinementError,
    ValidationError,
)
from memrefine.observability import logger, metrics

ACTIONS = ("search", "get", "consolidate", "update", "delete", "protect", "complete")

TOOL_NAME = "refine_memories"

_ID_SPLIT = re.compile(r"[,\s]+")


def split_ids(value: Any) -> Tuple[List[int], List[str]]:
    """Split an id argument into (valid ids, rejected tokens).

    Accepts an int, a list, or a comma separated string such as ``"3, 7"``.
    Duplicates are dropped, order is kept.
    """
    if value is None:
        return [], []
    if isinstance(value, (list, tuple)):
        items = list(value)
    elif isinstance(value, str):
        items = [part for part in _ID_SPLIT.split(value.strip()) if part]
    else:
        items = [value]

    ids: List[int] = []
    bad: List[str] = []
    for item in items:
        if isinstance(item, bool):
            bad.append(str(item))
            continue
        if isinstance(item, int):
            candidate = item
        else:
            text = str(item).strip().lstrip("#")
            if not text.isdigit():
                bad.append(str(item))
                continue
            candidate = int(text)
        if candidate not in ids:
            ids.append(candidate)
    return ids, bad


def _earliest(timestamps: List[str]) -> str:
    return min(timestamps, key=lambda ts: datetime.fromisoformat(ts.replace("Z", "+00:00")))


class MutationGateway:
    def __init__(self, sessions: SessionManager, config: Optional[RefinementConfig] = None):
        self.sessions = sessions
        self.db = sessions.db
        self.store = sessions.store
        self.ledger = sessions.ledger
        self.config = config or sessions.config
        self._handlers: Dict[str, Callable[[str, Dict[str, Any]], Dict[str, Any]]] = {
            "search": lambda sid, a: self.search(sid, a.get("query"), a.get("limit")),
            "get": lambda sid, a: self.get(sid, a.get("id", a.get("memory_id"))),
            "consolidate": lambda sid, a: self.consolidate(sid, a.get("ids"), a.get("content")),
            "update": lambda sid, a: self.update(sid, a.get("id", a.get("memory_id")), a.get("content")),
            "delete": lambda sid, a: self.delete(sid, a.get("id", a.get("memory_id"))),
            "protect": lambda sid, a: self.protect(sid, a.get("id", a.get("memory_id"))),
            "complete": lambda sid, a: self.complete(sid, a.get("summary")),
        }

    # ------------------------------------------------------------------
    # Tool-call boundary
    # ------------------------------------------------------------------

    def execute(self, session_id: str, action: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Dispatch one tool call. Refusals come back as error payloads."""
        action = str(action or "").strip().lower()
        handler = self._handlers.get(action)
        if handler is None:
            metrics.record_refused("unknown_action")
            return {
                "type": "error",
                "code": "unknown_action",
                "error": f"Unknown action: {action or '(none)'}. Valid actions: {', '.join(ACTIONS)}",
            }
        try:
            if arguments is not None and not isinstance(arguments, dict):
                raise ValidationError("arguments must be an object")
            with metrics.measure(action):
                return handler(session_id, dict(arguments or {}))
        except RefinementError as exc:
            metrics.record_refused(exc.code)
            logger.info(
                "Tool call refused",
                session_id=session_id,
                action=action,
                code=exc.code,
                error=exc.message,
            )
            return exc.to_dict()

    @staticmethod
    def tool_definitions() -> List[Dict[str, Any]]:
        """Function-calling schema for the refinement tool."""
        return [{
            "type": "function",
            "function": {
                "name": TOOL_NAME,
                "description": (
                    "Refine your long-term memories. Search to find related records, "
                    "consolidate duplicates into one record, update imprecise ones, delete "
                    "obsolete ones, and protect identity-defining ones. At most 10 "
                    "consolidate/update/delete calls per session. Finish with complete. "
                    "If too much memory disappears the whole session is rolled back."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "action": {
                            "type": "string",
                            "enum": list(ACTIONS),
                            "description": "What to do",
                        },
                        "query": {
                            "type": "string",
                            "description": "Text to search for (search)",
                        },
                        "ids": {
                            "type": "array",
                            "items": {"type": "integer"},
                            "description": "Memory ids to merge, at least two (consolidate)",
                        },
                        "id": {
                            "type": "integer",
                            "description": "Memory id (get, update, delete, protect)",
                        },
                        "content": {
                            "type": "string",
                            "description": "New content (consolidate, update)",
                        },
                        "summary": {
                            "type": "string",
                            "description": "What you changed and why (complete)",
                        },
                    },
                    "required": ["action"],
                },
            },
        }]

    # ------------------------------------------------------------------
    # Read-only actions
    # ------------------------------------------------------------------

    def search(self, session_id: str, query: Optional[str], limit: Optional[int] = None) -> Dict[str, Any]:
        session = self.sessions.get_session(session_id)
        if query is not None and not isinstance(query, str):
            raise ValidationError("query must be a string")
        query = (query or "").strip()
        if not query:
            raise ValidationError("query is required for search")
        try:
            limit = int(limit) if limit else self.config.search_limit
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"limit must be an integer, got {limit!r}") from exc
        records = self.store.search(session.owner_id, query, min(max(1, limit), self.config.search_limit))
        return {
            "type": "search_results",
            "query": query,
            "count": len(records),
            "results": [record.as_ledger_entry() for record in records],
        }

    def get(self, session_id: str, memory_id: Any) -> Dict[str, Any]:
        session = self.sessions.get_session(session_id)
        ids = self._require_ids(memory_id, "id", exactly_one=True)
        record = self.store.require_active(session.owner_id, ids)[0]
        return {"type": "memory", **record.as_ledger_entry()}

    # ------------------------------------------------------------------
    # Mutating actions
    # ------------------------------------------------------------------

    def update(self, session_id: str, memory_id: Any, content: Optional[str]) -> Dict[str, Any]:
        with self.db.transaction():
            session, ids = self._admit(session_id, Operation.UPDATE, memory_id, "id", exactly_one=True)
            record = self.store.require_active(session.owner_id, ids)[0]
            text = self.store.validate_content(content)
            updated = self.store.update(record.id, text)
            entry = self.ledger.append(
                session.session_id, session.owner_id, Operation.UPDATE,
                before=[record.snapshot()], after=updated.snapshot(),
            )
            count = self.db.increment_operation_count(session.session_id)
        return self._applied(session, entry, count, {
            "type": "updated",
            "id": updated.id,
            "content": updated.content,
        })

    def delete(self, session_id: str, memory_id: Any) -> Dict[str, Any]:
        with self.db.transaction():
            session, ids = self._admit(session_id, Operation.DELETE, memory_id, "id", exactly_one=True)
            record = self.store.require_active(session.owner_id, ids)[0]
            discarded = self.store.discard(record.id)
            entry = self.ledger.append(
                session.session_id, session.owner_id, Operation.DELETE,
                before=[record.snapshot()], after=discarded.snapshot(),
            )
            count = self.db.increment_operation_count(session.session_id)
        return self._applied(session, entry, count, {
            "type": "deleted",
            "id": record.id,
        })

    def consolidate(self, session_id: str, memory_ids: Any, content: Optional[str]) -> Dict[str, Any]:
        with self.db.transaction():
            session, ids = self._admit(session_id, Operation.CONSOLIDATE, memory_ids, "ids")
            if len(ids) < self.config.min_consolidate_ids:
                raise ValidationError(
                    f"consolidate needs at least {self.config.min_consolidate_ids} distinct ids, got {len(ids)}"
                )
            records = self.store.require_active(session.owner_id, ids)
            text = self.store.validate_content(content)
            merged = self.store.create(
                session.owner_id,
                text,
                origin_at=_earliest([record.origin_at for record in records]),
            )
            for record in records:
                self.store.discard(record.id)
            entry = self.ledger.append(
                session.session_id, session.owner_id, Operation.CONSOLIDATE,
                before=[record.snapshot() for record in records], after=merged.snapshot(),
            )
            count = self.db.increment_operation_count(session.session_id)
        return self._applied(session, entry, count, {
            "type": "consolidated",
            "merged_count": len(records),
            "merged_ids": [record.id for record in records],
            "id": merged.id,
            "new_content": merged.content,
            "origin_at": merged.origin_at,
        })

    def protect(self, session_id: str, memory_id: Any) -> Dict[str, Any]:
        """Mark a record constitutional. Uncapped, and never reversed by rollback."""
        with self.db.transaction():
            session, ids = self._admit(
                session_id, Operation.PROTECT, memory_id, "id", exactly_one=True, check_protection=False,
            )
            record = self.store.require_active(session.owner_id, ids)[0]
            if record.protected:
                return {"type": "protected", "id": record.id, "content": record.content, "already_protected": True}
            protected = self.store.protect(record.id)
            entry = self.ledger.append(
                session.session_id, session.owner_id, Operation.PROTECT,
                before=[record.snapshot()], after=protected.snapshot(),
            )
        metrics.record_applied(Operation.PROTECT.value)
        self.sessions.reporter.publish_audit(entry)
        logger.info("Memory protected", session_id=session.session_id, memory_id=record.id)
        return {"type": "protected", "id": protected.id, "content": protected.content}

    def complete(self, session_id: str, summary: Optional[str]) -> Dict[str, Any]:
        return self.sessions.close(session_id, summary)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _admit(
        self,
        session_id: str,
        operation: Operation,
        raw_ids: Any,
        name: str,
        *,
        exactly_one: bool = False,
        check_protection: bool = True,
    ) -> Tuple[RefinementSession, List[int]]:
        """Termination, cap and protection checks, then id-shape validation."""
        session = self.sessions.require_active(session_id)
        cap = self.config.operation_cap
        if operation in CAPPED_OPERATIONS and session.operation_count >= cap:
            raise CapExceededError(cap, session.operation_count)

        ids, bad = split_ids(raw_ids)
        if check_protection and ids:
            rows = self.db.get_memories_bulk(ids, owner_id=session.owner_id)
            protected = [i for i in ids if rows.get(i, {}).get("protected")]
            if protected:
                raise ProtectedRecordError(protected)
        self._check_id_shape(ids, bad, name, exactly_one)
        return session, ids

    def _require_ids(self, raw_ids: Any, name: str, exactly_one: bool = False) -> List[int]:
        ids, bad = split_ids(raw_ids)
        self._check_id_shape(ids, bad, name, exactly_one)
        return ids

    @staticmethod
    def _check_id_shape(ids: List[int], bad: List[str], name: str, exactly_one: bool) -> None:
        if bad:
            raise ValidationError(f"{name} must be integer memory ids; could not parse {', '.join(bad)}")
        if not ids:
            raise ValidationError(f"{name} is required")
        if exactly_one and len(ids) != 1:
            raise ValidationError(f"{name} must name exactly one memory, got {len(ids)}")

    def _applied(
        self,
        session: RefinementSession,
        entry: AuditEntry,
        count: int,
        result: Dict[str, Any],
    ) -> Dict[str, Any]:
        metrics.record_applied(entry.operation)
        self.sessions.reporter.publish_audit(entry)
        logger.info(
            "Refinement operation applied",
            session_id=session.session_id,
            owner_id=session.owner_id,
            operation=entry.operation,
            touched_ids=entry.touched_ids(),
            operation_count=count,
        )

        tripped = self.sessions.check_mass(session.session_id, entry.operation)
        if tripped is not None:
            return {
                "type": "circuit_breaker_tripped",
                "operation": entry.operation,
                "rolled_back": True,
                "message": (
                    "Too much memory was removed. Every change in this session has been "
                    "reversed and the session is closed. Stop issuing tool calls."
                ),
                **tripped,
            }

        result["operation_count"] = count
        result["remaining_operations"] = max(0, self.config.operation_cap - count)
        return result
