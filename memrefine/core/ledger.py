"""Audit Ledger: append-only record of every mutation, the unit of reversal."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from memrefine.core.models import AuditEntry, Operation
from memrefine.db.sqlite import SQLiteManager


class AuditLedger:
    """Thin typed wrapper over the ``audit_entries`` table.

    ``append`` never opens its own transaction: called inside
    ``db.transaction()`` it commits or rolls back together with the store
    mutation it documents. The table itself rejects UPDATE and DELETE.
    """

    def __init__(self, db: SQLiteManager):
        self.db = db

    def append(
        self,
        session_id: str,
        owner_id: str,
        operation: Operation,
        before: Optional[List[Dict[str, Any]]] = None,
        after: Any = None,
    ) -> AuditEntry:
        row = self.db.add_audit_entry(
            session_id=session_id,
            owner_id=owner_id,
            operation=Operation(operation).value,
            before=before or [],
            after=after if after is not None else {},
        )
        return AuditEntry.from_row(row)

    def entries_for(self, session_id: str) -> List[AuditEntry]:
        """All entries of a session, oldest first."""
        return [AuditEntry.from_row(row) for row in self.db.get_audit_entries(session_id)]

    def reversible_entries(self, session_id: str) -> List[AuditEntry]:
        """Entries newest first, the order a rollback walks them."""
        return [
            AuditEntry.from_row(row)
            for row in self.db.get_audit_entries(session_id, newest_first=True)
        ]

    def rollback_entry_for(self, session_id: str) -> Optional[AuditEntry]:
        rows = self.db.get_audit_entries(session_id, operation=Operation.ROLLBACK.value)
        return AuditEntry.from_row(rows[0]) if rows else None

    def entries_for_owner(self, owner_id: str, limit: int = 100) -> List[AuditEntry]:
        """Most recent entries across all of an owner's sessions."""
        return [
            AuditEntry.from_row(row)
            for row in self.db.get_audit_entries_for_owner(owner_id, limit=limit)
        ]

    def operation_stats(self, session_id: str) -> Dict[str, int]:
        stats = {"consolidated": 0, "updated": 0, "deleted": 0, "protected": 0}
        for entry in self.entries_for(session_id):
            if entry.operation == Operation.CONSOLIDATE.value:
                stats["consolidated"] += len(entry.before)
            elif entry.operation == Operation.UPDATE.value:
                stats["updated"] += 1
            elif entry.operation == Operation.DELETE.value:
                stats["deleted"] += 1
            elif entry.operation == Operation.PROTECT.value:
                stats["protected"] += 1
        return stats
