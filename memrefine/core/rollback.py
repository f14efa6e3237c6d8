"""
Rollback: reverse a session's ledger newest first.

Each entry kind has a fixed inverse:

- update       restore the ``before`` content
- delete       undiscard the ``before`` record
- consolidate  undiscard every merged original, discard the new record
- protect      nothing; protection is never withdrawn
- complete     nothing; never reached for a rolled-back session

The whole walk, the synthetic ``rollback`` entry and the session status
change commit in one transaction, so a rollback either fully happens or
leaves the session active for another attempt.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from memrefine.core.ledger import AuditLedger
from memrefine.core.models import AuditEntry, Operation, RefinementSession, SessionStatus
from memrefine.db.sqlite import SQLiteManager, _utcnow_iso
from memrefine.memory.store import MemoryStore

logger = logging.getLogger(__name__)

TRIGGER_PER_OPERATION = "per_operation"
TRIGGER_POST_SESSION = "post_session"
TRIGGER_MANUAL = "manual"


@dataclass
class ReversalStep:
    entry_id: int
    operation: str
    restore_content: List[int] = field(default_factory=list)
    undiscard: List[int] = field(default_factory=list)
    discard: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RollbackOutcome:
    session_id: str
    owner_id: str
    trigger: str
    reason: str
    pre_mass: int
    mass_at_trip: int
    post_mass: int
    threshold: float
    reversed_operations: int
    steps: List[Dict[str, Any]] = field(default_factory=list)
    rolled_back_at: Optional[str] = None
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def plan_reversal(entries: List[AuditEntry]) -> List[ReversalStep]:
    """Map ledger entries (newest first) to their inverse steps."""
    steps: List[ReversalStep] = []
    for entry in entries:
        op = entry.operation
        if op == Operation.UPDATE.value:
            steps.append(ReversalStep(
                entry_id=entry.id,
                operation=op,
                restore_content=[int(snap["id"]) for snap in entry.before],
            ))
        elif op == Operation.DELETE.value:
            steps.append(ReversalStep(
                entry_id=entry.id,
                operation=op,
                undiscard=[int(snap["id"]) for snap in entry.before],
            ))
        elif op == Operation.CONSOLIDATE.value:
            new_id = entry.after.get("id") if isinstance(entry.after, dict) else None
            steps.append(ReversalStep(
                entry_id=entry.id,
                operation=op,
                undiscard=[int(snap["id"]) for snap in entry.before],
                discard=[int(new_id)] if new_id is not None else [],
            ))
    return steps


class RollbackEngine:
    def __init__(self, db: SQLiteManager, store: MemoryStore, ledger: AuditLedger):
        self.db = db
        self.store = store
        self.ledger = ledger

    def plan(self, session: RefinementSession) -> List[ReversalStep]:
        return plan_reversal(self.ledger.reversible_entries(session.session_id))

    def dry_run(self, session: RefinementSession, *, trigger: str, reason: str) -> RollbackOutcome:
        steps = self.plan(session)
        mass = self.store.total_mass(session.owner_id)
        return RollbackOutcome(
            session_id=session.session_id,
            owner_id=session.owner_id,
            trigger=trigger,
            reason=reason,
            pre_mass=session.pre_mass,
            mass_at_trip=mass,
            post_mass=mass,
            threshold=session.threshold,
            reversed_operations=len(steps),
            steps=[step.to_dict() for step in steps],
            dry_run=True,
        )

    def execute(
        self,
        session: RefinementSession,
        *,
        trigger: str,
        reason: str,
        mass_at_trip: Optional[int] = None,
    ) -> Tuple[RollbackOutcome, AuditEntry]:
        """Reverse every mutation of an active session and mark it rolled back.

        Must be called with the session still active; the caller owns the
        idempotency check.
        """
        with self.db.transaction():
            if mass_at_trip is None:
                mass_at_trip = self.store.total_mass(session.owner_id)
            entries = self.ledger.reversible_entries(session.session_id)
            by_id = {entry.id: entry for entry in entries}
            steps = plan_reversal(entries)

            for step in steps:
                entry = by_id[step.entry_id]
                for snap in entry.before:
                    if int(snap["id"]) in step.restore_content:
                        self.store.restore_content(int(snap["id"]), snap["content"])
                for memory_id in step.discard:
                    self.store.discard(memory_id, force=True)
                for memory_id in step.undiscard:
                    self.store.undiscard(memory_id)

            post_mass = self.store.total_mass(session.owner_id)
            now = _utcnow_iso()
            outcome = RollbackOutcome(
                session_id=session.session_id,
                owner_id=session.owner_id,
                trigger=trigger,
                reason=reason,
                pre_mass=session.pre_mass,
                mass_at_trip=int(mass_at_trip),
                post_mass=post_mass,
                threshold=session.threshold,
                reversed_operations=len(steps),
                steps=[step.to_dict() for step in steps],
                rolled_back_at=now,
            )
            entry = self.ledger.append(
                session.session_id,
                session.owner_id,
                Operation.ROLLBACK,
                before=[],
                after=outcome.to_dict(),
            )
            self.db.update_session(session.session_id, {
                "status": SessionStatus.ROLLED_BACK.value,
                "post_mass": post_mass,
                "closed_at": now,
                "terminated_reason": reason,
            })

        if post_mass != session.pre_mass:
            logger.warning(
                "Rollback of session %s restored mass %s, expected %s",
                session.session_id, post_mass, session.pre_mass,
            )
        return outcome, entry
