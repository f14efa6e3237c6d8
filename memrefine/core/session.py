"""
Refinement session lifecycle.

    active ──complete()──────────────► completed
       │ └──mass check fails────────► rolled_back
       ├──rollback() (admin)────────► rolled_back
       └──lease expired (reaper)────► abandoned

At most one session per owner is active; the database enforces it with a
partial unique index, so two concurrent ``open_session`` calls cannot both
win.
"""

from __future__ import annotations

import sqlite3
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from memrefine.configs.base import AgentOverrides, RefinementConfig
from memrefine.core import tokens
from memrefine.core.ledger import AuditLedger
from memrefine.core.models import AuditEntry, Operation, RefinementSession, SessionStatus
from memrefine.core.outcome import OutcomeReport, OutcomeReporter, completed_text, rolled_back_text
from memrefine.core.rollback import (
    TRIGGER_MANUAL,
    TRIGGER_PER_OPERATION,
    TRIGGER_POST_SESSION,
    RollbackEngine,
    RollbackOutcome,
)
from memrefine.db.sqlite import SQLiteManager, _utcnow, _utcnow_iso
from memrefine.exceptions import (
    SessionAlreadyActiveError,
    SessionNotFoundError,
    SessionTerminatedError,
    ValidationError,
)
from memrefine.memory.store import MemoryStore
from memrefine.observability import logger, metrics


class SessionManager:
    def __init__(
        self,
        db: SQLiteManager,
        store: MemoryStore,
        ledger: AuditLedger,
        reporter: OutcomeReporter,
        config: Optional[RefinementConfig] = None,
    ):
        self.db = db
        self.store = store
        self.ledger = ledger
        self.reporter = reporter
        self.config = config or RefinementConfig()
        self.rollbacks = RollbackEngine(db, store, ledger)

    # ------------------------------------------------------------------
    # Per-agent settings
    # ------------------------------------------------------------------

    def agent_settings(self, owner_id: str) -> AgentOverrides:
        row = self.db.get_agent_settings(owner_id) or {}
        return AgentOverrides(
            threshold=row.get("threshold"),
            token_budget=row.get("token_budget"),
            refinement_prompt=row.get("refinement_prompt"),
        )

    def set_agent_settings(
        self,
        owner_id: str,
        *,
        threshold: Optional[float] = None,
        token_budget: Optional[int] = None,
        refinement_prompt: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Store overrides. None leaves a field alone; a blank prompt clears it."""
        try:
            overrides = AgentOverrides(
                threshold=threshold, token_budget=token_budget, refinement_prompt=refinement_prompt,
            )
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        updates = {
            k: v for k, v in overrides.model_dump(exclude={"refinement_prompt"}).items() if v is not None
        }
        if refinement_prompt is not None:
            updates["refinement_prompt"] = overrides.refinement_prompt
        return self.db.upsert_agent_settings(owner_id, updates)

    def resolve_threshold(self, owner_id: str) -> float:
        override = self.agent_settings(owner_id).threshold
        return override if override is not None else self.config.default_threshold

    def resolve_token_budget(self, owner_id: str) -> int:
        override = self.agent_settings(owner_id).token_budget
        return override if override is not None else self.config.token_budget

    def resolve_refinement_prompt(self, owner_id: str) -> Optional[str]:
        return self.agent_settings(owner_id).refinement_prompt

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> RefinementSession:
        row = self.db.get_session(session_id)
        if row is None:
            raise SessionNotFoundError(session_id)
        return RefinementSession.from_row(row)

    def require_active(self, session_id: str) -> RefinementSession:
        session = self.get_session(session_id)
        if not session.active:
            raise SessionTerminatedError(session.session_id, session.status, session.terminated_reason)
        return session

    def active_session(self, owner_id: str) -> Optional[RefinementSession]:
        row = self.db.get_active_session(owner_id)
        return RefinementSession.from_row(row) if row else None

    def list_sessions(
        self,
        owner_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[RefinementSession]:
        rows = self.db.get_sessions(owner_id=owner_id, status=status, limit=limit)
        return [RefinementSession.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open_session(self, owner_id: str, threshold: Optional[float] = None) -> RefinementSession:
        """Acquire the owner's lease and snapshot pre-session mass."""
        owner_id = str(owner_id or "").strip()
        if not owner_id:
            raise ValidationError("owner_id is required")
        if threshold is not None:
            try:
                threshold = AgentOverrides(threshold=threshold).threshold
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
        else:
            threshold = self.resolve_threshold(owner_id)

        session_id = uuid.uuid4().hex
        try:
            with self.db.transaction():
                pre_mass = self.store.total_mass(owner_id)
                self.db.add_session({
                    "id": session_id,
                    "owner_id": owner_id,
                    "opened_at": _utcnow_iso(),
                    "pre_mass": pre_mass,
                    "threshold": threshold,
                })
        except sqlite3.IntegrityError as exc:
            existing = self.db.get_active_session(owner_id)
            raise SessionAlreadyActiveError(owner_id, existing["id"] if existing else None) from exc

        metrics.record_session_opened()
        logger.info(
            "Refinement session opened",
            session_id=session_id,
            owner_id=owner_id,
            pre_mass=pre_mass,
            threshold=threshold,
        )
        return self.get_session(session_id)

    def check_mass(self, session_id: str, operation: str = "") -> Optional[Dict[str, Any]]:
        """Run the per-operation breaker. Returns the rollback outcome if it tripped."""
        with self.db.transaction():
            session = self.get_session(session_id)
            if not session.active:
                return None
            mass = self.store.total_mass(session.owner_id)
            if not tokens.breaches_threshold(session.pre_mass, mass, session.threshold):
                return None
            reason = (
                f"memory mass fell to {mass} of {session.pre_mass} tokens "
                f"({tokens.retained_ratio(session.pre_mass, mass):.0%} retained, "
                f"threshold {session.threshold:.0%}) after {operation or 'an operation'} "
                f"#{session.operation_count}"
            )
            outcome, report, entry = self._rollback_active(
                session, trigger=TRIGGER_PER_OPERATION, reason=reason, mass_at_trip=mass,
            )
        self._publish_rollback(outcome, report, entry)
        return outcome.to_dict()

    def close(self, session_id: str, summary: Optional[str]) -> Dict[str, Any]:
        """Finish a session: either completed, or rolled back by the post-session check."""
        with self.db.transaction():
            session = self.require_active(session_id)
            if summary is not None and not isinstance(summary, str):
                raise ValidationError("summary must be a string")
            summary = (summary or "").strip()
            if not summary:
                raise ValidationError("summary is required to complete a session")
            post_mass = self.store.total_mass(session.owner_id)

            if tokens.breaches_threshold(session.pre_mass, post_mass, session.threshold):
                reason = (
                    f"post-session memory mass {post_mass} of {session.pre_mass} tokens "
                    f"({tokens.retained_ratio(session.pre_mass, post_mass):.0%} retained) "
                    f"is below the {session.threshold:.0%} threshold"
                )
                outcome, report, entry = self._rollback_active(
                    session, trigger=TRIGGER_POST_SESSION, reason=reason, mass_at_trip=post_mass,
                )
                rolled_back = True
            else:
                stats = self.ledger.operation_stats(session.session_id)
                report = OutcomeReport(
                    session_id=session.session_id,
                    owner_id=session.owner_id,
                    status=SessionStatus.COMPLETED.value,
                    pre_mass=session.pre_mass,
                    post_mass=post_mass,
                    threshold=session.threshold,
                    summary=summary,
                    stats=stats,
                )
                self.reporter.write_journal(report, completed_text(report))
                now = _utcnow_iso()
                entry = self.ledger.append(
                    session.session_id,
                    session.owner_id,
                    Operation.COMPLETE,
                    before=[],
                    after={
                        "summary": summary,
                        "stats": stats,
                        "pre_mass": session.pre_mass,
                        "post_mass": post_mass,
                        "journal_id": report.journal_id,
                    },
                )
                self.db.update_session(session.session_id, {
                    "status": SessionStatus.COMPLETED.value,
                    "post_mass": post_mass,
                    "closed_at": now,
                })
                self.db.upsert_agent_settings(session.owner_id, {"last_refinement_at": now})
                rolled_back = False

        if rolled_back:
            self._publish_rollback(outcome, report, entry)
            return {"type": "rolled_back", "status": SessionStatus.ROLLED_BACK.value, **outcome.to_dict()}

        metrics.record_session_completed()
        self.reporter.publish(report, [entry])
        return {
            "type": "refinement_complete",
            "status": SessionStatus.COMPLETED.value,
            "session_id": session.session_id,
            "summary": summary,
            "stats": report.stats,
            "pre_mass": session.pre_mass,
            "post_mass": post_mass,
            "journal_id": report.journal_id,
        }

    def rollback(
        self,
        session_id: str,
        reason: Optional[str] = None,
        *,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """Administrative rollback of an active session.

        Rolling back an already rolled-back session returns the stored
        outcome and changes nothing.
        """
        reason = (reason or "").strip() or "manual rollback requested"
        with self.db.transaction():
            session = self.get_session(session_id)
            if session.status == SessionStatus.ROLLED_BACK.value:
                stored = self.ledger.rollback_entry_for(session.session_id)
                return dict(stored.after) if stored else {}
            if not session.active:
                raise SessionTerminatedError(session.session_id, session.status, session.terminated_reason)
            if dry_run:
                return self.rollbacks.dry_run(session, trigger=TRIGGER_MANUAL, reason=reason).to_dict()
            outcome, report, entry = self._rollback_active(
                session, trigger=TRIGGER_MANUAL, reason=reason,
            )
        self._publish_rollback(outcome, report, entry)
        return outcome.to_dict()

    def reap_abandoned(self, older_than_minutes: Optional[int] = None) -> List[str]:
        """Mark active sessions older than the lease as abandoned.

        No rollback is performed: every applied mutation already passed its
        own mass check, and the lease is released so the owner can refine again.
        """
        minutes = self.config.session_lease_minutes if older_than_minutes is None else older_than_minutes
        cutoff = (_utcnow() - timedelta(minutes=max(0, int(minutes)))).isoformat()
        reaped: List[str] = []
        with self.db.transaction():
            for row in self.db.get_sessions(status=SessionStatus.ACTIVE.value, opened_before=cutoff):
                self.db.update_session(row["id"], {
                    "status": SessionStatus.ABANDONED.value,
                    "post_mass": self.store.total_mass(row["owner_id"]),
                    "closed_at": _utcnow_iso(),
                    "terminated_reason": f"abandoned: lease of {minutes} minutes expired",
                })
                reaped.append(row["id"])
        if reaped:
            metrics.record_session_abandoned(len(reaped))
            logger.warning("Reaped abandoned refinement sessions", session_ids=reaped, lease_minutes=minutes)
        return reaped

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _rollback_active(
        self,
        session: RefinementSession,
        *,
        trigger: str,
        reason: str,
        mass_at_trip: Optional[int] = None,
    ) -> Tuple[RollbackOutcome, OutcomeReport, AuditEntry]:
        outcome, entry = self.rollbacks.execute(
            session, trigger=trigger, reason=reason, mass_at_trip=mass_at_trip,
        )
        report = OutcomeReport(
            session_id=session.session_id,
            owner_id=session.owner_id,
            status=SessionStatus.ROLLED_BACK.value,
            pre_mass=session.pre_mass,
            post_mass=outcome.post_mass,
            threshold=session.threshold,
            reason=reason,
            trigger=trigger,
            reversed_operations=outcome.reversed_operations,
            stats=self.ledger.operation_stats(session.session_id),
        )
        self.reporter.write_journal(report, rolled_back_text(report, outcome.mass_at_trip))
        return outcome, report, entry

    def _publish_rollback(self, outcome: RollbackOutcome, report: OutcomeReport, entry: AuditEntry) -> None:
        metrics.record_rollback(outcome.trigger, outcome.reversed_operations)
        self.reporter.publish(report, [entry])
