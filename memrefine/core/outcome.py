"""Outcome reporting: what the agent, and whoever is listening, learns when a session ends."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from memrefine.core.models import AdminEvent, AuditEntry, MemoryType, SessionStatus
from memrefine.memory.store import MemoryStore
from memrefine.observability import logger


@dataclass
class OutcomeReport:
    session_id: str
    owner_id: str
    status: str
    pre_mass: int
    post_mass: int
    threshold: float
    summary: Optional[str] = None
    reason: Optional[str] = None
    trigger: Optional[str] = None
    reversed_operations: int = 0
    stats: Dict[str, int] = field(default_factory=dict)
    journal_id: Optional[int] = None

    @property
    def retained_pct(self) -> float:
        if self.pre_mass <= 0:
            return 100.0
        return round(100.0 * self.post_mass / self.pre_mass, 1)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["retained_pct"] = self.retained_pct
        return data


class OutcomeSink(Protocol):
    """Anything that wants to hear about finished sessions, ledger appends and admin actions."""

    def publish_outcome(self, report: OutcomeReport) -> None:
        ...

    def publish_audit(self, entry: AuditEntry) -> None:
        ...

    def publish_admin(self, event: AdminEvent) -> None:
        ...


class LoggingOutcomeSink:
    """Default sink: structured log lines."""

    def publish_outcome(self, report: OutcomeReport) -> None:
        if report.status == SessionStatus.ROLLED_BACK.value:
            logger.warning(
                "Refinement session rolled back",
                session_id=report.session_id,
                owner_id=report.owner_id,
                trigger=report.trigger,
                reason=report.reason,
                pre_mass=report.pre_mass,
                reversed_operations=report.reversed_operations,
            )
        else:
            logger.info(
                "Refinement session completed",
                session_id=report.session_id,
                owner_id=report.owner_id,
                pre_mass=report.pre_mass,
                post_mass=report.post_mass,
                stats=report.stats,
            )

    def publish_audit(self, entry: AuditEntry) -> None:
        logger.debug(
            "Audit entry appended",
            session_id=entry.session_id,
            owner_id=entry.owner_id,
            operation=entry.operation,
            entry_id=entry.id,
            touched_ids=entry.touched_ids(),
        )

    def publish_admin(self, event: AdminEvent) -> None:
        logger.debug(
            "Admin event published",
            action=event.action,
            memory_id=event.memory_id,
            owner_id=event.owner_id,
            changed=event.changed,
        )


class RecordingOutcomeSink:
    """Keeps everything in memory. Handy for tests and embedding."""

    def __init__(self):
        self.outcomes: List[OutcomeReport] = []
        self.audit_entries: List[AuditEntry] = []
        self.admin_events: List[AdminEvent] = []

    def publish_outcome(self, report: OutcomeReport) -> None:
        self.outcomes.append(report)

    def publish_audit(self, entry: AuditEntry) -> None:
        self.audit_entries.append(entry)

    def publish_admin(self, event: AdminEvent) -> None:
        self.admin_events.append(event)


def completed_text(report: OutcomeReport) -> str:
    return f"Refinement session: {report.summary}"


def rolled_back_text(report: OutcomeReport, mass_at_trip: int) -> str:
    pct = 100.0 * mass_at_trip / report.pre_mass if report.pre_mass else 100.0
    return (
        f"Refinement session {report.session_id[:8]} was rolled back ({report.trigger}): "
        f"{report.reason}. Memory mass dropped to {mass_at_trip} of {report.pre_mass} tokens "
        f"({pct:.0f}% retained, floor {report.threshold * 100:.0f}%). "
        f"All {report.reversed_operations} change(s) were reversed. "
        "Next time make fewer, smaller edits and keep specific details when consolidating."
    )


class OutcomeReporter:
    """Writes the journal entry for a finished session and fans out to sinks.

    ``write_journal`` runs inside the caller's transaction; ``publish`` is
    called after commit so sinks never see work that was rolled back.
    """

    def __init__(self, store: MemoryStore, sinks: Optional[List[OutcomeSink]] = None):
        self.store = store
        self.sinks: List[OutcomeSink] = list(sinks) if sinks is not None else [LoggingOutcomeSink()]

    def write_journal(self, report: OutcomeReport, text: str) -> int:
        record = self.store.create(
            report.owner_id,
            text[: self.store.config.max_content_chars],
            memory_type=MemoryType.JOURNAL.value,
        )
        report.journal_id = record.id
        return record.id

    def publish(self, report: OutcomeReport, entries: Optional[List[AuditEntry]] = None) -> None:
        for sink in self.sinks:
            for entry in entries or []:
                sink.publish_audit(entry)
            sink.publish_outcome(report)

    def publish_audit(self, entry: AuditEntry) -> None:
        for sink in self.sinks:
            sink.publish_audit(entry)

    def publish_admin(self, event: AdminEvent) -> None:
        for sink in self.sinks:
            sink.publish_admin(event)
