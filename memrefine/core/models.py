"""Records, sessions and audit entries as plain dataclasses."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class MemoryType(str, Enum):
    CORE = "core"        # identity-bearing facts, subject to refinement
    JOURNAL = "journal"  # diary entries, including refinement outcome reports


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    ABANDONED = "abandoned"  # reaped after the driver went away; no rollback


class Operation(str, Enum):
    UPDATE = "update"
    DELETE = "delete"
    CONSOLIDATE = "consolidate"
    PROTECT = "protect"
    ROLLBACK = "rollback"
    COMPLETE = "complete"


# Operations that count towards the per-session cap.
CAPPED_OPERATIONS = frozenset({Operation.UPDATE, Operation.DELETE, Operation.CONSOLIDATE})


@dataclass
class MemoryRecord:
    id: int
    owner_id: str
    content: str
    origin_at: str
    token_estimate: int
    memory_type: str = MemoryType.CORE.value
    protected: bool = False
    discarded_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def discarded(self) -> bool:
        return self.discarded_at is not None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "MemoryRecord":
        return cls(
            id=int(row["id"]),
            owner_id=row["owner_id"],
            content=row["content"],
            origin_at=row["origin_at"],
            token_estimate=int(row.get("token_estimate") or 0),
            memory_type=row.get("memory_type") or MemoryType.CORE.value,
            protected=bool(row.get("protected")),
            discarded_at=row.get("discarded_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def snapshot(self) -> Dict[str, Any]:
        """The part of a record the ledger needs to reverse a change."""
        return {
            "id": self.id,
            "content": self.content,
            "origin_at": self.origin_at,
            "discarded_at": self.discarded_at,
        }

    def as_ledger_entry(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "origin_at": self.origin_at,
            "token_estimate": self.token_estimate,
            "protected": self.protected,
        }

    def ledger_line(self) -> str:
        flag = " [CONSTITUTIONAL]" if self.protected else ""
        return f"- #{self.id} ({self.origin_at[:10]}, ~{self.token_estimate} tokens){flag}: {self.content}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RefinementSession:
    session_id: str
    owner_id: str
    opened_at: str
    pre_mass: int
    threshold: float
    status: str = SessionStatus.ACTIVE.value
    operation_count: int = 0
    post_mass: Optional[int] = None
    closed_at: Optional[str] = None
    terminated_reason: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.status == SessionStatus.ACTIVE.value

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RefinementSession":
        return cls(
            session_id=row["id"],
            owner_id=row["owner_id"],
            opened_at=row["opened_at"],
            pre_mass=int(row["pre_mass"]),
            threshold=float(row["threshold"]),
            status=row["status"],
            operation_count=int(row.get("operation_count") or 0),
            post_mass=row.get("post_mass"),
            closed_at=row.get("closed_at"),
            terminated_reason=row.get("terminated_reason"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AuditEntry:
    id: int
    session_id: str
    owner_id: str
    operation: str
    before: List[Dict[str, Any]] = field(default_factory=list)
    after: Any = field(default_factory=dict)
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AuditEntry":
        return cls(
            id=int(row["id"]),
            session_id=row["session_id"],
            owner_id=row["owner_id"],
            operation=row["operation"],
            before=list(row.get("before") or []),
            after=row.get("after") if row.get("after") is not None else {},
            created_at=row.get("created_at"),
        )

    def touched_ids(self) -> List[int]:
        ids = [int(snap["id"]) for snap in self.before if "id" in snap]
        if isinstance(self.after, dict) and self.after.get("id") is not None:
            ids.append(int(self.after["id"]))
        return ids

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AdminAction(str, Enum):
    """Out-of-band actions on a single record, taken outside any session."""
    PROTECT = "memory_protected"
    UNPROTECT = "memory_unprotected"
    DISCARD = "memory_discarded"
    RESTORE = "memory_restored"


@dataclass
class AdminEvent:
    action: str
    memory_id: int
    owner_id: str
    changed: bool  # False when the record was already in the requested state
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
