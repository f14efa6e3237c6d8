"""Error taxonomy for refinement sessions.

Validation and policy errors are raised before any write, so catching one
always means the store, the ledger and the session counters are unchanged.
Every error serializes to a payload the calling model can act on.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional


class RefinementError(RuntimeError):
    """Base error with a stable machine-readable code."""

    code = "refinement_error"

    def __init__(self, message: str, *, code: Optional[str] = None):
        if code is not None:
            self.code = str(code)
        self.message = str(message)
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "error", "code": self.code, "error": self.message}


class ValidationError(RefinementError):
    """Bad arguments or unknown ids."""

    code = "validation_error"


class RecordNotFoundError(ValidationError):
    code = "record_not_found"

    def __init__(self, record_ids: Iterable[int]):
        self.ids: List[int] = sorted(int(i) for i in record_ids)
        joined = ", ".join(f"#{i}" for i in self.ids)
        super().__init__(f"Memory not found: {joined}")

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["missing_ids"] = list(self.ids)
        return payload


class SessionNotFoundError(RefinementError):
    code = "session_not_found"

    def __init__(self, session_id: str):
        self.session_id = str(session_id)
        super().__init__(f"Refinement session {self.session_id!r} not found")


class PolicyError(RefinementError):
    """A request the session rules forbid."""

    code = "policy_error"


class CapExceededError(PolicyError):
    code = "cap_exceeded"

    def __init__(self, cap: int, count: int):
        self.cap = int(cap)
        self.count = int(count)
        super().__init__(
            f"Operation cap reached: {self.count} of {self.cap} mutating operations used. "
            "Call complete to finish the session."
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update({"cap": self.cap, "count": self.count})
        return payload


class ProtectedRecordError(PolicyError):
    code = "protected_record"

    def __init__(self, record_ids: Iterable[int]):
        self.ids: List[int] = sorted(int(i) for i in record_ids)
        joined = ", ".join(f"#{i}" for i in self.ids)
        super().__init__(f"Cannot modify constitutional memories: {joined}")

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["protected_ids"] = list(self.ids)
        return payload


class SessionAlreadyActiveError(PolicyError):
    code = "session_already_active"

    def __init__(self, owner_id: str, session_id: Optional[str] = None):
        self.owner_id = str(owner_id)
        self.session_id = session_id
        detail = f" ({session_id})" if session_id else ""
        super().__init__(f"Agent {self.owner_id!r} already has an active refinement session{detail}")

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["session_id"] = self.session_id
        return payload


class SessionTerminatedError(PolicyError):
    code = "session_terminated"

    def __init__(self, session_id: str, status: str, reason: Optional[str] = None):
        self.session_id = str(session_id)
        self.status = str(status)
        self.reason = reason
        message = f"Refinement session {self.session_id} is {self.status}; stop issuing tool calls."
        if reason:
            message += f" Reason: {reason}"
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update({"status": self.status, "reason": self.reason})
        return payload
