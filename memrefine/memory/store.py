"""
Memory Store Access: keyed read/write/soft-delete over an agent's records.

Records are never purged: ``discard`` only stamps ``discarded_at`` and
``undiscard`` clears it again. Protection blocks ``update``/``discard`` but
never ``undiscard`` or ``restore_content``, so a rollback can always run.
"""

import logging
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional, Union

from memrefine.configs.base import StoreConfig
from memrefine.core import tokens
from memrefine.core.models import MemoryRecord, MemoryType
from memrefine.db.sqlite import SQLiteManager, _utcnow_iso
from memrefine.exceptions import (
    ProtectedRecordError,
    RecordNotFoundError,
    SessionAlreadyActiveError,
    ValidationError,
)

logger = logging.getLogger(__name__)

Timestamp = Union[str, datetime, date, None]


def normalize_timestamp(value: Timestamp) -> Optional[str]:
    """Coerce a timestamp to a timezone-aware ISO string (naive values are UTC)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError(f"Invalid timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


class MemoryStore:
    """Owner-scoped record access on top of :class:`SQLiteManager`."""

    def __init__(self, db: SQLiteManager, config: Optional[StoreConfig] = None):
        self.db = db
        self.config = config or StoreConfig()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, memory_id: int, owner_id: Optional[str] = None) -> Optional[MemoryRecord]:
        row = self.db.get_memory(memory_id, owner_id=owner_id)
        return MemoryRecord.from_row(row) if row else None

    def list_active(self, owner_id: str, memory_type: str = MemoryType.CORE.value) -> List[MemoryRecord]:
        rows = self.db.get_all_memories(owner_id=owner_id, memory_type=memory_type)
        return [MemoryRecord.from_row(row) for row in rows]

    def search(self, owner_id: str, query: str, limit: int = 50) -> List[MemoryRecord]:
        rows = self.db.search_memories(owner_id=owner_id, query=query, limit=limit)
        return [MemoryRecord.from_row(row) for row in rows]

    def require_active(self, owner_id: str, memory_ids: Iterable[int]) -> List[MemoryRecord]:
        """Fetch active core records, in the order asked for.

        Raises RecordNotFoundError naming every id that is missing, discarded,
        owned by someone else, or not a core record.
        """
        ids = [int(i) for i in memory_ids]
        rows = self.db.get_memories_bulk(ids, owner_id=owner_id)
        found: List[MemoryRecord] = []
        missing: List[int] = []
        for memory_id in ids:
            row = rows.get(memory_id)
            if (
                row is None
                or row.get("discarded_at") is not None
                or row.get("memory_type") != MemoryType.CORE.value
            ):
                missing.append(memory_id)
                continue
            found.append(MemoryRecord.from_row(row))
        if missing:
            raise RecordNotFoundError(missing)
        return found

    def total_mass(self, owner_id: str) -> int:
        return tokens.total_mass(self.db, owner_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def validate_content(self, content: Optional[str]) -> str:
        if content is not None and not isinstance(content, str):
            raise ValidationError("content must be a string")
        text = (content or "").strip()
        if not text:
            raise ValidationError("content must not be empty")
        if len(text) > self.config.max_content_chars:
            raise ValidationError(
                f"content is {len(text)} characters; the limit is {self.config.max_content_chars}"
            )
        return text

    def _estimate(self, content: str) -> int:
        return tokens.estimate(content, self.config.chars_per_token)

    def create(
        self,
        owner_id: str,
        content: str,
        *,
        memory_type: str = MemoryType.CORE.value,
        origin_at: Timestamp = None,
        protected: bool = False,
    ) -> MemoryRecord:
        if memory_type not in {t.value for t in MemoryType}:
            raise ValidationError(f"Unknown memory_type {memory_type!r}")
        text = self.validate_content(content)
        memory_id = self.db.add_memory({
            "owner_id": owner_id,
            "content": text,
            "memory_type": memory_type,
            "origin_at": normalize_timestamp(origin_at) or _utcnow_iso(),
            "token_estimate": self._estimate(text),
            "protected": protected,
        })
        return self.get(memory_id)

    def update(self, memory_id: int, content: str) -> MemoryRecord:
        record = self._require(memory_id)
        if record.protected:
            raise ProtectedRecordError([record.id])
        text = self.validate_content(content)
        self.db.update_memory(record.id, {"content": text, "token_estimate": self._estimate(text)})
        return self.get(record.id)

    def discard(self, memory_id: int, *, force: bool = False) -> MemoryRecord:
        """Soft-delete a record. ``force`` is reserved for rollback."""
        record = self._require(memory_id)
        if record.protected and not force:
            raise ProtectedRecordError([record.id])
        if record.discarded:
            return record
        self.db.update_memory(record.id, {"discarded_at": _utcnow_iso()})
        return self.get(record.id)

    def undiscard(self, memory_id: int) -> MemoryRecord:
        """Clear the soft-delete marker. Succeeds regardless of protection."""
        record = self._require(memory_id)
        if not record.discarded:
            return record
        self.db.update_memory(record.id, {"discarded_at": None})
        return self.get(record.id)

    def restore_content(self, memory_id: int, content: str) -> MemoryRecord:
        """Rollback path: put back exact prior content, bypassing protection and limits."""
        record = self._require(memory_id)
        self.db.update_memory(record.id, {"content": content, "token_estimate": self._estimate(content)})
        return self.get(record.id)

    def protect(self, memory_id: int) -> MemoryRecord:
        record = self._require(memory_id)
        if not record.protected:
            self.db.update_memory(record.id, {"protected": True})
        return self.get(record.id)

    def unprotect(self, memory_id: int) -> MemoryRecord:
        """Out-of-band admin action; refused while the owner has an active session."""
        record = self._require(memory_id)
        active = self.db.get_active_session(record.owner_id)
        if active is not None:
            raise SessionAlreadyActiveError(record.owner_id, active["id"])
        if record.protected:
            self.db.update_memory(record.id, {"protected": False})
        return self.get(record.id)

    def _require(self, memory_id: int) -> MemoryRecord:
        record = self.get(memory_id)
        if record is None:
            raise RecordNotFoundError([memory_id])
        return record
