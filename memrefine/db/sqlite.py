import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

# Allowed column names for dynamic UPDATE queries to prevent SQL injection.
VALID_MEMORY_COLUMNS = frozenset({
    "content", "token_estimate", "protected", "discarded_at", "origin_at", "updated_at",
})

VALID_SESSION_COLUMNS = frozenset({
    "status", "post_mass", "closed_at", "terminated_reason", "operation_count",
})

VALID_SETTINGS_COLUMNS = frozenset({
    "threshold", "token_budget", "refinement_prompt", "last_refinement_at",
})

MEMORY_TYPES = ("core", "journal")
SESSION_STATUSES = ("active", "completed", "rolled_back", "abandoned")
AUDIT_OPERATIONS = ("update", "delete", "consolidate", "protect", "rollback", "complete")


def _utcnow() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def _utcnow_iso() -> str:
    """Return current UTC time as ISO string."""
    return _utcnow().isoformat()


class SQLiteManager:
    _ALLOWED_TABLES = frozenset({"memories", "refinement_sessions", "audit_entries", "agent_settings"})

    def __init__(self, db_path: str):
        self.db_path = db_path
        db_dir = os.path.dirname(db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        # Persistent connection with WAL mode.
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.execute("PRAGMA synchronous=FULL")
        self._conn.execute("PRAGMA temp_store=MEMORY")
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._init_db()

    def close(self) -> None:
        """Close the persistent connection for clean shutdown."""
        with self._lock:
            if self._conn:
                try:
                    self._conn.close()
                except sqlite3.Error:
                    logger.warning("Failed to close %s cleanly", self.db_path)
                self._conn = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"SQLiteManager(db_path={self.db_path!r})"

    def _init_db(self) -> None:
        with self._get_connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS memories (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    memory_type TEXT NOT NULL DEFAULT 'core' CHECK (memory_type IN ('core', 'journal')),
                    origin_at TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    token_estimate INTEGER NOT NULL DEFAULT 0,
                    protected INTEGER NOT NULL DEFAULT 0,
                    discarded_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_memories_owner_type ON memories(owner_id, memory_type);
                CREATE INDEX IF NOT EXISTS idx_memories_discarded ON memories(discarded_at);

                CREATE TABLE IF NOT EXISTS refinement_sessions (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active'
                        CHECK (status IN ('active', 'completed', 'rolled_back', 'abandoned')),
                    opened_at TEXT NOT NULL,
                    closed_at TEXT,
                    pre_mass INTEGER NOT NULL,
                    post_mass INTEGER,
                    operation_count INTEGER NOT NULL DEFAULT 0,
                    threshold REAL NOT NULL,
                    terminated_reason TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_sessions_owner ON refinement_sessions(owner_id, opened_at DESC);

                CREATE TABLE IF NOT EXISTS audit_entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    operation TEXT NOT NULL
                        CHECK (operation IN ('update', 'delete', 'consolidate', 'protect', 'rollback', 'complete')),
                    before TEXT DEFAULT '[]',
                    after TEXT DEFAULT '{}',
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_audit_session ON audit_entries(session_id, id);
                CREATE INDEX IF NOT EXISTS idx_audit_owner ON audit_entries(owner_id, id DESC);

                CREATE TABLE IF NOT EXISTS agent_settings (
                    owner_id TEXT PRIMARY KEY,
                    threshold REAL,
                    token_budget INTEGER,
                    refinement_prompt TEXT,
                    last_refinement_at TEXT,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                );
                """
            )
            self._ensure_schema(conn)

    @contextmanager
    def _get_connection(self):
        """Yield the persistent connection under the thread lock.

        Nested use joins the outermost transaction: only the outermost block
        commits, and an exception anywhere rolls back everything.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self._conn
                finally:
                    self._depth -= 1
                return
            self._depth = 1
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
            finally:
                self._depth = 0

    def transaction(self):
        """Public atomic unit spanning several manager calls."""
        return self._get_connection()

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        """Apply idempotent migrations."""
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT PRIMARY KEY,
                applied_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
            """
        )

        migrations: Dict[str, str] = {
            # One active session per owner is the refinement lease.
            "v1_001_session_lease": """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_one_active
                ON refinement_sessions(owner_id) WHERE status = 'active';
            """,
            "v1_002_append_only": """
                CREATE TRIGGER IF NOT EXISTS audit_entries_no_update
                BEFORE UPDATE ON audit_entries
                BEGIN
                    SELECT RAISE(ABORT, 'audit entries are append-only');
                END;
                CREATE TRIGGER IF NOT EXISTS audit_entries_no_delete
                BEFORE DELETE ON audit_entries
                BEGIN
                    SELECT RAISE(ABORT, 'audit entries are append-only');
                END;
                CREATE TRIGGER IF NOT EXISTS memories_no_purge
                BEFORE DELETE ON memories
                BEGIN
                    SELECT RAISE(ABORT, 'memory records are soft-deleted, never purged');
                END;
            """,
        }

        for version, ddl in migrations.items():
            if not self._is_migration_applied(conn, version):
                conn.executescript(ddl)
                conn.execute(
                    "INSERT OR IGNORE INTO schema_migrations (version) VALUES (?)",
                    (version,),
                )

        # Databases created before per-agent refinement instructions.
        self._migrate_add_column_conn(conn, "agent_settings", "refinement_prompt", "TEXT")

    def _migrate_add_column_conn(
        self,
        conn: sqlite3.Connection,
        table: str,
        column: str,
        col_type: str,
    ) -> None:
        """Add a column using an existing connection, if missing."""
        if table not in self._ALLOWED_TABLES:
            raise ValueError(f"Invalid table for migration: {table!r}")
        if not column.replace("_", "").isalnum():
            raise ValueError(f"Invalid column name: {column!r}")
        existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
        if column not in existing:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}")

    def _is_migration_applied(self, conn: sqlite3.Connection, version: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM schema_migrations WHERE version = ?",
            (version,),
        ).fetchone()
        return row is not None

    # =========================================================================
    # Memories
    # =========================================================================

    def add_memory(self, memory_data: Dict[str, Any]) -> int:
        now = _utcnow_iso()
        memory_type = memory_data.get("memory_type", "core")
        if memory_type not in MEMORY_TYPES:
            raise ValueError(f"Invalid memory_type: {memory_type!r}")

        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO memories (
                    owner_id, content, memory_type, origin_at,
                    created_at, updated_at, token_estimate, protected, discarded_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    memory_data["owner_id"],
                    memory_data.get("content", ""),
                    memory_type,
                    memory_data.get("origin_at") or now,
                    memory_data.get("created_at", now),
                    memory_data.get("updated_at", now),
                    int(memory_data.get("token_estimate", 0)),
                    1 if memory_data.get("protected", False) else 0,
                    memory_data.get("discarded_at"),
                ),
            )
            return int(cursor.lastrowid)

    def get_memory(self, memory_id: int, owner_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        query = "SELECT * FROM memories WHERE id = ?"
        params: List[Any] = [int(memory_id)]
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)

        with self._get_connection() as conn:
            row = conn.execute(query, params).fetchone()
            if row:
                return self._row_to_dict(row)
        return None

    def get_memories_bulk(
        self,
        memory_ids: Iterable[int],
        owner_id: Optional[str] = None,
    ) -> Dict[int, Dict[str, Any]]:
        """Fetch multiple memories by ID in a single query. Returns {id: memory_dict}."""
        ids = [int(i) for i in memory_ids]
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        query = f"SELECT * FROM memories WHERE id IN ({placeholders})"
        params: List[Any] = list(ids)
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)
        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return {int(row["id"]): self._row_to_dict(row) for row in rows}

    def get_all_memories(
        self,
        *,
        owner_id: str,
        memory_type: Optional[str] = "core",
        include_discarded: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        query = "SELECT * FROM memories WHERE owner_id = ?"
        params: List[Any] = [owner_id]
        if memory_type:
            query += " AND memory_type = ?"
            params.append(memory_type)
        if not include_discarded:
            query += " AND discarded_at IS NULL"
        query += " ORDER BY origin_at ASC, id ASC"
        if limit is not None and limit > 0:
            query += " LIMIT ?"
            params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_dict(row) for row in rows]

    def search_memories(
        self,
        *,
        owner_id: str,
        query: str,
        memory_type: str = "core",
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """Case-insensitive substring match over active records."""
        escaped = (
            query.replace("\\", "\\\\")
            .replace("%", "\\%")
            .replace("_", "\\_")
        )
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM memories
                WHERE owner_id = ?
                  AND memory_type = ?
                  AND discarded_at IS NULL
                  AND content LIKE ? ESCAPE '\\'
                ORDER BY origin_at ASC, id ASC
                LIMIT ?
                """,
                (owner_id, memory_type, f"%{escaped}%", int(limit)),
            ).fetchall()
            return [self._row_to_dict(row) for row in rows]

    def update_memory(self, memory_id: int, updates: Dict[str, Any]) -> bool:
        set_clauses = []
        params: List[Any] = []
        for key, value in updates.items():
            if key not in VALID_MEMORY_COLUMNS:
                raise ValueError(f"Invalid memory column: {key!r}")
            if key == "protected":
                value = 1 if value else 0
            set_clauses.append(f"{key} = ?")
            params.append(value)

        if "updated_at" not in updates:
            set_clauses.append("updated_at = ?")
            params.append(_utcnow_iso())
        params.append(int(memory_id))

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE memories SET {', '.join(set_clauses)} WHERE id = ?",
                params,
            )
            return cursor.rowcount > 0

    def sum_token_estimates(self, owner_id: str, memory_type: str = "core") -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT COALESCE(SUM(token_estimate), 0) AS mass
                FROM memories
                WHERE owner_id = ? AND memory_type = ? AND discarded_at IS NULL
                """,
                (owner_id, memory_type),
            ).fetchone()
            return int(row["mass"])

    def list_owner_ids(self) -> List[str]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT DISTINCT owner_id FROM memories ORDER BY owner_id"
            ).fetchall()
            return [row["owner_id"] for row in rows]

    def _row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        data["id"] = int(data["id"])
        data["protected"] = bool(data.get("protected", 0))
        return data

    # =========================================================================
    # Refinement sessions
    # =========================================================================

    def add_session(self, session_data: Dict[str, Any]) -> str:
        """Insert a new active session. Raises sqlite3.IntegrityError if the owner's lease is taken."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO refinement_sessions (
                    id, owner_id, status, opened_at, pre_mass, operation_count, threshold
                ) VALUES (?, ?, 'active', ?, ?, 0, ?)
                """,
                (
                    session_data["id"],
                    session_data["owner_id"],
                    session_data.get("opened_at", _utcnow_iso()),
                    int(session_data["pre_mass"]),
                    float(session_data["threshold"]),
                ),
            )
        return session_data["id"]

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM refinement_sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
            return dict(row) if row else None

    def get_active_session(self, owner_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM refinement_sessions WHERE owner_id = ? AND status = 'active'",
                (owner_id,),
            ).fetchone()
            return dict(row) if row else None

    def get_sessions(
        self,
        *,
        owner_id: Optional[str] = None,
        status: Optional[str] = None,
        opened_before: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        query = "SELECT * FROM refinement_sessions WHERE 1=1"
        params: List[Any] = []
        if owner_id:
            query += " AND owner_id = ?"
            params.append(owner_id)
        if status:
            query += " AND status = ?"
            params.append(status)
        if opened_before:
            query += " AND opened_at < ?"
            params.append(opened_before)
        query += " ORDER BY opened_at DESC"
        if limit is not None and limit > 0:
            query += " LIMIT ?"
            params.append(limit)
        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [dict(row) for row in rows]

    def update_session(self, session_id: str, updates: Dict[str, Any]) -> bool:
        set_clauses = []
        params: List[Any] = []
        for key, value in updates.items():
            if key not in VALID_SESSION_COLUMNS:
                raise ValueError(f"Invalid session column: {key!r}")
            if key == "status" and value not in SESSION_STATUSES:
                raise ValueError(f"Invalid session status: {value!r}")
            set_clauses.append(f"{key} = ?")
            params.append(value)
        if not set_clauses:
            return False
        params.append(session_id)
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE refinement_sessions SET {', '.join(set_clauses)} WHERE id = ?",
                params,
            )
            return cursor.rowcount > 0

    def increment_operation_count(self, session_id: str) -> int:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE refinement_sessions SET operation_count = operation_count + 1 WHERE id = ?",
                (session_id,),
            )
            row = conn.execute(
                "SELECT operation_count FROM refinement_sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
            return int(row["operation_count"]) if row else 0

    # =========================================================================
    # Audit ledger
    # =========================================================================

    def add_audit_entry(
        self,
        *,
        session_id: str,
        owner_id: str,
        operation: str,
        before: Any,
        after: Any,
    ) -> Dict[str, Any]:
        if operation not in AUDIT_OPERATIONS:
            raise ValueError(f"Invalid audit operation: {operation!r}")
        now = _utcnow_iso()
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO audit_entries (session_id, owner_id, operation, before, after, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    owner_id,
                    operation,
                    json.dumps(before if before is not None else [], default=str),
                    json.dumps(after if after is not None else {}, default=str),
                    now,
                ),
            )
            row = conn.execute(
                "SELECT * FROM audit_entries WHERE id = ?",
                (cursor.lastrowid,),
            ).fetchone()
            return self._audit_row_to_dict(row)

    def get_audit_entries(
        self,
        session_id: str,
        *,
        operation: Optional[str] = None,
        newest_first: bool = False,
    ) -> List[Dict[str, Any]]:
        query = "SELECT * FROM audit_entries WHERE session_id = ?"
        params: List[Any] = [session_id]
        if operation:
            query += " AND operation = ?"
            params.append(operation)
        query += " ORDER BY id DESC" if newest_first else " ORDER BY id ASC"
        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._audit_row_to_dict(row) for row in rows]

    def get_audit_entries_for_owner(self, owner_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM audit_entries WHERE owner_id = ? ORDER BY id DESC LIMIT ?",
                (owner_id, int(limit)),
            ).fetchall()
            return [self._audit_row_to_dict(row) for row in rows]

    def _audit_row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        data["before"] = self._parse_json_value(data.get("before"), [])
        data["after"] = self._parse_json_value(data.get("after"), {})
        return data

    # =========================================================================
    # Per-agent settings
    # =========================================================================

    def get_agent_settings(self, owner_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM agent_settings WHERE owner_id = ?",
                (owner_id,),
            ).fetchone()
            return dict(row) if row else None

    def upsert_agent_settings(self, owner_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        for key in updates:
            if key not in VALID_SETTINGS_COLUMNS:
                raise ValueError(f"Invalid settings column: {key!r}")
        now = _utcnow_iso()
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO agent_settings (owner_id, updated_at) VALUES (?, ?)",
                (owner_id, now),
            )
            if updates:
                set_clauses = [f"{key} = ?" for key in updates]
                params: List[Any] = list(updates.values())
                conn.execute(
                    f"UPDATE agent_settings SET {', '.join(set_clauses)}, updated_at = ? WHERE owner_id = ?",
                    params + [now, owner_id],
                )
            row = conn.execute(
                "SELECT * FROM agent_settings WHERE owner_id = ?",
                (owner_id,),
            ).fetchone()
            return dict(row)

    # =========================================================================
    # Utilities
    # =========================================================================

    def get_stats(self, owner_id: Optional[str] = None) -> Dict[str, Any]:
        where = "WHERE owner_id = ?" if owner_id else ""
        params: List[Any] = [owner_id] if owner_id else []
        with self._get_connection() as conn:
            memory_rows = conn.execute(
                f"""
                SELECT memory_type,
                       SUM(CASE WHEN discarded_at IS NULL THEN 1 ELSE 0 END) AS active,
                       SUM(CASE WHEN discarded_at IS NOT NULL THEN 1 ELSE 0 END) AS discarded,
                       SUM(CASE WHEN discarded_at IS NULL AND protected = 1 THEN 1 ELSE 0 END) AS protected,
                       SUM(CASE WHEN discarded_at IS NULL THEN token_estimate ELSE 0 END) AS mass
                FROM memories {where}
                GROUP BY memory_type
                """,
                params,
            ).fetchall()
            session_rows = conn.execute(
                f"SELECT status, COUNT(*) AS n FROM refinement_sessions {where} GROUP BY status",
                params,
            ).fetchall()
        return {
            "memories": {
                row["memory_type"]: {
                    "active": int(row["active"] or 0),
                    "discarded": int(row["discarded"] or 0),
                    "protected": int(row["protected"] or 0),
                    "mass": int(row["mass"] or 0),
                }
                for row in memory_rows
            },
            "sessions": {row["status"]: int(row["n"]) for row in session_rows},
        }

    @staticmethod
    def _parse_json_value(value: Any, default: Any) -> Any:
        if value is None:
            return default
        if isinstance(value, (dict, list)):
            return value
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            return default
