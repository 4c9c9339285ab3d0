"""
Audit Trail for Worker Decisions.

- SQLite storage via aiosqlite (.hive-mind/leasebot.db by default)
- One row per decision / dispatch / failure event
- PII redaction of free-text details before they are written
- Query API used by tests and operator tooling
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
import json
import re
import asyncio
import aiosqlite
from typing import Any, Dict, List, Optional, Tuple

PROJECT_ROOT = Path(__file__).parent.parent
HIVE_MIND_DIR = PROJECT_ROOT / ".hive-mind"
DEFAULT_DB_PATH = HIVE_MIND_DIR / "leasebot.db"


# ============================================================================
# DETAIL REDACTION
# ============================================================================

SENSITIVE_MASK = "[SENSITIVE_REDACTED]"
TRUNCATED_MARK = "[TRUNCATED]"
MAX_DETAIL_DEPTH = 10

# (label, pattern, replacement); applied in order to every string in details
TEXT_RULES: Tuple[Tuple[str, "re.Pattern[str]", str], ...] = (
    ("email", re.compile(r"\b[\w.%+-]+@[\w.-]+\.[A-Za-z]{2,}\b"), "[EMAIL_REDACTED]"),
    ("card", re.compile(r"\b\d{4}(?:[-.\s]?\d{4}){3}\b"), "[CC_REDACTED]"),
    ("ssn", re.compile(r"\b\d{3}[-.\s]?\d{2}[-.\s]?\d{4}\b"), "[SSN_REDACTED]"),
    (
        "api_key",
        re.compile(r"((?:api[_-]?key|token|secret|password)[\"']?\s*[:=]\s*[\"']?)[\w-]{8,}", re.IGNORECASE),
        r"\1[API_KEY_REDACTED]",
    ),
)

# Substrings of a detail key that mark its whole value as secret
SENSITIVE_KEY_PARTS = frozenset({
    "password", "secret", "token", "api_key", "apikey", "authorization",
    "credential", "storage_state", "cookie",
})


class DetailRedactor:
    """
    Scrubs audit details before they are stored.

    Strings lose emails, card numbers, SSNs and key=value secrets. Keys that
    look secret (passwordRef, storage_state, Auth-Token, ...) have their value
    replaced outright.
    """

    @staticmethod
    def scrub_text(text: Any) -> str:
        result = str(text)
        for _label, pattern, replacement in TEXT_RULES:
            result = pattern.sub(replacement, result)
        return result

    @staticmethod
    def is_sensitive_key(key: Any) -> bool:
        normalized = str(key).lower().replace("-", "_")
        return any(part in normalized for part in SENSITIVE_KEY_PARTS)

    @classmethod
    def scrub(cls, value: Any, depth: int = 0) -> Any:
        if depth > MAX_DETAIL_DEPTH:
            return TRUNCATED_MARK
        if isinstance(value, dict):
            return {
                key: SENSITIVE_MASK if cls.is_sensitive_key(key) else cls.scrub(item, depth + 1)
                for key, item in value.items()
            }
        if isinstance(value, (list, tuple)):
            return [cls.scrub(item, depth + 1) for item in value]
        if isinstance(value, str):
            return cls.scrub_text(value)
        return value


@dataclass
class AuditEntry:
    """A single audit log row."""
    timestamp: str
    actor_type: str
    entity_type: str
    entity_id: str
    action: str
    details: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None


class AuditTrail:
    """Append-only audit log stored in SQLite."""

    def __init__(self, db_path: Optional[Path] = None, redact_pii: bool = True):
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self.redact_pii = redact_pii
        self._write_lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        """Create tables on first use."""
        if self._initialized:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(str(self.db_path)) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    actor_type TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    details TEXT NOT NULL
                )
            """)
            await db.execute("CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_log(entity_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_log(action)")
            await db.commit()

        self._initialized = True

    async def record_log(
        self,
        actor_type: str,
        entity_type: str,
        entity_id: Any,
        action: str,
        details: Optional[Dict[str, Any]] = None
    ) -> int:
        """
        Append one audit row.

        Returns:
            The row id of the new entry.
        """
        await self.initialize()

        payload = details or {}
        if self.redact_pii:
            payload = DetailRedactor.scrub(payload)

        entry = AuditEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            actor_type=actor_type,
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            details=payload
        )

        async with self._write_lock:
            async with aiosqlite.connect(str(self.db_path)) as db:
                cursor = await db.execute(
                    """
                    INSERT INTO audit_log (timestamp, actor_type, entity_type, entity_id, action, details)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.timestamp,
                        entry.actor_type,
                        entry.entity_type,
                        entry.entity_id,
                        entry.action,
                        json.dumps(entry.details, default=str)
                    )
                )
                await db.commit()
                return cursor.lastrowid

    async def get_logs(
        self,
        entity_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 500
    ) -> List[Dict[str, Any]]:
        """Query audit rows, oldest first."""
        await self.initialize()

        conditions = []
        params: List[Any] = []
        if entity_id is not None:
            conditions.append("entity_id = ?")
            params.append(str(entity_id))
        if action:
            conditions.append("action = ?")
            params.append(action)

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        params.append(limit)

        async with aiosqlite.connect(str(self.db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                f"SELECT * FROM audit_log WHERE {where_clause} ORDER BY id ASC LIMIT ?",
                params
            )
            rows = await cursor.fetchall()

        return [self._row_to_dict(row) for row in rows]

    async def count_by_action(self) -> Dict[str, int]:
        await self.initialize()
        async with aiosqlite.connect(str(self.db_path)) as db:
            cursor = await db.execute("SELECT action, COUNT(*) FROM audit_log GROUP BY action")
            rows = await cursor.fetchall()
        return {action: count for action, count in rows}

    def _row_to_dict(self, row: aiosqlite.Row) -> Dict[str, Any]:
        result = dict(row)
        result["details"] = json.loads(result["details"]) if result.get("details") else {}
        return result
