"""
Dispatch Ledger.

Durable idempotency guard for outbound replies. Each inbound message owns at
most one dispatch attempt row; a dispatch key that is already in progress or
completed is never sent again and its stored delivery receipt is replayed.

States: new -> in_progress -> completed | failed | dlq
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import aiosqlite

logger = logging.getLogger("dispatch_ledger")

DLQ_ESCALATION_REASON = "escalate_dispatch_retry_exhausted"
DEFAULT_STAGE = "dispatch_outbound_message"


class DispatchState(Enum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    DLQ = "dlq"


BLOCKING_STATES = (DispatchState.IN_PROGRESS.value, DispatchState.COMPLETED.value)


@dataclass
class DispatchGuard:
    """Answer from begin(): whether the caller may perform the external send."""
    should_dispatch: bool
    duplicate: bool
    state: str
    delivery: Optional[Dict[str, Any]] = None


@dataclass
class DispatchAttempt:
    message_id: str
    dispatch_key: str
    state: str
    platform: str = "unknown"
    stage: str = DEFAULT_STAGE
    attempts: int = 0
    status: Optional[str] = None
    delivery: Optional[Dict[str, Any]] = None
    failed_stage: Optional[str] = None
    last_error: Optional[str] = None
    retry: Dict[str, Any] = field(default_factory=dict)
    escalation_reason: Optional[str] = None
    last_attempt_at: Optional[str] = None
    completed_at: Optional[str] = None
    failed_at: Optional[str] = None
    dlq_queued_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class DispatchLedger:
    """dispatch_attempts table keyed by message id."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._write_lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(str(self.db_path)) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS dispatch_attempts (
                    message_id TEXT PRIMARY KEY,
                    dispatch_key TEXT NOT NULL,
                    state TEXT NOT NULL,
                    platform TEXT NOT NULL,
                    stage TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    status TEXT,
                    delivery TEXT,
                    failed_stage TEXT,
                    last_error TEXT,
                    retry TEXT,
                    escalation_reason TEXT,
                    last_attempt_at TEXT,
                    completed_at TEXT,
                    failed_at TEXT,
                    dlq_queued_at TEXT
                )
            """)
            await db.execute("CREATE INDEX IF NOT EXISTS idx_dispatch_state ON dispatch_attempts(state)")
            await db.commit()
        self._initialized = True

    async def begin(
        self,
        message_id: str,
        dispatch_key: str,
        platform: Optional[str] = None,
        stage: Optional[str] = None,
        now: Optional[str] = None,
    ) -> DispatchGuard:
        """
        Start an attempt unless the same key is already in progress or completed.

        A different key (the reply changed) or a failed/dlq state starts a new
        attempt and bumps the attempt counter.
        """
        await self.initialize()
        timestamp = now or _now_iso()

        async with self._write_lock:
            async with aiosqlite.connect(str(self.db_path)) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("BEGIN IMMEDIATE")
                cursor = await db.execute(
                    "SELECT * FROM dispatch_attempts WHERE message_id = ?", (str(message_id),)
                )
                row = await cursor.fetchone()

                if row is not None and row["dispatch_key"] == dispatch_key and row["state"] in BLOCKING_STATES:
                    await db.rollback()
                    logger.info(
                        "Dispatch for message %s suppressed (key already %s)", message_id, row["state"]
                    )
                    return DispatchGuard(
                        should_dispatch=False,
                        duplicate=True,
                        state=row["state"] or DispatchState.COMPLETED.value,
                        delivery=json.loads(row["delivery"]) if row["delivery"] else None,
                    )

                attempts = (row["attempts"] if row is not None else 0) + 1
                await db.execute(
                    """
                    INSERT INTO dispatch_attempts (
                        message_id, dispatch_key, state, platform, stage, attempts, last_attempt_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(message_id) DO UPDATE SET
                        dispatch_key = excluded.dispatch_key,
                        state = excluded.state,
                        platform = excluded.platform,
                        stage = excluded.stage,
                        attempts = excluded.attempts,
                        last_attempt_at = excluded.last_attempt_at
                    """,
                    (
                        str(message_id),
                        dispatch_key,
                        DispatchState.IN_PROGRESS.value,
                        platform or "unknown",
                        stage or DEFAULT_STAGE,
                        attempts,
                        timestamp,
                    ),
                )
                await db.commit()

        return DispatchGuard(
            should_dispatch=True,
            duplicate=False,
            state=DispatchState.IN_PROGRESS.value,
            delivery=None,
        )

    async def complete(
        self,
        message_id: str,
        dispatch_key: str,
        status: str,
        delivery: Optional[Dict[str, Any]] = None,
        now: Optional[str] = None,
    ) -> None:
        """Mark the attempt completed; ignored when the stored key differs."""
        await self.initialize()
        async with self._write_lock:
            async with aiosqlite.connect(str(self.db_path)) as db:
                await db.execute(
                    """
                    UPDATE dispatch_attempts
                       SET state = ?, status = ?, completed_at = ?, delivery = ?
                     WHERE message_id = ? AND dispatch_key = ?
                    """,
                    (
                        DispatchState.COMPLETED.value,
                        status,
                        now or _now_iso(),
                        json.dumps(delivery, default=str) if delivery is not None else None,
                        str(message_id),
                        dispatch_key,
                    ),
                )
                await db.commit()

    async def fail(
        self,
        message_id: str,
        stage: Optional[str] = None,
        error: Optional[str] = None,
        now: Optional[str] = None,
        retry: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Record a failed attempt.

        Exhausted retries move the attempt to the dead-letter state with an
        escalation reason. Returns the new state.
        """
        await self.initialize()
        retry = retry or {}
        timestamp = now or _now_iso()
        state = DispatchState.DLQ if retry.get("retry_exhausted") is True else DispatchState.FAILED
        is_dlq = state == DispatchState.DLQ

        async with self._write_lock:
            async with aiosqlite.connect(str(self.db_path)) as db:
                await db.execute(
                    """
                    UPDATE dispatch_attempts
                       SET state = ?, failed_stage = ?, last_error = ?, failed_at = ?, retry = ?,
                           dlq_queued_at = ?, escalation_reason = ?
                     WHERE message_id = ?
                    """,
                    (
                        state.value,
                        stage or DEFAULT_STAGE,
                        error or "dispatch_failed",
                        timestamp,
                        json.dumps(retry, default=str),
                        timestamp if is_dlq else None,
                        DLQ_ESCALATION_REASON if is_dlq else None,
                        str(message_id),
                    ),
                )
                await db.commit()

        if is_dlq:
            logger.warning("Dispatch for message %s moved to DLQ at stage %s", message_id, stage)
        return state.value

    async def get(self, message_id: str) -> Optional[DispatchAttempt]:
        await self.initialize()
        async with aiosqlite.connect(str(self.db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM dispatch_attempts WHERE message_id = ?", (str(message_id),)
            )
            row = await cursor.fetchone()
        if row is None:
            return None

        data = dict(row)
        data["delivery"] = json.loads(data["delivery"]) if data.get("delivery") else None
        data["retry"] = json.loads(data["retry"]) if data.get("retry") else {}
        return DispatchAttempt(**data)
