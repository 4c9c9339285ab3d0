#!/usr/bin/env python3
"""
SQLite Queue Store
==================

Durable store behind the decision worker: platform accounts, units,
conversations, messages, automation rules, templates, availability slots
and conversation workflow state.

- Pending inbound messages are claimed with a worker id and a lease TTL
  inside BEGIN IMMEDIATE, so concurrent workers never double-claim
- Audit rows go through AuditTrail (PII-redacted details)
- Dispatch idempotency goes through DispatchLedger
- Outbound delivery and inbox ingestion go through the ConnectorRegistry

Usage:
    from execution.queue_store import SQLiteQueueStore

    store = SQLiteQueueStore(Path(".hive-mind/leasebot.db"))
    messages = await store.fetch_pending_messages(limit=20, worker_id="worker-1")
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import aiosqlite

from core.audit_trail import AuditTrail
from core.config import DEFAULT_DB_PATH
from core.dispatch_ledger import DispatchGuard, DispatchLedger
from core.errors import outbound_body_required, outbound_thread_required, unsupported_platform
from core.reply_pipeline import AutomationRule, ReplyTemplate

logger = logging.getLogger("queue_store")

DEFAULT_CLAIM_TTL_MS = 60_000
MIN_CLAIM_TTL_MS = 1_000

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS platform_accounts (
        id TEXT PRIMARY KEY,
        platform TEXT NOT NULL,
        account_external_id TEXT,
        credentials TEXT NOT NULL DEFAULT '{}',
        is_active INTEGER NOT NULL DEFAULT 1,
        send_mode TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS units (
        id TEXT PRIMARY KEY,
        property_name TEXT,
        unit_number TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        platform_account_id TEXT NOT NULL REFERENCES platform_accounts(id),
        external_thread_id TEXT NOT NULL,
        unit_id TEXT REFERENCES units(id),
        assigned_agent_id TEXT,
        lead_name TEXT,
        lead_contact TEXT NOT NULL DEFAULT '{}',
        status TEXT NOT NULL DEFAULT 'open',
        last_message_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (platform_account_id, external_thread_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL REFERENCES conversations(id),
        sender_type TEXT NOT NULL,
        sender_agent_id TEXT,
        external_message_id TEXT,
        direction TEXT NOT NULL,
        channel TEXT NOT NULL DEFAULT 'in_app',
        body TEXT NOT NULL DEFAULT '',
        metadata TEXT NOT NULL DEFAULT '{}',
        sent_at TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (conversation_id, external_message_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS automation_rules (
        id TEXT PRIMARY KEY,
        platform_account_id TEXT NOT NULL,
        trigger_type TEXT NOT NULL DEFAULT 'message_received',
        action_type TEXT NOT NULL DEFAULT 'send_template',
        is_enabled INTEGER NOT NULL DEFAULT 0,
        action_config TEXT NOT NULL DEFAULT '{}',
        conditions TEXT NOT NULL DEFAULT '{}',
        priority INTEGER NOT NULL DEFAULT 100,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS templates (
        id TEXT PRIMARY KEY,
        platform_account_id TEXT,
        name TEXT NOT NULL,
        body TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS availability_slots (
        id TEXT PRIMARY KEY,
        unit_id TEXT NOT NULL REFERENCES units(id),
        starts_at TEXT NOT NULL,
        ends_at TEXT NOT NULL,
        timezone TEXT NOT NULL DEFAULT 'UTC',
        status TEXT NOT NULL DEFAULT 'open',
        agent_id TEXT,
        agent_name TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation_workflow (
        conversation_id TEXT PRIMARY KEY REFERENCES conversations(id),
        workflow_outcome TEXT,
        showing_state TEXT,
        follow_up_stage TEXT,
        actor_type TEXT,
        actor_id TEXT,
        source TEXT,
        message_id TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_direction_sent ON messages(direction, sent_at)",
    "CREATE INDEX IF NOT EXISTS idx_slots_unit_start ON availability_slots(unit_id, starts_at)",
    "CREATE INDEX IF NOT EXISTS idx_rules_account ON automation_rules(platform_account_id, priority)",
)

PENDING_MESSAGES_QUERY = """
    SELECT m.id,
           m.conversation_id,
           m.body,
           m.metadata,
           m.sent_at,
           c.platform_account_id,
           pa.platform,
           pa.credentials AS platform_credentials,
           pa.is_active AS platform_is_active,
           pa.send_mode AS platform_send_mode_override,
           COALESCE(pa.send_mode, ?) AS platform_effective_send_mode,
           c.assigned_agent_id,
           c.external_thread_id,
           c.lead_name,
           u.id AS unit_id,
           u.property_name,
           u.unit_number,
           EXISTS (
               SELECT 1
                 FROM messages mo
                WHERE mo.conversation_id = m.conversation_id
                  AND mo.direction = 'outbound'
                  AND mo.sent_at < m.sent_at
           ) AS has_recent_outbound,
           (
               SELECT json_extract(mo.metadata, '$.slot_confirmation_pending')
                 FROM messages mo
                WHERE mo.conversation_id = m.conversation_id
                  AND mo.direction = 'outbound'
                ORDER BY mo.sent_at DESC, mo.created_at DESC
                LIMIT 1
           ) AS pending_slot_confirmation
      FROM messages m
      JOIN conversations c ON c.id = m.conversation_id
      JOIN platform_accounts pa ON pa.id = c.platform_account_id
 LEFT JOIN units u ON u.id = c.unit_id
     WHERE m.id IN ({placeholders})
  ORDER BY m.sent_at ASC, m.created_at ASC
"""


def _iso(value: Optional[datetime] = None) -> str:
    moment = value or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


def _loads(value: Optional[str], fallback: Any = None) -> Any:
    if not value:
        return {} if fallback is None else fallback
    return json.loads(value)


def _dumps(value: Any) -> str:
    return json.dumps(value if value is not None else {}, default=str)


class SQLiteQueueStore:
    """
    Queue adapter the decision worker runs against.

    All writes share one lock per store instance; cross-process safety comes
    from SQLite's BEGIN IMMEDIATE.
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        registry=None,
        default_send_mode: str = "draft_only",
        audit: Optional[AuditTrail] = None,
        ledger: Optional[DispatchLedger] = None,
    ):
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self.default_send_mode = default_send_mode
        self._registry = registry
        self.audit = audit or AuditTrail(self.db_path)
        self.ledger = ledger or DispatchLedger(self.db_path)
        self._write_lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(str(self.db_path)) as db:
            for statement in SCHEMA:
                await db.execute(statement)
            await db.commit()
        await self.audit.initialize()
        await self.ledger.initialize()
        self._initialized = True
        logger.info("Queue store ready at %s", self.db_path)

    @property
    def registry(self):
        if self._registry is None:
            from execution.connector_registry import ConnectorRegistry
            self._registry = ConnectorRegistry()
        return self._registry

    # =========================================================================
    # SEEDING
    # =========================================================================

    async def upsert_platform_account(
        self,
        platform: str,
        account_id: Optional[str] = None,
        account_external_id: Optional[str] = None,
        credentials: Optional[Dict[str, Any]] = None,
        is_active: bool = True,
        send_mode: Optional[str] = None,
    ) -> str:
        await self.initialize()
        account_id = account_id or _new_id()
        async with self._write_lock:
            async with aiosqlite.connect(str(self.db_path)) as db:
                await db.execute(
                    """
                    INSERT INTO platform_accounts (id, platform, account_external_id, credentials, is_active, send_mode, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        platform = excluded.platform,
                        account_external_id = excluded.account_external_id,
                        credentials = excluded.credentials,
                        is_active = excluded.is_active,
                        send_mode = excluded.send_mode
                    """,
                    (account_id, platform, account_external_id, _dumps(credentials), int(is_active), send_mode, _iso()),
                )
                await db.commit()
        return account_id

    async def add_unit(self, property_name: str, unit_number: str, unit_id: Optional[str] = None) -> str:
        await self.initialize()
        unit_id = unit_id or _new_id()
        async with self._write_lock:
            async with aiosqlite.connect(str(self.db_path)) as db:
                await db.execute(
                    "INSERT INTO units (id, property_name, unit_number) VALUES (?, ?, ?)",
                    (unit_id, property_name, unit_number),
                )
                await db.commit()
        return unit_id

    async def add_availability_slot(
        self,
        unit_id: str,
        starts_at: str,
        ends_at: str,
        tz_name: str = "UTC",
        agent_id: Optional[str] = None,
        agent_name: Optional[str] = None,
        status: str = "open",
    ) -> str:
        await self.initialize()
        slot_id = _new_id()
        async with self._write_lock:
            async with aiosqlite.connect(str(self.db_path)) as db:
                await db.execute(
                    """
                    INSERT INTO availability_slots (id, unit_id, starts_at, ends_at, timezone, status, agent_id, agent_name)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (slot_id, unit_id, starts_at, ends_at, tz_name, status, agent_id, agent_name),
                )
                await db.commit()
        return slot_id

    async def add_automation_rule(
        self,
        platform_account_id: str,
        intent: str,
        template_name: str,
        enabled: bool = True,
        priority: int = 100,
    ) -> str:
        await self.initialize()
        rule_id = _new_id()
        async with self._write_lock:
            async with aiosqlite.connect(str(self.db_path)) as db:
                await db.execute(
                    """
                    INSERT INTO automation_rules (id, platform_account_id, is_enabled, action_config, conditions, priority, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        rule_id,
                        platform_account_id,
                        int(enabled),
                        _dumps({"template": template_name}),
                        _dumps({"intent": intent}),
                        priority,
                        _iso(),
                    ),
                )
                await db.commit()
        return rule_id

    async def add_template(
        self,
        name: str,
        body: str,
        platform_account_id: Optional[str] = None,
        is_active: bool = True,
    ) -> str:
        await self.initialize()
        template_id = _new_id()
        async with self._write_lock:
            async with aiosqlite.connect(str(self.db_path)) as db:
                await db.execute(
                    """
                    INSERT INTO templates (id, platform_account_id, name, body, is_active, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (template_id, platform_account_id, name, body, int(is_active), _iso()),
                )
                await db.commit()
        return template_id

    async def upsert_conversation(
        self,
        platform_account_id: str,
        external_thread_id: str,
        lead_name: Optional[str] = None,
        lead_contact: Optional[Dict[str, Any]] = None,
        last_message_at: Optional[str] = None,
        unit_id: Optional[str] = None,
        assigned_agent_id: Optional[str] = None,
    ) -> str:
        """Insert or refresh the conversation for (account, thread); returns its id."""
        await self.initialize()
        now = _iso()
        async with self._write_lock:
            async with aiosqlite.connect(str(self.db_path)) as db:
                await db.execute(
                    """
                    INSERT INTO conversations (
                        id, platform_account_id, external_thread_id, unit_id, assigned_agent_id,
                        lead_name, lead_contact, last_message_at, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(platform_account_id, external_thread_id) DO UPDATE SET
                        lead_name = COALESCE(excluded.lead_name, conversations.lead_name),
                        lead_contact = COALESCE(excluded.lead_contact, conversations.lead_contact),
                        unit_id = COALESCE(excluded.unit_id, conversations.unit_id),
                        assigned_agent_id = COALESCE(excluded.assigned_agent_id, conversations.assigned_agent_id),
                        last_message_at = COALESCE(excluded.last_message_at, conversations.last_message_at),
                        updated_at = excluded.updated_at
                    """,
                    (
                        _new_id(),
                        platform_account_id,
                        external_thread_id,
                        unit_id,
                        assigned_agent_id,
                        lead_name,
                        _dumps(lead_contact),
                        last_message_at,
                        now,
                        now,
                    ),
                )
                cursor = await db.execute(
                    "SELECT id FROM conversations WHERE platform_account_id = ? AND external_thread_id = ?",
                    (platform_account_id, external_thread_id),
                )
                row = await cursor.fetchone()
                await db.commit()
        return row[0]

    async def insert_message(
        self,
        conversation_id: str,
        direction: str,
        body: str,
        sent_at: Optional[str] = None,
        external_message_id: Optional[str] = None,
        channel: str = "in_app",
        metadata: Optional[Dict[str, Any]] = None,
        sender_type: Optional[str] = None,
        sender_agent_id: Optional[str] = None,
    ) -> Optional[str]:
        """Insert-or-ignore on (conversation_id, external_message_id). Returns the new id, or None."""
        await self.initialize()
        message_id = _new_id()
        async with self._write_lock:
            async with aiosqlite.connect(str(self.db_path)) as db:
                cursor = await db.execute(
                    """
                    INSERT OR IGNORE INTO messages (
                        id, conversation_id, sender_type, sender_agent_id, external_message_id,
                        direction, channel, body, metadata, sent_at, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message_id,
                        conversation_id,
                        sender_type or ("lead" if direction == "inbound" else "agent"),
                        sender_agent_id,
                        external_message_id,
                        direction,
                        channel,
                        body,
                        _dumps(metadata),
                        sent_at or _iso(),
                        _iso(),
                    ),
                )
                inserted = cursor.rowcount > 0
                if inserted and direction == "outbound":
                    await db.execute(
                        "UPDATE conversations SET last_message_at = ?, updated_at = ? WHERE id = ?",
                        (_iso(), _iso(), conversation_id),
                    )
                await db.commit()
        return message_id if inserted else None

    async def get_message(self, message_id: str) -> Optional[Dict[str, Any]]:
        await self.initialize()
        async with aiosqlite.connect(str(self.db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM messages WHERE id = ?", (message_id,))
            row = await cursor.fetchone()
        if row is None:
            return None
        data = dict(row)
        data["metadata"] = _loads(data.get("metadata"))
        return data

    async def fetch_conversation_recent_messages(self, conversation_id: str, limit: int = 12) -> List[Dict[str, Any]]:
        """Latest messages of a conversation, oldest first, for classifier context."""
        await self.initialize()
        async with aiosqlite.connect(str(self.db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT direction, body, sent_at
                  FROM messages
                 WHERE conversation_id = ?
                 ORDER BY sent_at DESC, created_at DESC
                 LIMIT ?
                """,
                (conversation_id, int(limit)),
            )
            rows = await cursor.fetchall()
        return [dict(row) for row in reversed(rows)]

    async def list_messages(self, conversation_id: str, direction: Optional[str] = None) -> List[Dict[str, Any]]:
        await self.initialize()
        query = "SELECT * FROM messages WHERE conversation_id = ?"
        params: List[Any] = [conversation_id]
        if direction:
            query += " AND direction = ?"
            params.append(direction)
        query += " ORDER BY sent_at ASC, created_at ASC"

        async with aiosqlite.connect(str(self.db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()

        results = []
        for row in rows:
            data = dict(row)
            data["metadata"] = _loads(data.get("metadata"))
            results.append(data)
        return results

    # =========================================================================
    # WORKER QUEUE
    # =========================================================================

    async def fetch_pending_messages(
        self,
        limit: int = 20,
        now: Optional[datetime] = None,
        worker_id: Optional[str] = None,
        claim_ttl_ms: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Claim up to `limit` unprocessed inbound messages, oldest first.

        A message is claimable when it has no ai_processed_at and its claim is
        absent or expired. The claim is written into the message metadata.
        """
        await self.initialize()
        claimed_at = _iso(now)
        ttl_ms = max(int(claim_ttl_ms or DEFAULT_CLAIM_TTL_MS), MIN_CLAIM_TTL_MS)
        claim_expires_at = _iso(datetime.fromisoformat(claimed_at) + timedelta(milliseconds=ttl_ms))
        claim = {
            "worker_id": worker_id or "worker-unknown",
            "claimed_at": claimed_at,
            "claim_expires_at": claim_expires_at,
        }

        async with self._write_lock:
            async with aiosqlite.connect(str(self.db_path)) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("BEGIN IMMEDIATE")
                try:
                    cursor = await db.execute(
                        """
                        SELECT m.id
                          FROM messages m
                         WHERE m.direction = 'inbound'
                           AND json_extract(m.metadata, '$.ai_processed_at') IS NULL
                           AND COALESCE(json_extract(m.metadata, '$.worker_claim.claim_expires_at'), '') <= ?
                         ORDER BY m.sent_at ASC, m.created_at ASC
                         LIMIT ?
                        """,
                        (claimed_at, int(limit)),
                    )
                    ids = [row["id"] for row in await cursor.fetchall()]
                    if not ids:
                        await db.rollback()
                        return []

                    placeholders = ", ".join("?" for _ in ids)
                    await db.execute(
                        f"""
                        UPDATE messages
                           SET metadata = json_set(COALESCE(metadata, '{{}}'), '$.worker_claim', json(?))
                         WHERE id IN ({placeholders})
                        """,
                        [json.dumps(claim), *ids],
                    )
                    cursor = await db.execute(
                        PENDING_MESSAGES_QUERY.format(placeholders=placeholders),
                        [self.default_send_mode, *ids],
                    )
                    rows = await cursor.fetchall()
                    await db.commit()
                except Exception:
                    await db.rollback()
                    raise

        logger.info("Claimed %s pending messages for %s", len(rows), claim["worker_id"])
        return [self._pending_row_to_message(row) for row in rows]

    def _pending_row_to_message(self, row: aiosqlite.Row) -> Dict[str, Any]:
        pending_slot = row["pending_slot_confirmation"]
        return {
            "id": row["id"],
            "conversation_id": row["conversation_id"],
            "body": row["body"],
            "metadata": _loads(row["metadata"]),
            "sent_at": row["sent_at"],
            "platform_account_id": row["platform_account_id"],
            "platform": row["platform"],
            "platform_credentials": _loads(row["platform_credentials"]),
            "platform_policy": {
                "is_active": row["platform_is_active"] != 0,
                "send_mode": row["platform_effective_send_mode"],
                "send_mode_override": row["platform_send_mode_override"],
                "global_default_send_mode": self.default_send_mode,
            },
            "assigned_agent_id": row["assigned_agent_id"],
            "external_thread_id": row["external_thread_id"],
            "lead_name": row["lead_name"],
            "unit_id": row["unit_id"],
            "property_name": row["property_name"],
            "unit_number": row["unit_number"],
            "has_recent_outbound": bool(row["has_recent_outbound"]),
            "pending_slot_confirmation": json.loads(pending_slot) if pending_slot else None,
        }

    async def fetch_slot_options(self, unit_id: str, limit: int = 3, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Open future slots for a unit, earliest first."""
        await self.initialize()
        async with aiosqlite.connect(str(self.db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT starts_at, ends_at, timezone, agent_id, agent_name
                  FROM availability_slots
                 WHERE unit_id = ?
                   AND status = 'open'
                   AND starts_at >= ?
                 ORDER BY starts_at ASC
                 LIMIT ?
                """,
                (unit_id, _iso(now), int(limit)),
            )
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def _query_rule(self, platform_account_id: str, intent: Optional[str]) -> Optional[AutomationRule]:
        if not intent:
            return None
        async with aiosqlite.connect(str(self.db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT id, is_enabled, action_config, conditions
                  FROM automation_rules
                 WHERE platform_account_id = ?
                   AND trigger_type = 'message_received'
                   AND action_type = 'send_template'
                   AND COALESCE(json_extract(conditions, '$.intent'), '') = ?
                 ORDER BY priority ASC, created_at ASC
                 LIMIT 1
                """,
                (platform_account_id, intent),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return AutomationRule(
            id=row["id"],
            enabled=bool(row["is_enabled"]),
            action_config=_loads(row["action_config"]),
            conditions=_loads(row["conditions"]),
        )

    async def find_rule(
        self,
        platform_account_id: str,
        intent: Optional[str],
        fallback_intent: Optional[str] = None,
    ) -> Optional[AutomationRule]:
        """Rule for the intent, else for the fallback intent."""
        await self.initialize()
        rule = await self._query_rule(platform_account_id, intent)
        if rule is not None:
            return rule
        if fallback_intent and fallback_intent != intent:
            return await self._query_rule(platform_account_id, fallback_intent)
        return None

    async def find_template(self, platform_account_id: str, template_name: str) -> Optional[ReplyTemplate]:
        """Active template by name; account-scoped beats global."""
        await self.initialize()
        async with aiosqlite.connect(str(self.db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT id, name, body
                  FROM templates
                 WHERE name = ?
                   AND is_active = 1
                   AND (platform_account_id = ? OR platform_account_id IS NULL)
                 ORDER BY CASE WHEN platform_account_id = ? THEN 0 ELSE 1 END, updated_at DESC
                 LIMIT 1
                """,
                (template_name, platform_account_id, platform_account_id),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return ReplyTemplate(id=row["id"], name=row["name"], body=row["body"])

    async def record_outbound_reply(
        self,
        conversation_id: str,
        assigned_agent_id: Optional[str],
        body: str,
        metadata: Optional[Dict[str, Any]] = None,
        channel: str = "in_app",
        external_message_id: Optional[str] = None,
    ) -> Dict[str, bool]:
        message_id = await self.insert_message(
            conversation_id=conversation_id,
            direction="outbound",
            body=body,
            external_message_id=external_message_id,
            channel=channel,
            metadata=metadata,
            sender_type="agent",
            sender_agent_id=assigned_agent_id,
        )
        return {"inserted": message_id is not None}

    async def mark_inbound_processed(self, message_id: str, metadata_patch: Dict[str, Any]) -> None:
        """Merge the decision patch into metadata and release the claim."""
        await self.initialize()
        async with self._write_lock:
            async with aiosqlite.connect(str(self.db_path)) as db:
                await db.execute("BEGIN IMMEDIATE")
                cursor = await db.execute("SELECT metadata FROM messages WHERE id = ?", (message_id,))
                row = await cursor.fetchone()
                if row is None:
                    await db.rollback()
                    logger.warning("Cannot mark unknown message %s as processed", message_id)
                    return
                metadata = _loads(row[0])
                metadata.pop("worker_claim", None)
                metadata.update(metadata_patch or {})
                await db.execute(
                    "UPDATE messages SET metadata = ? WHERE id = ?",
                    (_dumps(metadata), message_id),
                )
                await db.commit()

    async def record_log(
        self,
        actor_type: str,
        entity_type: str,
        entity_id: Any,
        action: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> int:
        return await self.audit.record_log(actor_type, entity_type, entity_id, action, details)

    async def transition_conversation_workflow(
        self,
        conversation_id: str,
        payload: Dict[str, Any],
        actor_type: str = "worker",
        actor_id: Optional[str] = None,
        source: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Persist the latest workflow outcome for a conversation."""
        await self.initialize()
        state = {
            "conversation_id": conversation_id,
            "workflow_outcome": payload.get("workflow_outcome"),
            "showing_state": payload.get("showing_state"),
            "follow_up_stage": payload.get("follow_up_stage"),
            "actor_type": actor_type,
            "actor_id": actor_id,
            "source": source,
            "message_id": message_id,
            "updated_at": _iso(),
        }
        async with self._write_lock:
            async with aiosqlite.connect(str(self.db_path)) as db:
                await db.execute(
                    """
                    INSERT INTO conversation_workflow (
                        conversation_id, workflow_outcome, showing_state, follow_up_stage,
                        actor_type, actor_id, source, message_id, updated_at
                    ) VALUES (:conversation_id, :workflow_outcome, :showing_state, :follow_up_stage,
                              :actor_type, :actor_id, :source, :message_id, :updated_at)
                    ON CONFLICT(conversation_id) DO UPDATE SET
                        workflow_outcome = excluded.workflow_outcome,
                        showing_state = COALESCE(excluded.showing_state, conversation_workflow.showing_state),
                        follow_up_stage = excluded.follow_up_stage,
                        actor_type = excluded.actor_type,
                        actor_id = excluded.actor_id,
                        source = excluded.source,
                        message_id = excluded.message_id,
                        updated_at = excluded.updated_at
                    """,
                    state,
                )
                await db.commit()
        logger.info("Conversation %s workflow -> %s", conversation_id, state["workflow_outcome"])
        return state

    async def get_conversation_workflow(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        await self.initialize()
        async with aiosqlite.connect(str(self.db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM conversation_workflow WHERE conversation_id = ?", (conversation_id,)
            )
            row = await cursor.fetchone()
        return dict(row) if row is not None else None

    # =========================================================================
    # DISPATCH
    # =========================================================================

    async def begin_dispatch_attempt(
        self,
        message_id: str,
        dispatch_key: str,
        platform: Optional[str] = None,
        stage: Optional[str] = None,
        now: Optional[str] = None,
    ) -> DispatchGuard:
        return await self.ledger.begin(message_id, dispatch_key, platform=platform, stage=stage, now=now)

    async def complete_dispatch_attempt(
        self,
        message_id: str,
        dispatch_key: str,
        status: str,
        delivery: Optional[Dict[str, Any]] = None,
        now: Optional[str] = None,
    ) -> None:
        await self.ledger.complete(message_id, dispatch_key, status, delivery=delivery, now=now)

    async def fail_dispatch_attempt(
        self,
        message_id: str,
        stage: Optional[str] = None,
        error: Optional[str] = None,
        now: Optional[str] = None,
        retry: Optional[Dict[str, Any]] = None,
    ) -> str:
        return await self.ledger.fail(message_id, stage=stage, error=error, now=now, retry=retry)

    async def dispatch_outbound_message(
        self,
        platform_account_id: Optional[str],
        platform: Optional[str],
        platform_credentials: Optional[Dict[str, Any]],
        external_thread_id: Optional[str],
        body: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send through the connector registry. An incomplete target is a fatal, non-retryable error."""
        if not platform or not platform_account_id:
            raise unsupported_platform(platform or "unknown")
        if not str(external_thread_id or "").strip():
            raise outbound_thread_required(platform)
        if not str(body or "").strip():
            raise outbound_body_required(platform)

        return await self.registry.send_message_for_account(
            {"id": platform_account_id, "platform": platform, "credentials": platform_credentials or {}},
            {"external_thread_id": external_thread_id, "body": body},
        )

    async def list_active_accounts(self) -> List[Dict[str, Any]]:
        await self.initialize()
        async with aiosqlite.connect(str(self.db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT id, platform, account_external_id, credentials
                  FROM platform_accounts
                 WHERE is_active = 1
                 ORDER BY created_at ASC
                """
            )
            rows = await cursor.fetchall()
        accounts = []
        for row in rows:
            account = dict(row)
            account["credentials"] = _loads(account["credentials"])
            accounts.append(account)
        return accounts

    async def ingest_inbound_messages(
        self,
        limit: int = 50,
        platforms: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        """Pull inbox messages for every active account and store the new ones."""
        ingested = 0
        scanned = 0
        failures: List[Dict[str, Any]] = []

        for account in await self.list_active_accounts():
            if platforms and account["platform"] not in platforms:
                continue

            try:
                inbound_messages = await self.registry.ingest_messages_for_account(account)
            except Exception as e:
                logger.exception("Ingest failed for %s account %s", account["platform"], account["id"])
                failures.append({
                    "platform_account_id": account["id"],
                    "platform": account["platform"],
                    "error": str(e),
                    "code": getattr(e, "code", None),
                })
                continue
            scanned += len(inbound_messages)

            for inbound in inbound_messages[:limit]:
                conversation_id = await self.upsert_conversation(
                    platform_account_id=account["id"],
                    external_thread_id=inbound["external_thread_id"],
                    lead_name=inbound.get("lead_name"),
                    lead_contact=inbound.get("lead_contact") or {},
                    last_message_at=inbound.get("sent_at"),
                )
                inserted = await self.insert_message(
                    conversation_id=conversation_id,
                    direction="inbound",
                    body=inbound.get("body") or "",
                    sent_at=inbound.get("sent_at"),
                    external_message_id=inbound.get("external_message_id"),
                    channel=inbound.get("channel") or "in_app",
                    metadata=inbound.get("metadata") or {},
                )
                if inserted:
                    ingested += 1

        logger.info("Ingest scanned %s messages, stored %s new, %s account failures", scanned, ingested, len(failures))
        return {
            "scanned": scanned,
            "ingested": ingested,
            "failures": failures,
            "platforms": list(platforms) if platforms else list(self.registry.supported_platforms),
        }
