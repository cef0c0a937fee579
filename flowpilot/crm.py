"""CRM access: message lookups for channel events and record writes for output nodes."""

from __future__ import annotations

import itertools
import json
import uuid
from typing import Any, Dict, Optional, Protocol

import asyncpg

from .errors import CRMError, NodeConfigurationError

_MESSAGE_QUERY = """
SELECT m.*, c.contact_id, c.channel_contact_id,
       ct.name AS contact_name, ct.email AS contact_email
FROM messages m
JOIN conversations c ON c.id = m.conversation_id
LEFT JOIN contacts ct ON ct.id = c.contact_id
WHERE m.id = $1
"""

# entity type -> table holding its ``assigned_to`` column
ASSIGNABLE_TABLES = {"lead": "leads", "ticket": "tickets", "conversation": "conversations"}
ASSIGNABLE_ROLES = ("agent", "admin", "manager")


def assignable_table(entity_type: str) -> str:
    try:
        return ASSIGNABLE_TABLES[entity_type]
    except KeyError:
        raise NodeConfigurationError(
            f"Cannot assign entity type {entity_type!r}; expected one of {sorted(ASSIGNABLE_TABLES)}"
        ) from None


class MessageDirectory(Protocol):
    """Looks up an inbound message joined with its conversation and contact."""

    async def get_message(self, message_id: str) -> Optional[Dict[str, Any]]:
        """Return the joined message row, or ``None`` if it does not exist."""


class CRMWriter(Protocol):
    """Contact, lead, ticket and assignment writes used by the CRM output nodes."""

    async def conversation_contact(self, conversation_id: str) -> Optional[str]:
        """Return the contact attached to a conversation, if any."""

    async def find_or_create_contact(
        self,
        tenant_id: str,
        name: str,
        phone: Optional[str],
        email: Optional[str],
        source: str,
    ) -> str:
        """Match a contact by phone, then email; create one when neither matches."""

    async def open_lead(self, tenant_id: str, contact_id: str) -> Optional[str]:
        """Return the contact's open lead, if one exists."""

    async def entry_stage(self, tenant_id: str) -> tuple[str, str]:
        """Return ``(pipeline_id, stage_id)`` of the first stage of the default pipeline."""

    async def insert_lead(
        self, tenant_id: str, contact_id: str, pipeline_id: str, stage_id: str
    ) -> str:
        """Create an open lead and return its id."""

    async def insert_ticket(
        self,
        tenant_id: str,
        contact_id: Optional[str],
        subject: str,
        description: str,
        priority: str,
        conversation_id: Optional[str],
    ) -> Dict[str, Any]:
        """Create a ``new`` ticket and return ``{ticket_id, ticket_number}``."""

    async def least_loaded_user(self, tenant_id: str, entity_type: str) -> Optional[str]:
        """Return the active user with the fewest open assignments of ``entity_type``."""

    async def assign(
        self, tenant_id: str, entity_type: str, entity_id: str, user_id: str
    ) -> None:
        """Set ``assigned_to`` on the entity."""


class InMemoryMessageDirectory:
    """Message rows held in a dict; for tests and local runs."""

    def __init__(self, messages: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self._messages = dict(messages or {})

    def add(self, message_id: str, **row: Any) -> None:
        self._messages[message_id] = {"id": message_id, **row}

    async def get_message(self, message_id: str) -> Optional[Dict[str, Any]]:
        row = self._messages.get(message_id)
        return dict(row) if row else None


class InMemoryCRMWriter:
    """CRM tables kept as lists of dicts; for tests and local runs."""

    def __init__(self) -> None:
        self.contacts: list[Dict[str, Any]] = []
        self.conversations: Dict[str, Optional[str]] = {}
        self.pipelines: list[Dict[str, Any]] = []
        self.users: list[Dict[str, Any]] = []
        self.records: Dict[str, list[Dict[str, Any]]] = {t: [] for t in ASSIGNABLE_TABLES}
        self._ticket_numbers = itertools.count(1)

    def add_pipeline(
        self, tenant_id: str, stages: list[str], is_default: bool = False
    ) -> Dict[str, Any]:
        pipeline = {
            "id": str(uuid.uuid4()),
            "tenant_id": tenant_id,
            "is_default": is_default,
            "stages": [{"id": str(uuid.uuid4()), "name": name} for name in stages],
        }
        self.pipelines.append(pipeline)
        return pipeline

    def add_user(
        self, tenant_id: str, role: str = "agent", status: str = "active", user_id: Optional[str] = None
    ) -> str:
        user_id = user_id or str(uuid.uuid4())
        self.users.append({"id": user_id, "tenant_id": tenant_id, "role": role, "status": status})
        return user_id

    async def conversation_contact(self, conversation_id: str) -> Optional[str]:
        return self.conversations.get(conversation_id)

    async def find_or_create_contact(
        self,
        tenant_id: str,
        name: str,
        phone: Optional[str],
        email: Optional[str],
        source: str,
    ) -> str:
        for key, value in (("phone", phone), ("email", email)):
            if not value:
                continue
            for contact in self.contacts:
                if contact["tenant_id"] == tenant_id and contact[key] == value:
                    return contact["id"]
        contact = {
            "id": str(uuid.uuid4()),
            "tenant_id": tenant_id,
            "name": name,
            "phone": phone,
            "email": email,
            "source": source,
        }
        self.contacts.append(contact)
        return contact["id"]

    async def open_lead(self, tenant_id: str, contact_id: str) -> Optional[str]:
        for lead in self.records["lead"]:
            if (
                lead["tenant_id"] == tenant_id
                and lead["contact_id"] == contact_id
                and lead["status"] == "open"
            ):
                return lead["id"]
        return None

    async def entry_stage(self, tenant_id: str) -> tuple[str, str]:
        owned = [p for p in self.pipelines if p["tenant_id"] == tenant_id]
        if not owned:
            raise CRMError("No pipeline found for tenant")
        pipeline = next((p for p in owned if p["is_default"]), owned[0])
        if not pipeline["stages"]:
            raise CRMError("No stages found in pipeline")
        return pipeline["id"], pipeline["stages"][0]["id"]

    async def insert_lead(
        self, tenant_id: str, contact_id: str, pipeline_id: str, stage_id: str
    ) -> str:
        lead = {
            "id": str(uuid.uuid4()),
            "tenant_id": tenant_id,
            "contact_id": contact_id,
            "pipeline_id": pipeline_id,
            "stage_id": stage_id,
            "status": "open",
            "assigned_to": None,
        }
        self.records["lead"].append(lead)
        return lead["id"]

    async def insert_ticket(
        self,
        tenant_id: str,
        contact_id: Optional[str],
        subject: str,
        description: str,
        priority: str,
        conversation_id: Optional[str],
    ) -> Dict[str, Any]:
        ticket = {
            "id": str(uuid.uuid4()),
            "ticket_number": next(self._ticket_numbers),
            "tenant_id": tenant_id,
            "contact_id": contact_id,
            "subject": subject,
            "description": description,
            "priority": priority,
            "status": "new",
            "source_conversation_id": conversation_id,
            "assigned_to": None,
        }
        self.records["ticket"].append(ticket)
        return {"ticket_id": ticket["id"], "ticket_number": ticket["ticket_number"]}

    async def least_loaded_user(self, tenant_id: str, entity_type: str) -> Optional[str]:
        assignable_table(entity_type)
        candidates = sorted(
            u["id"]
            for u in self.users
            if u["tenant_id"] == tenant_id
            and u["status"] == "active"
            and u["role"] in ASSIGNABLE_ROLES
        )
        if not candidates:
            return None
        load = {user_id: 0 for user_id in candidates}
        for record in self.records[entity_type]:
            if record.get("assigned_to") in load and record.get("status") != "closed":
                load[record["assigned_to"]] += 1
        return min(candidates, key=lambda user_id: (load[user_id], user_id))

    async def assign(
        self, tenant_id: str, entity_type: str, entity_id: str, user_id: str
    ) -> None:
        assignable_table(entity_type)
        for record in self.records[entity_type]:
            if record["id"] == entity_id and record["tenant_id"] == tenant_id:
                record["assigned_to"] = user_id
                return
        raise CRMError(f"{entity_type} {entity_id} not found")


class _PostgresCRM:
    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._pool: Optional[asyncpg.Pool] = None

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(self._dsn, min_size=1, max_size=5)
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


class PostgresMessageDirectory(_PostgresCRM):
    """Query the CRM's ``messages``/``conversations``/``contacts`` tables."""

    async def get_message(self, message_id: str) -> Optional[Dict[str, Any]]:
        pool = await self._get_pool()
        row = await pool.fetchrow(_MESSAGE_QUERY, message_id)
        return dict(row) if row else None


class PostgresCRMWriter(_PostgresCRM):
    """Write contacts, leads, tickets and assignments into the CRM schema."""

    async def conversation_contact(self, conversation_id: str) -> Optional[str]:
        pool = await self._get_pool()
        contact_id = await pool.fetchval(
            "SELECT contact_id FROM conversations WHERE id = $1", conversation_id
        )
        return str(contact_id) if contact_id else None

    async def find_or_create_contact(
        self,
        tenant_id: str,
        name: str,
        phone: Optional[str],
        email: Optional[str],
        source: str,
    ) -> str:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                for column, value in (("phone", phone), ("email", email)):
                    if not value:
                        continue
                    existing = await conn.fetchval(
                        f"SELECT id FROM contacts WHERE tenant_id = $1 AND {column} = $2 LIMIT 1",
                        tenant_id,
                        value,
                    )
                    if existing:
                        return str(existing)
                created = await conn.fetchval(
                    """
                    INSERT INTO contacts (tenant_id, name, phone, email, source)
                    VALUES ($1, $2, $3, $4, $5)
                    RETURNING id
                    """,
                    tenant_id,
                    name,
                    phone,
                    email,
                    source,
                )
        return str(created)

    async def open_lead(self, tenant_id: str, contact_id: str) -> Optional[str]:
        pool = await self._get_pool()
        lead_id = await pool.fetchval(
            "SELECT id FROM leads WHERE tenant_id = $1 AND contact_id = $2 AND status = 'open' LIMIT 1",
            tenant_id,
            contact_id,
        )
        return str(lead_id) if lead_id else None

    async def entry_stage(self, tenant_id: str) -> tuple[str, str]:
        pool = await self._get_pool()
        pipeline_id = await pool.fetchval(
            """
            SELECT id FROM pipelines WHERE tenant_id = $1
            ORDER BY is_default DESC, created_at
            LIMIT 1
            """,
            tenant_id,
        )
        if pipeline_id is None:
            raise CRMError("No pipeline found for tenant")
        stage_id = await pool.fetchval(
            "SELECT id FROM pipeline_stages WHERE pipeline_id = $1 ORDER BY order_index ASC LIMIT 1",
            pipeline_id,
        )
        if stage_id is None:
            raise CRMError("No stages found in pipeline")
        return str(pipeline_id), str(stage_id)

    async def insert_lead(
        self, tenant_id: str, contact_id: str, pipeline_id: str, stage_id: str
    ) -> str:
        pool = await self._get_pool()
        lead_id = await pool.fetchval(
            """
            INSERT INTO leads (tenant_id, contact_id, pipeline_id, stage_id, status)
            VALUES ($1, $2, $3, $4, 'open')
            RETURNING id
            """,
            tenant_id,
            contact_id,
            pipeline_id,
            stage_id,
        )
        return str(lead_id)

    async def insert_ticket(
        self,
        tenant_id: str,
        contact_id: Optional[str],
        subject: str,
        description: str,
        priority: str,
        conversation_id: Optional[str],
    ) -> Dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            INSERT INTO tickets
                (tenant_id, contact_id, subject, description, priority, status, source_conversation_id)
            VALUES ($1, $2, $3, $4, $5, 'new', $6)
            RETURNING id, ticket_number
            """,
            tenant_id,
            contact_id,
            subject,
            description,
            priority,
            conversation_id,
        )
        return {"ticket_id": str(row["id"]), "ticket_number": row["ticket_number"]}

    async def least_loaded_user(self, tenant_id: str, entity_type: str) -> Optional[str]:
        table = assignable_table(entity_type)
        pool = await self._get_pool()
        user_id = await pool.fetchval(
            f"""
            SELECT u.id FROM users u
            LEFT JOIN {table} e ON e.assigned_to = u.id AND e.status != 'closed'
            WHERE u.tenant_id = $1 AND u.status = 'active' AND u.role = ANY($2::text[])
            GROUP BY u.id
            ORDER BY COUNT(e.id) ASC, u.id ASC
            LIMIT 1
            """,
            tenant_id,
            list(ASSIGNABLE_ROLES),
        )
        return str(user_id) if user_id else None

    async def assign(
        self, tenant_id: str, entity_type: str, entity_id: str, user_id: str
    ) -> None:
        table = assignable_table(entity_type)
        pool = await self._get_pool()
        updated = await pool.fetchval(
            f"UPDATE {table} SET assigned_to = $1, updated_at = now() "
            "WHERE id = $2 AND tenant_id = $3 RETURNING id",
            user_id,
            entity_id,
            tenant_id,
        )
        if updated is None:
            raise CRMError(f"{entity_type} {entity_id} not found")


def channel_payload(
    message_id: str,
    conversation_id: Optional[str],
    channel: str,
    row: Dict[str, Any],
) -> Dict[str, Any]:
    """Build the trigger payload for a channel message from its joined row."""
    metadata = row.get("metadata") or {}
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except json.JSONDecodeError:
            metadata = {}
    contact_handle = row.get("channel_contact_id")
    return {
        "message_id": message_id,
        "conversation_id": conversation_id,
        "channel": channel,
        "content": row.get("content_text"),
        "contact_id": row.get("contact_id"),
        "direction": row.get("direction"),
        "sender": {
            "phone": contact_handle,
            "email": row.get("contact_email") or contact_handle,
            "name": row.get("contact_name") or "",
            "wa_number": contact_handle,
        },
        "message": {
            "id": message_id,
            "body": row.get("content_text"),
            "subject": metadata.get("subject", "") if isinstance(metadata, dict) else "",
        },
        "channel_contact_id": contact_handle,
    }
