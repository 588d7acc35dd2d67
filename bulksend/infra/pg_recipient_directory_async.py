# bulksend/infra/pg_recipient_directory_async.py
"""
Async PostgreSQL recipient directory (asyncpg).

Read-only view over the event service's ``events`` and ``guests``
tables.  "Already invited" is derived from the dispatch audit trail.
"""
from __future__ import annotations

from typing import Optional, Sequence

from bulksend.core.bulk.domain import Event, MessageType, Recipient
from bulksend.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from bulksend.infra.logging_config import get_logger

logger = get_logger(__name__)

_INVITED_SQL = """
    EXISTS (
        SELECT 1 FROM bulk_dispatch_audit a
        WHERE a.recipient_id = g.id
          AND a.message_type = 'INVITE'
          AND a.outcome = 'SENT'
    )
"""

_ELIGIBILITY_SQL: dict[MessageType, str] = {
    MessageType.INVITE: f"AND NOT {_INVITED_SQL}",
    MessageType.REMINDER: "AND (g.rsvp_status IS NULL OR upper(g.rsvp_status) IN ('', 'PENDING'))",
    MessageType.EVENT_DAY: "",
    MessageType.THANK_YOU: "",
}


def event_locale(notes: Optional[str]) -> str:
    """Events opt into English with a ``locale:en`` marker in their notes."""
    return "en" if notes and "locale:en" in notes.lower() else "he"


class AsyncPostgresRecipientDirectory:
    """RecipientDirectory on the shared PostgreSQL database."""

    @retry_on_transient_error()
    async def get_event(self, event_id: str) -> Optional[Event]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, owner_id, title, starts_at, location, venue, notes
                FROM events
                WHERE id = $1
                """,
                event_id,
            )
        if row is None:
            return None
        return Event(
            id=row["id"],
            owner_id=row["owner_id"],
            title=row["title"],
            starts_at=row["starts_at"],
            location=row["location"] or "",
            venue=row["venue"],
            locale=event_locale(row["notes"]),
        )

    @retry_on_transient_error()
    async def list_eligible_recipient_ids(self, event_id: str, message_type: MessageType) -> list[str]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"""
                SELECT g.id FROM guests g
                WHERE g.event_id = $1
                {_ELIGIBILITY_SQL[message_type]}
                ORDER BY g.created_at, g.id
                """,
                event_id,
            )
        return [row["id"] for row in rows]

    @retry_on_transient_error()
    async def get_recipients(self, recipient_ids: Sequence[str]) -> dict[str, Recipient]:
        if not recipient_ids:
            return {}
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"""
                SELECT g.id, g.event_id, g.name, g.phone_number, g.slug, g.rsvp_status,
                       {_INVITED_SQL} AS invited
                FROM guests g
                WHERE g.id = ANY($1::text[])
                """,
                list(recipient_ids),
            )
        return {
            row["id"]: Recipient(
                id=row["id"],
                event_id=row["event_id"],
                name=row["name"],
                phone_number=row["phone_number"],
                slug=row["slug"],
                rsvp_status=row["rsvp_status"],
                invited=row["invited"],
            )
            for row in rows
        }


# Global singleton
_directory: AsyncPostgresRecipientDirectory | None = None


def get_recipient_directory() -> AsyncPostgresRecipientDirectory:
    global _directory
    if _directory is None:
        _directory = AsyncPostgresRecipientDirectory()
    return _directory
