"""Inbox repository - contacts, conversations and messages in Postgres.

Uses raw SQL with psycopg2 (no ORM). A PgInboxRepository is bound to one
cursor, so every call it makes belongs to the caller's transaction:

    with inbox_session() as repo:
        ingest(repo, account_id, identity, decoded, ...)

Concurrency
───────────
- Contacts and conversations are created with INSERT ... ON CONFLICT DO
  NOTHING on their (account_id, id) primary key, then read back. Two
  concurrent first messages from one phone end up on the same rows.
- Messages dedupe on both the primary key and the
  (account_id, conversation_id, external_id) unique constraint.
- The conversation summary is one UPDATE, so unread increments from
  concurrent transactions are never lost.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

from psycopg2.extensions import cursor as PgCursor

from aliado.domain.models import (
    ClearResult,
    Contact,
    Conversation,
    ConversationView,
    Message,
)
from aliado.infra.db import txn

_CONTACT_COLUMNS = "id, account_id, name, phone, is_group, created_at, updated_at"
_CONVERSATION_COLUMNS = (
    "id, account_id, contact_id, status, last_message, last_message_at, "
    "unread_count, created_at, updated_at"
)
_MESSAGE_COLUMNS = (
    "id, account_id, conversation_id, sender, content, type, status, created_at, "
    "external_id, media_url, mime_type, file_name"
)


def _prefixed(columns: str, alias: str) -> str:
    return ", ".join(f"{alias}.{c.strip()}" for c in columns.split(","))


def _contact_from_row(row: tuple[Any, ...]) -> Contact:
    return Contact(
        id=row[0],
        account_id=row[1],
        name=row[2],
        phone=row[3],
        is_group=bool(row[4]),
        created_at=row[5],
        updated_at=row[6],
    )


def _conversation_from_row(row: tuple[Any, ...]) -> Conversation:
    return Conversation(
        id=row[0],
        account_id=row[1],
        contact_id=row[2],
        status=row[3],
        last_message=row[4],
        last_message_at=row[5],
        unread_count=row[6],
        created_at=row[7],
        updated_at=row[8],
    )


def _message_from_row(row: tuple[Any, ...]) -> Message:
    return Message(
        id=row[0],
        account_id=row[1],
        conversation_id=row[2],
        sender=row[3],
        content=row[4],
        type=row[5],
        status=row[6],
        created_at=row[7],
        external_id=row[8],
        media_url=row[9],
        mime_type=row[10],
        file_name=row[11],
    )


def _view_from_row(row: tuple[Any, ...]) -> ConversationView:
    return ConversationView(
        conversation=_conversation_from_row(row[:9]),
        contact=_contact_from_row(row[9:]),
    )


class PgInboxRepository:
    """InboxRepository over a psycopg2 cursor (caller owns the transaction)."""

    def __init__(self, cur: PgCursor) -> None:
        self.cur = cur

    # ── Contacts ────────────────────────────────────────────────────────────

    def upsert_contact(
        self,
        account_id: str,
        contact_id: str,
        *,
        phone: str,
        is_group: bool,
        name: str,
        better_name: str | None,
    ) -> tuple[Contact, bool]:
        self.cur.execute(
            f"""
            INSERT INTO contacts (account_id, id, name, phone, is_group)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (account_id, id) DO NOTHING
            RETURNING {_CONTACT_COLUMNS}
            """,
            (account_id, contact_id, name, phone, is_group),
        )
        row = self.cur.fetchone()
        if row is not None:
            return _contact_from_row(row), True

        if better_name:
            self.cur.execute(
                f"""
                UPDATE contacts
                SET name = %s, updated_at = now()
                WHERE account_id = %s AND id = %s AND name IS DISTINCT FROM %s
                RETURNING {_CONTACT_COLUMNS}
                """,
                (better_name, account_id, contact_id, better_name),
            )
            row = self.cur.fetchone()
            if row is not None:
                return _contact_from_row(row), False

        self.cur.execute(
            f"SELECT {_CONTACT_COLUMNS} FROM contacts WHERE account_id = %s AND id = %s",
            (account_id, contact_id),
        )
        return _contact_from_row(self.cur.fetchone()), False

    # ── Conversations ───────────────────────────────────────────────────────

    def ensure_conversation(
        self,
        account_id: str,
        conversation_id: str,
        contact_id: str,
        *,
        last_message: str,
        last_message_at: datetime,
        unread_count: int,
    ) -> tuple[Conversation, bool]:
        self.cur.execute(
            f"""
            INSERT INTO conversations (
                account_id, id, contact_id, status,
                last_message, last_message_at, unread_count
            )
            VALUES (%s, %s, %s, 'open', %s, %s, %s)
            ON CONFLICT (account_id, id) DO NOTHING
            RETURNING {_CONVERSATION_COLUMNS}
            """,
            (account_id, conversation_id, contact_id, last_message, last_message_at, unread_count),
        )
        row = self.cur.fetchone()
        if row is not None:
            return _conversation_from_row(row), True

        self.cur.execute(
            f"""
            SELECT {_CONVERSATION_COLUMNS} FROM conversations
            WHERE account_id = %s AND id = %s
            """,
            (account_id, conversation_id),
        )
        return _conversation_from_row(self.cur.fetchone()), False

    def apply_message_summary(
        self,
        account_id: str,
        conversation_id: str,
        *,
        last_message: str,
        last_message_at: datetime,
        unread_increment: int,
        reset_unread: bool = False,
    ) -> None:
        # Summary only moves forward; unread is relative so it never races
        self.cur.execute(
            """
            UPDATE conversations
            SET unread_count = CASE WHEN %(reset)s THEN 0
                                    ELSE unread_count + %(increment)s END,
                last_message = CASE
                    WHEN last_message_at IS NULL OR last_message_at <= %(at)s
                    THEN %(message)s ELSE last_message END,
                last_message_at = CASE
                    WHEN last_message_at IS NULL OR last_message_at <= %(at)s
                    THEN %(at)s ELSE last_message_at END,
                updated_at = now()
            WHERE account_id = %(account_id)s AND id = %(conversation_id)s
            """,
            {
                "reset": reset_unread,
                "increment": unread_increment,
                "at": last_message_at,
                "message": last_message,
                "account_id": account_id,
                "conversation_id": conversation_id,
            },
        )

    def mark_read(self, account_id: str, conversation_id: str) -> bool:
        self.cur.execute(
            """
            UPDATE conversations
            SET unread_count = 0, updated_at = now()
            WHERE account_id = %s AND id = %s
            """,
            (account_id, conversation_id),
        )
        return self.cur.rowcount > 0

    def get_conversation(self, account_id: str, conversation_id: str) -> ConversationView | None:
        self.cur.execute(
            f"""
            SELECT {_prefixed(_CONVERSATION_COLUMNS, "cv")}, {_prefixed(_CONTACT_COLUMNS, "ct")}
            FROM conversations cv
            JOIN contacts ct ON ct.account_id = cv.account_id AND ct.id = cv.contact_id
            WHERE cv.account_id = %s AND cv.id = %s
            """,
            (account_id, conversation_id),
        )
        row = self.cur.fetchone()
        return _view_from_row(row) if row else None

    def list_conversations(
        self,
        account_id: str,
        *,
        is_group: bool | None = None,
        unread: bool | None = None,
        limit: int = 100,
    ) -> list[ConversationView]:
        self.cur.execute(
            f"""
            SELECT {_prefixed(_CONVERSATION_COLUMNS, "cv")}, {_prefixed(_CONTACT_COLUMNS, "ct")}
            FROM conversations cv
            JOIN contacts ct ON ct.account_id = cv.account_id AND ct.id = cv.contact_id
            WHERE cv.account_id = %s
              AND (%s::BOOLEAN IS NULL OR ct.is_group = %s::BOOLEAN)
              AND (%s::BOOLEAN IS NULL OR (cv.unread_count > 0) = %s::BOOLEAN)
            ORDER BY cv.last_message_at DESC NULLS LAST, cv.id
            LIMIT %s
            """,
            (account_id, is_group, is_group, unread, unread, limit),
        )
        return [_view_from_row(row) for row in self.cur.fetchall()]

    # ── Messages ────────────────────────────────────────────────────────────

    def insert_message(self, message: Message) -> tuple[str, bool]:
        self.cur.execute(
            f"""
            INSERT INTO messages ({_MESSAGE_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT DO NOTHING
            RETURNING id
            """,
            (
                message.id,
                message.account_id,
                message.conversation_id,
                message.sender,
                message.content,
                message.type,
                message.status,
                message.created_at,
                message.external_id,
                message.media_url,
                message.mime_type,
                message.file_name,
            ),
        )
        row = self.cur.fetchone()
        if row is not None:
            return row[0], True

        self.cur.execute(
            """
            SELECT id FROM messages
            WHERE account_id = %s
              AND (id = %s OR (conversation_id = %s AND external_id = %s))
            LIMIT 1
            """,
            (message.account_id, message.id, message.conversation_id, message.external_id),
        )
        existing = self.cur.fetchone()
        return (existing[0] if existing else message.id), False

    def list_messages(self, account_id: str, conversation_id: str) -> list[Message]:
        self.cur.execute(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM messages
            WHERE account_id = %s AND conversation_id = %s
            ORDER BY created_at ASC, id ASC
            """,
            (account_id, conversation_id),
        )
        return [_message_from_row(row) for row in self.cur.fetchall()]

    # ── Account ─────────────────────────────────────────────────────────────

    def clear_account(self, account_id: str) -> ClearResult:
        counts: dict[str, int] = {}
        # Children first; FK cascades would hide the per-table counts
        for table in ("messages", "conversations", "contacts"):
            self.cur.execute(f"DELETE FROM {table} WHERE account_id = %s", (account_id,))
            counts[table] = self.cur.rowcount
        return ClearResult(**counts)


@contextmanager
def inbox_session() -> Iterator[PgInboxRepository]:
    """One transaction, one repository."""
    with txn() as cur:
        yield PgInboxRepository(cur)
