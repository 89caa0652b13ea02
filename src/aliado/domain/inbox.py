"""Conversation upsert engine - merge one message into inbox state.

Storage goes through the InboxRepository protocol so the same rules run
against Postgres (aliado.infra.repositories.inbox_repository) and the
in-memory double used by tests.

Rules:
- One contact and one conversation per (account_id, normalized phone),
  with deterministic ids from aliado.domain.ids.
- A message carrying a provider id is stored at most once per
  conversation; a replay changes nothing and returns the original id.
- unread_count grows by exactly 1 per new counterparty message and is
  reset only by mark_read() or an agent reply sent from the inbox.
- last_message / last_message_at only move forward in time, so a late
  webhook retry cannot regress the summary.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Protocol

from aliado.infra.time import utc_now
from aliado.whatsapp.identity import format_phone, group_placeholder_name
from aliado.whatsapp.models import DecodedMessage, Identity

from . import ids
from .models import (
    ClearResult,
    Contact,
    Conversation,
    ConversationView,
    Message,
    MessageStatus,
    clip_summary,
)

# pushName WhatsApp reports for the account owner on some devices
SELF_DISPLAY_NAMES = {"Você", "You"}


class ConversationNotFoundError(LookupError):
    """No conversation with this id in the account."""


class InboxRepository(Protocol):
    """Storage operations the upsert engine needs.

    Implementations must make upsert_contact / ensure_conversation atomic
    find-or-create, insert_message idempotent on
    (account_id, conversation_id, external_id), and apply_message_summary
    a single conditional update.
    """

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
        """Find or create; on existing rows replace name only with better_name."""
        ...

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
        """Find or create an open conversation seeded with this message."""
        ...

    def insert_message(self, message: Message) -> tuple[str, bool]:
        """Insert unless (conversation, external_id) exists. Returns (id, inserted)."""
        ...

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
        """Bump unread and advance the summary if last_message_at is not older."""
        ...

    def mark_read(self, account_id: str, conversation_id: str) -> bool:
        ...

    def get_conversation(self, account_id: str, conversation_id: str) -> ConversationView | None:
        ...

    def list_conversations(
        self,
        account_id: str,
        *,
        is_group: bool | None = None,
        unread: bool | None = None,
        limit: int = 100,
    ) -> list[ConversationView]:
        """Newest activity first (last_message_at DESC).

        unread=True keeps conversations with unread_count > 0, False the rest.
        """
        ...

    def list_messages(self, account_id: str, conversation_id: str) -> list[Message]:
        """Chronological (created_at ASC)."""
        ...

    def clear_account(self, account_id: str) -> ClearResult:
        ...


@dataclass(frozen=True)
class IngestResult:
    contact_id: str
    conversation_id: str
    message_id: str
    created_conversation: bool
    duplicate: bool


def _require_account(account_id: str) -> None:
    if not account_id:
        raise ValueError("account_id is required")


def is_better_name(name: str | None, identity: Identity) -> bool:
    """True when `name` is a real display name rather than a fallback."""
    if not name or not name.strip():
        return False
    candidate = name.strip()
    if candidate in SELF_DISPLAY_NAMES:
        return False
    if candidate == identity.phone or candidate.lstrip("+") == identity.phone:
        return False
    if candidate == format_phone(identity.phone):
        return False
    if candidate == group_placeholder_name(identity.phone):
        return False
    return True


def initial_contact_name(identity: Identity, display_name: str | None) -> str:
    if is_better_name(display_name, identity):
        return display_name.strip()
    if identity.is_group:
        return group_placeholder_name(identity.phone)
    return format_phone(identity.phone)


def ingest(
    repo: InboxRepository,
    account_id: str,
    identity: Identity,
    decoded: DecodedMessage,
    *,
    from_me: bool,
    external_message_id: str | None,
    timestamp: datetime | None,
    display_name: str | None = None,
) -> IngestResult:
    """Merge one decoded message into contact/conversation/message state.

    Args:
        repo: Storage, ideally bound to a single transaction.
        account_id: Owning account (required, never defaulted).
        identity: Output of the identity normalizer.
        decoded: Output of the message decoder.
        from_me: True when the agent's own number sent the message.
        external_message_id: Provider message id, used for dedup.
        timestamp: Provider timestamp; ingestion time when None.
        display_name: Best known contact name (pushName / group subject).

    Returns:
        IngestResult with the ids for audit logging.

    Raises:
        StorageError: Propagated from the repository.
    """
    _require_account(account_id)

    occurred_at = timestamp or utc_now()
    contact_id = ids.contact_id(identity.phone)
    conversation_id = ids.conversation_id(identity.phone)
    summary = clip_summary(decoded.content)
    unread = 0 if from_me else 1

    repo.upsert_contact(
        account_id,
        contact_id,
        phone=identity.phone,
        is_group=identity.is_group,
        name=initial_contact_name(identity, display_name),
        better_name=display_name.strip() if is_better_name(display_name, identity) else None,
    )

    _, created = repo.ensure_conversation(
        account_id,
        conversation_id,
        contact_id,
        last_message=summary,
        last_message_at=occurred_at,
        unread_count=unread,
    )

    message = Message(
        id=ids.message_id(identity.phone, external_message_id),
        account_id=account_id,
        conversation_id=conversation_id,
        sender="user" if from_me else "contact",
        content=decoded.content,
        type=decoded.type,
        status="sent" if from_me else "received",
        created_at=occurred_at,
        external_id=external_message_id,
        media_url=decoded.media_url,
        mime_type=decoded.mime_type,
        file_name=decoded.file_name,
    )
    stored_id, inserted = repo.insert_message(message)

    # A new conversation was already seeded with this message
    if inserted and not created:
        repo.apply_message_summary(
            account_id,
            conversation_id,
            last_message=summary,
            last_message_at=occurred_at,
            unread_increment=unread,
        )

    return IngestResult(
        contact_id=contact_id,
        conversation_id=conversation_id,
        message_id=stored_id,
        created_conversation=created,
        duplicate=not inserted,
    )


def mark_read(repo: InboxRepository, account_id: str, conversation_id: str) -> bool:
    """Reset unread_count to 0. Returns False if the conversation is unknown."""
    _require_account(account_id)
    return repo.mark_read(account_id, conversation_id)


def record_outbound(
    repo: InboxRepository,
    account_id: str,
    conversation_id: str,
    content: str,
    *,
    status: MessageStatus,
    external_id: str | None = None,
) -> Message:
    """Persist an agent reply sent from the inbox (sent or failed).

    Raises ConversationNotFoundError for unknown ids. The row is written
    even when the provider rejected the send, so the agent's intent is
    never lost. When the provider id is known it is stored as
    external_id, which makes the provider's fromMe webhook echo a
    duplicate instead of a second row. Unread is reset in either order.
    """
    _require_account(account_id)
    view = repo.get_conversation(account_id, conversation_id)
    if view is None:
        raise ConversationNotFoundError(conversation_id)

    now = utc_now()
    message = Message(
        id=ids.message_id(view.contact.phone, external_id),
        account_id=account_id,
        conversation_id=view.conversation.id,
        sender="user",
        content=content,
        type="text",
        status=status,
        created_at=now,
        external_id=external_id,
    )
    stored_id, inserted = repo.insert_message(message)
    if inserted:
        repo.apply_message_summary(
            account_id,
            view.conversation.id,
            last_message=clip_summary(content),
            last_message_at=now,
            unread_increment=0,
            reset_unread=True,
        )
    else:
        # The provider echo was ingested first; the reply still clears unread
        repo.mark_read(account_id, view.conversation.id)
    if stored_id != message.id:
        return replace(message, id=stored_id)
    return message


def clear_account(repo: InboxRepository, account_id: str) -> ClearResult:
    """Delete every contact, conversation and message of the account."""
    _require_account(account_id)
    return repo.clear_account(account_id)
