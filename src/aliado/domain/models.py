"""Inbox entities: contacts, conversations, messages, webhook logs."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from aliado.whatsapp.models import MessageType

Sender = Literal["user", "contact"]
MessageStatus = Literal["received", "sent", "delivered", "read", "failed"]
ConversationStatus = Literal["open", "resolved"]
ProcessingStatus = Literal["pending", "success", "error"]

VALID_MESSAGE_STATUSES: set[str] = {"received", "sent", "delivered", "read", "failed"}

# Stored conversation summary is clipped; the Message keeps full content
LAST_MESSAGE_MAX_LEN = 100


@dataclass(frozen=True)
class Contact:
    id: str
    account_id: str
    name: str
    phone: str
    is_group: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Conversation:
    id: str
    account_id: str
    contact_id: str
    status: ConversationStatus
    last_message: str
    last_message_at: datetime | None
    unread_count: int
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Message:
    id: str
    account_id: str
    conversation_id: str
    sender: Sender
    content: str
    type: MessageType
    status: MessageStatus
    created_at: datetime
    external_id: str | None = None
    media_url: str | None = None
    mime_type: str | None = None
    file_name: str | None = None


@dataclass(frozen=True)
class WebhookLog:
    id: str
    account_id: str
    event_type: str
    raw_payload: Any
    processing_status: ProcessingStatus
    remote_jid: str | None = None
    phone: str | None = None
    is_group: bool = False
    push_name: str | None = None
    from_me: bool = False
    conversation_id: str | None = None
    contact_id: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ConversationView:
    """Conversation joined with its contact, as the inbox list shows it."""

    conversation: Conversation
    contact: Contact

    def to_dict(self) -> dict[str, Any]:
        conv = self.conversation
        return {
            "id": conv.id,
            "status": conv.status,
            "last_message": conv.last_message,
            "last_message_at": conv.last_message_at.isoformat() if conv.last_message_at else None,
            "unread_count": conv.unread_count,
            "created_at": conv.created_at.isoformat() if conv.created_at else None,
            "contact": {
                "id": self.contact.id,
                "name": self.contact.name,
                "phone": self.contact.phone,
                "is_group": self.contact.is_group,
            },
        }


def clip_summary(content: str) -> str:
    return content[:LAST_MESSAGE_MAX_LEN]


def message_to_dict(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "external_id": message.external_id,
        "sender": message.sender,
        "content": message.content,
        "type": message.type,
        "media_url": message.media_url,
        "file_name": message.file_name,
        "status": message.status,
        "created_at": message.created_at.isoformat(),
    }


@dataclass(frozen=True)
class ClearResult:
    contacts: int = 0
    conversations: int = 0
    messages: int = 0
