"""WhatsApp inbound models - normalized views of Evolution payloads."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

MessageType = Literal["text", "image", "video", "audio", "document"]


class MessageKind(str, Enum):
    """Closed set of provider message shapes, in decode precedence order."""

    CONVERSATION = "conversation"
    EXTENDED_TEXT = "extendedTextMessage"
    IMAGE = "imageMessage"
    VIDEO = "videoMessage"
    DOCUMENT = "documentMessage"
    AUDIO = "audioMessage"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Identity:
    """Canonical counterparty identity derived from a routing address."""

    phone: str
    is_group: bool


@dataclass(frozen=True)
class DecodedMessage:
    """Provider message reduced to what the inbox stores and displays."""

    content: str
    type: MessageType
    media_url: str | None
    kind: MessageKind = MessageKind.UNKNOWN
    mime_type: str | None = None
    file_name: str | None = None


@dataclass(frozen=True)
class NormalizedInbound:
    """Evolution `messages.upsert` event flattened for ingestion.

    ATENÇÃO PII: remote_jid, sender_pn, push_name and raw_message carry
    personal data. Never log them; pass them only to the normalizer,
    decoder and audit log.
    """

    event: str
    message_id: str
    remote_jid: str
    from_me: bool
    sender_pn: str | None
    push_name: str | None
    timestamp: datetime | None
    raw_message: dict[str, Any] = field(default_factory=dict)
    instance: str | None = None
