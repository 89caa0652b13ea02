"""Agent replies - send through Evolution and record the outcome.

The message row is written whatever the provider says: status "sent"
with the provider id, or status "failed" so the UI can show the failure
and let the agent retry. Each send also leaves a `messages.send` row in
the webhook audit log.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Callable

from aliado.domain.inbox import ConversationNotFoundError, InboxRepository, record_outbound
from aliado.domain.models import Message
from aliado.infra.config import ConfigurationError
from aliado.observability.correlation import get_correlation_id
from aliado.observability.logging import get_logger
from aliado.observability.redaction import hash_identifier, safe_log_context
from aliado.whatsapp.errors import ProviderError
from aliado.whatsapp.identity import to_jid
from aliado.whatsapp.outbound import send_text_via_evolution

from .webhook_audit import AuditContext, WebhookAuditLogger

logger = get_logger(__name__)

SEND_EVENT = "messages.send"

SessionFactory = Callable[[], AbstractContextManager[InboxRepository]]


@dataclass(frozen=True)
class ReplyResult:
    message: Message
    error: ProviderError | ConfigurationError | None = None

    @property
    def sent(self) -> bool:
        return self.error is None


def send_reply(
    account_id: str,
    conversation_id: str,
    text: str,
    *,
    session_factory: SessionFactory,
    audit: WebhookAuditLogger,
) -> ReplyResult:
    """Send `text` to the conversation's contact and persist the message.

    Raises:
        ConversationNotFoundError: Unknown conversation for this account.
        StorageError: The message could not be persisted.
    """
    correlation_id = get_correlation_id()

    with session_factory() as repo:
        view = repo.get_conversation(account_id, conversation_id)
    if view is None:
        raise ConversationNotFoundError(conversation_id)

    to_ref = to_jid(view.contact.phone, is_group=view.contact.is_group)
    provider_id: str | None = None
    error: ProviderError | ConfigurationError | None = None

    try:
        provider_id = send_text_via_evolution(
            to_ref=to_ref, text=text, correlation_id=correlation_id
        )
    except (ProviderError, ConfigurationError) as e:
        error = e
        logger.warning(
            "reply send failed",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    conversation_hash=hash_identifier(conversation_id),
                    error_type=type(e).__name__,
                )
            },
        )

    with session_factory() as repo:
        message = record_outbound(
            repo,
            account_id,
            conversation_id,
            text,
            status="failed" if error else "sent",
            external_id=provider_id,
        )

    audit.log_event(
        AuditContext(
            account_id=account_id,
            event_type=SEND_EVENT,
            raw_payload={"number": to_ref, "text": text, "messageId": provider_id},
            remote_jid=to_ref,
            phone=view.contact.phone,
            is_group=view.contact.is_group,
            from_me=True,
        ),
        "error" if error else "success",
        contact_id=view.contact.id,
        conversation_id=conversation_id,
        error_message=str(error) if error else None,
    )

    return ReplyResult(message=message, error=error)
