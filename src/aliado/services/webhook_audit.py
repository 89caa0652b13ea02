"""Webhook audit logger - one webhook_logs row per received provider event.

The audit trail is secondary to ingestion: a failure to write it is
reported through the JSON logger and never raised to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from aliado.domain.models import ProcessingStatus
from aliado.observability.logging import get_logger
from aliado.observability.redaction import safe_log_context

logger = get_logger(__name__)

# Error text is stored for operators; keep rows bounded
MAX_ERROR_LEN = 500


class WebhookLogStore(Protocol):
    def insert(self, **fields: Any) -> str: ...

    def update(self, log_id: str, **fields: Any) -> None: ...


@dataclass
class AuditContext:
    """What is known about an event before (or without) ingesting it."""

    account_id: str
    event_type: str
    raw_payload: Any
    remote_jid: str | None = None
    phone: str | None = None
    is_group: bool = False
    push_name: str | None = None
    from_me: bool = False


def _clip_error(message: str | None) -> str | None:
    if message is None:
        return None
    return message[:MAX_ERROR_LEN]


class WebhookAuditLogger:
    """Writes audit rows through a WebhookLogStore, swallowing its failures."""

    def __init__(self, store: WebhookLogStore) -> None:
        self.store = store

    def _row(self, context: AuditContext) -> dict[str, Any]:
        return {
            "account_id": context.account_id,
            "event_type": context.event_type or "unknown",
            "raw_payload": context.raw_payload,
            "remote_jid": context.remote_jid,
            "phone": context.phone,
            "is_group": context.is_group,
            "push_name": context.push_name,
            "from_me": context.from_me,
        }

    def log_pending(self, context: AuditContext) -> str | None:
        """Record the event as pending. Returns the log id, or None on failure."""
        try:
            return self.store.insert(**self._row(context), processing_status="pending")
        except Exception:
            logger.exception(
                "webhook audit insert failed",
                extra={"extra_fields": safe_log_context(event_type=context.event_type)},
            )
            return None

    def log_terminal(
        self,
        log_id: str | None,
        status: ProcessingStatus,
        *,
        phone: str | None = None,
        is_group: bool | None = None,
        contact_id: str | None = None,
        conversation_id: str | None = None,
        error_message: str | None = None,
    ) -> None:
        """Move a pending row to success/error. No-op when log_pending failed."""
        if log_id is None:
            return
        try:
            self.store.update(
                log_id,
                processing_status=status,
                phone=phone,
                is_group=is_group,
                contact_id=contact_id,
                conversation_id=conversation_id,
                error_message=_clip_error(error_message),
            )
        except Exception:
            logger.exception(
                "webhook audit update failed",
                extra={"extra_fields": safe_log_context(status=status)},
            )

    def log_event(
        self,
        context: AuditContext,
        status: ProcessingStatus,
        *,
        contact_id: str | None = None,
        conversation_id: str | None = None,
        error_message: str | None = None,
    ) -> str | None:
        """Single-shot row for events with nothing to process (or outbound sends)."""
        try:
            return self.store.insert(
                **self._row(context),
                processing_status=status,
                contact_id=contact_id,
                conversation_id=conversation_id,
                error_message=_clip_error(error_message),
            )
        except Exception:
            logger.exception(
                "webhook audit insert failed",
                extra={
                    "extra_fields": safe_log_context(
                        event_type=context.event_type, status=status
                    )
                },
            )
            return None
