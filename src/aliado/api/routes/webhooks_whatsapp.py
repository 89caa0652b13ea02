"""WhatsApp webhook routes - Evolution API integration.

Pipeline per event:
  payload adapter -> identity normalizer -> decoder -> ingest() -> Postgres

Every event received with a valid secret leaves exactly one webhook_logs
row (pending -> success/error, or a single row for unhandled events).

Status codes drive the provider's retry: 200 means "do not resend"
(ingested, unhandled, or permanently unusable identity); 500 means
"resend" (broken structure, missing configuration, storage or any
unexpected failure). A request without X-Account-Id gets 400 and no row.
Ingestion is idempotent, so a resend never duplicates a message.

Logs contain NO PII: no JIDs, phones, names or message text.
"""

from __future__ import annotations

import hmac
from typing import Any

from fastapi import APIRouter, Header, Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from aliado.domain.inbox import ingest
from aliado.infra.config import LOCAL_ENVS, ConfigurationError, get_app_env, get_webhook_secret
from aliado.infra.db import StorageError
from aliado.infra.repositories.inbox_repository import inbox_session
from aliado.infra.repositories.webhook_logs_repository import PgWebhookLogStore
from aliado.observability.correlation import get_correlation_id
from aliado.observability.logging import get_logger
from aliado.observability.redaction import hash_identifier, id_prefix, safe_log_context
from aliado.services.webhook_audit import AuditContext, WebhookAuditLogger
from aliado.whatsapp import identity as identity_normalizer
from aliado.whatsapp.decoder import decode
from aliado.whatsapp.evolution_adapter import (
    MESSAGES_UPSERT,
    InvalidPayloadError,
    event_type,
    normalize,
    peek_audit_fields,
)

router = APIRouter(prefix="/webhooks/whatsapp", tags=["webhooks"])

logger = get_logger(__name__)

UNHANDLED_EVENT_MESSAGE = "Event received but not processed"

_audit_logger = WebhookAuditLogger(PgWebhookLogStore())


def _get_session_factory():
    """Inbox session factory (allows test injection)."""
    return inbox_session


def _get_audit_logger() -> WebhookAuditLogger:
    """Audit logger instance (allows test injection)."""
    return _audit_logger


def _secret_rejected(provided: str | None, correlation_id: str) -> bool:
    """Validate X-Webhook-Secret (fail-closed outside local/test)."""
    expected = get_webhook_secret()
    if not expected:
        if get_app_env() in LOCAL_ENVS:
            logger.warning(
                "EVOLUTION_WEBHOOK_SECRET not set - skipping validation (local dev)",
                extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
            )
            return False
        logger.error(
            "EVOLUTION_WEBHOOK_SECRET not configured - rejecting webhook (fail-closed)",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return True
    if not provided or not hmac.compare_digest(provided, expected):
        logger.warning(
            "evolution webhook secret mismatch",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return True
    return False


def _process_event(
    payload: Any, account_id: str, correlation_id: str
) -> tuple[int, dict[str, Any]]:
    """Run the pipeline for one parsed payload. Returns (status, body)."""
    audit = _get_audit_logger()
    event = event_type(payload)
    peeked = peek_audit_fields(payload)
    context = AuditContext(
        account_id=account_id,
        event_type=event or "unknown",
        raw_payload=payload,
        remote_jid=peeked["remote_jid"],
        push_name=peeked["push_name"],
        from_me=peeked["from_me"],
    )

    if event != MESSAGES_UPSERT:
        audit.log_event(context, "success")
        logger.info(
            "evolution event not processed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, event=event)},
        )
        return 200, {"success": True, "message": UNHANDLED_EVENT_MESSAGE}

    log_id = audit.log_pending(context)

    try:
        return _run_pipeline(payload, account_id, correlation_id, audit, log_id)
    except Exception as e:
        logger.exception(
            "webhook processing crashed",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    account_id=account_id,
                    error_type=type(e).__name__,
                )
            },
        )
        audit.log_terminal(log_id, "error", error_message=f"{type(e).__name__}: {e}")
        return 500, {"error": "Failed to process event"}


def _run_pipeline(
    payload: Any,
    account_id: str,
    correlation_id: str,
    audit: WebhookAuditLogger,
    log_id: str | None,
) -> tuple[int, dict[str, Any]]:
    """Stages after the pending audit row. Expected failures end the row here."""
    # 1. Structure
    try:
        msg = normalize(payload)
    except InvalidPayloadError as e:
        logger.warning(
            "invalid evolution payload shape",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, reason=str(e))},
        )
        audit.log_terminal(log_id, "error", error_message=f"Invalid payload: {e}")
        return 500, {"error": f"Invalid payload: {e}"}

    # 2. Identity
    try:
        identity = identity_normalizer.normalize(msg.remote_jid, msg.sender_pn)
    except identity_normalizer.InvalidIdentityError as e:
        logger.warning(
            "evolution event skipped: invalid identity",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    message_id_prefix=id_prefix(msg.message_id),
                    reason=str(e),
                )
            },
        )
        audit.log_terminal(log_id, "error", error_message=f"Invalid identity: {e}")
        return 200, {"success": False, "skipped": True, "error": f"Invalid identity: {e}"}

    # 3. Content
    decoded = decode(msg.raw_message)

    # pushName names the sender: the agent on fromMe, a participant in groups
    display_name = None if (msg.from_me or identity.is_group) else msg.push_name

    # 4. Upsert
    try:
        with _get_session_factory()() as repo:
            result = ingest(
                repo,
                account_id,
                identity,
                decoded,
                from_me=msg.from_me,
                external_message_id=msg.message_id,
                timestamp=msg.timestamp,
                display_name=display_name,
            )
    except (StorageError, ConfigurationError) as e:
        logger.exception(
            "webhook processing failed",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    account_id=account_id,
                    error_type=type(e).__name__,
                )
            },
        )
        audit.log_terminal(
            log_id,
            "error",
            phone=identity.phone,
            is_group=identity.is_group,
            error_message=str(e),
        )
        return 500, {"error": "Failed to store message"}

    audit.log_terminal(
        log_id,
        "success",
        phone=identity.phone,
        is_group=identity.is_group,
        contact_id=result.contact_id,
        conversation_id=result.conversation_id,
    )

    logger.info(
        "evolution message ingested",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                account_id=account_id,
                conversation_hash=hash_identifier(result.conversation_id),
                message_id_prefix=id_prefix(msg.message_id),
                kind=decoded.kind.value,
                from_me=msg.from_me,
                created_conversation=result.created_conversation,
                duplicate=result.duplicate,
            )
        },
    )

    return 200, {
        "success": True,
        "conversationId": result.conversation_id,
        "messageId": result.message_id,
        "contactId": result.contact_id,
        "phoneNumber": identity.phone,
        "duplicate": result.duplicate,
    }


@router.post("/evolution")
async def evolution_webhook(
    request: Request,
    x_account_id: str | None = Header(None, alias="X-Account-Id"),
    x_webhook_secret: str | None = Header(None, alias="X-Webhook-Secret"),
) -> Response:
    """Receive an Evolution API webhook.

    Args:
        request: FastAPI request object.
        x_account_id: Account receiving the event (required, non-blank).
        x_webhook_secret: Shared secret, checked against EVOLUTION_WEBHOOK_SECRET.

    Returns:
        200 for ingested, duplicate, unhandled or unusable-identity events.
        400 without an account (no audit row: logs are account-scoped).
        401 if secret validation fails.
        500 for malformed JSON/structure or storage/config failures.
    """
    correlation_id = get_correlation_id()

    if _secret_rejected(x_webhook_secret, correlation_id):
        return JSONResponse(status_code=401, content={"error": "unauthorized"})

    account_id = (x_account_id or "").strip()
    if not account_id:
        logger.warning(
            "webhook rejected: missing X-Account-Id",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return JSONResponse(status_code=400, content={"error": "X-Account-Id header is required"})

    try:
        payload: Any = await request.json()
    except ValueError:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        await run_in_threadpool(
            _get_audit_logger().log_event,
            AuditContext(account_id=account_id, event_type="unknown", raw_payload=None),
            "error",
            error_message="Invalid JSON body",
        )
        return JSONResponse(status_code=500, content={"error": "Invalid JSON body"})

    status_code, body = await run_in_threadpool(
        _process_event, payload, account_id, correlation_id
    )
    return JSONResponse(status_code=status_code, content=body)
