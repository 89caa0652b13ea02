"""Conversations (Inbox) endpoints for the dashboard.

Read: conversation list (filterable by groups/individuals), single
conversation, message thread. Write: mark as read, send reply, bulk
reconciliation sync and bulk clear (admin).
"""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from aliado.api.rbac import AccountContext, require_role
from aliado.domain import inbox
from aliado.domain.models import message_to_dict
from aliado.infra.config import ConfigurationError
from aliado.infra.repositories.inbox_repository import inbox_session
from aliado.infra.repositories.webhook_logs_repository import PgWebhookLogStore
from aliado.observability.correlation import get_correlation_id
from aliado.observability.logging import get_logger
from aliado.observability.redaction import hash_identifier, safe_log_context
from aliado.services import reply_service, sync_service
from aliado.services.webhook_audit import WebhookAuditLogger
from aliado.whatsapp.decoder import file_name_for
from aliado.whatsapp.errors import ProviderError
from aliado.whatsapp.evolution_client import EvolutionClient

router = APIRouter(prefix="/conversations", tags=["conversations"])

logger = get_logger(__name__)

ConversationType = Literal["all", "groups", "individual"]

ReadStatus = Literal["all", "unread", "read"]

_GROUP_FILTER: dict[str, bool | None] = {"all": None, "groups": True, "individual": False}
_UNREAD_FILTER: dict[str, bool | None] = {"all": None, "unread": True, "read": False}

_audit_logger = WebhookAuditLogger(PgWebhookLogStore())


def _get_session_factory():
    """Inbox session factory (allows override in tests)."""
    return inbox_session


def _get_audit_logger() -> WebhookAuditLogger:
    return _audit_logger


def _get_evolution_client() -> EvolutionClient:
    """Evolution history client (allows override in tests).

    Raises:
        ConfigurationError: If Evolution credentials are missing.
    """
    return EvolutionClient.from_env()


class SendMessageRequest(BaseModel):
    """Request body for POST /conversations/{id}/messages."""

    text: str = Field(..., min_length=1, max_length=4096)


def _message_payload(message) -> dict:
    body = message_to_dict(message)
    if body["file_name"] is None:
        body["file_name"] = file_name_for(
            message.type, message.id, mime_type=message.mime_type
        )
    return body


@router.get("")
def list_conversations(
    type: ConversationType = Query("all", description="all | groups | individual"),
    status: ReadStatus = Query("all", description="all | unread | read"),
    limit: int = Query(100, ge=1, le=500),
    ctx: AccountContext = Depends(require_role("agent")),
) -> dict:
    """List conversations, most recent activity first."""
    with _get_session_factory()() as repo:
        views = repo.list_conversations(
            ctx.account_id,
            is_group=_GROUP_FILTER[type],
            unread=_UNREAD_FILTER[status],
            limit=limit,
        )
    return {"conversations": [view.to_dict() for view in views]}


@router.post("/sync")
async def sync_conversations(
    ctx: AccountContext = Depends(require_role("admin")),
) -> dict:
    """Reconcile the inbox with the provider's chat history.

    Requires admin role. 503 when Evolution is not configured, 502 when
    the provider cannot list chats.
    """
    correlation_id = get_correlation_id()
    try:
        client = _get_evolution_client()
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=str(e))

    try:
        async with client:
            result = await sync_service.sync(
                ctx.account_id,
                client=client,
                session_factory=_get_session_factory(),
            )
    except ProviderError as e:
        logger.warning(
            "manual sync failed",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id, error_type=type(e).__name__
                )
            },
        )
        raise HTTPException(status_code=502, detail=f"Sync failed: {e}")

    return result.to_dict()


@router.delete("")
def clear_conversations(
    ctx: AccountContext = Depends(require_role("admin")),
) -> dict:
    """Delete every contact, conversation and message of the account."""
    with _get_session_factory()() as repo:
        result = inbox.clear_account(repo, ctx.account_id)

    logger.warning(
        "inbox cleared",
        extra={
            "extra_fields": safe_log_context(
                correlationId=get_correlation_id(),
                account_id=ctx.account_id,
                user_id=ctx.user.id,
                messages=result.messages,
                conversations=result.conversations,
                contacts=result.contacts,
            )
        },
    )
    return {
        "deleted": {
            "contacts": result.contacts,
            "conversations": result.conversations,
            "messages": result.messages,
        }
    }


@router.get("/{conversation_id}")
def get_conversation(
    conversation_id: str = Path(..., description="Conversation ID"),
    ctx: AccountContext = Depends(require_role("agent")),
) -> dict:
    with _get_session_factory()() as repo:
        view = repo.get_conversation(ctx.account_id, conversation_id)
    if view is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return view.to_dict()


@router.get("/{conversation_id}/messages")
def list_messages(
    conversation_id: str = Path(..., description="Conversation ID"),
    ctx: AccountContext = Depends(require_role("agent")),
) -> dict:
    """Message thread in chronological order."""
    with _get_session_factory()() as repo:
        view = repo.get_conversation(ctx.account_id, conversation_id)
        if view is None:
            raise HTTPException(status_code=404, detail="Conversation not found")
        messages = repo.list_messages(ctx.account_id, conversation_id)
    return {"messages": [_message_payload(m) for m in messages]}


@router.post("/{conversation_id}/read")
def mark_read(
    conversation_id: str = Path(..., description="Conversation ID"),
    ctx: AccountContext = Depends(require_role("agent")),
) -> dict:
    with _get_session_factory()() as repo:
        found = inbox.mark_read(repo, ctx.account_id, conversation_id)
    if not found:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"success": True, "unread_count": 0}


@router.post("/{conversation_id}/messages", status_code=201)
def send_message(
    body: SendMessageRequest,
    conversation_id: str = Path(..., description="Conversation ID"),
    ctx: AccountContext = Depends(require_role("agent")),
):
    """Send a reply through Evolution.

    201 with the stored message when sent. When the send fails the
    message is still stored with status "failed" and returned, with 502
    (provider error) or 503 (provider not configured).
    """
    correlation_id = get_correlation_id()
    try:
        result = reply_service.send_reply(
            ctx.account_id,
            conversation_id,
            body.text,
            session_factory=_get_session_factory(),
            audit=_get_audit_logger(),
        )
    except inbox.ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found")

    logger.info(
        "reply processed",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                account_id=ctx.account_id,
                user_id=ctx.user.id,
                conversation_hash=hash_identifier(conversation_id),
                sent=result.sent,
            )
        },
    )

    message = _message_payload(result.message)
    if result.sent:
        return {"message": message}

    status_code = 503 if isinstance(result.error, ConfigurationError) else 502
    return JSONResponse(
        status_code=status_code,
        content={"error": str(result.error), "message": message},
    )
