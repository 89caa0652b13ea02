"""Webhook logs endpoints - audit trail of received provider events (admin)."""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Path, Query

from aliado.api.rbac import AccountContext, require_role
from aliado.domain.models import WebhookLog
from aliado.infra.repositories.webhook_logs_repository import PgWebhookLogStore

router = APIRouter(prefix="/webhook-logs", tags=["webhook-logs"])

_store = PgWebhookLogStore()


def _get_store() -> PgWebhookLogStore:
    """Log store (allows override in tests)."""
    return _store


def _log_to_dict(log: WebhookLog, *, include_payload: bool) -> dict:
    body = {
        "id": log.id,
        "event_type": log.event_type,
        "processing_status": log.processing_status,
        "remote_jid": log.remote_jid,
        "phone": log.phone,
        "is_group": log.is_group,
        "push_name": log.push_name,
        "from_me": log.from_me,
        "conversation_id": log.conversation_id,
        "contact_id": log.contact_id,
        "error_message": log.error_message,
        "created_at": log.created_at.isoformat() if log.created_at else None,
        "updated_at": log.updated_at.isoformat() if log.updated_at else None,
    }
    if include_payload:
        body["raw_payload"] = log.raw_payload
    return body


@router.get("")
def list_webhook_logs(
    status: Literal["pending", "success", "error"] | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    ctx: AccountContext = Depends(require_role("admin")),
) -> dict:
    """Newest first; raw payloads only on the detail endpoint."""
    logs = _get_store().list_logs(ctx.account_id, status=status, limit=limit)
    return {"logs": [_log_to_dict(log, include_payload=False) for log in logs]}


@router.get("/{log_id}")
def get_webhook_log(
    log_id: str = Path(..., description="Webhook log ID"),
    ctx: AccountContext = Depends(require_role("admin")),
) -> dict:
    log = _get_store().get_log(ctx.account_id, log_id)
    if log is None:
        raise HTTPException(status_code=404, detail="Webhook log not found")
    return _log_to_dict(log, include_payload=True)
