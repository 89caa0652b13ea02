"""Webhook logs repository - audit rows for every received provider event.

Each write opens its own short transaction (txn()), independent of the
ingestion transaction, so an audit row survives an ingestion rollback.
"""

from __future__ import annotations

from typing import Any

from psycopg2.extras import Json

from aliado.domain.models import ProcessingStatus, WebhookLog
from aliado.infra.db import fetchall, fetchone, txn

_COLUMNS = (
    "id, account_id, event_type, raw_payload, processing_status, remote_jid, phone, "
    "is_group, push_name, from_me, conversation_id, contact_id, error_message, "
    "created_at, updated_at"
)


def _log_from_row(row: tuple[Any, ...]) -> WebhookLog:
    return WebhookLog(
        id=str(row[0]),
        account_id=row[1],
        event_type=row[2],
        raw_payload=row[3],
        processing_status=row[4],
        remote_jid=row[5],
        phone=row[6],
        is_group=bool(row[7]),
        push_name=row[8],
        from_me=bool(row[9]),
        conversation_id=row[10],
        contact_id=row[11],
        error_message=row[12],
        created_at=row[13],
        updated_at=row[14],
    )


class PgWebhookLogStore:
    """Storage for WebhookAuditLogger."""

    def insert(
        self,
        *,
        account_id: str,
        event_type: str,
        raw_payload: Any,
        processing_status: ProcessingStatus,
        remote_jid: str | None = None,
        phone: str | None = None,
        is_group: bool = False,
        push_name: str | None = None,
        from_me: bool = False,
        conversation_id: str | None = None,
        contact_id: str | None = None,
        error_message: str | None = None,
    ) -> str:
        with txn() as cur:
            cur.execute(
                """
                INSERT INTO webhook_logs (
                    account_id, event_type, raw_payload, processing_status,
                    remote_jid, phone, is_group, push_name, from_me,
                    conversation_id, contact_id, error_message
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    account_id,
                    event_type,
                    Json(raw_payload),
                    processing_status,
                    remote_jid,
                    phone,
                    is_group,
                    push_name,
                    from_me,
                    conversation_id,
                    contact_id,
                    error_message,
                ),
            )
            row = cur.fetchone()
        return str(row[0])

    def update(
        self,
        log_id: str,
        *,
        processing_status: ProcessingStatus,
        phone: str | None = None,
        is_group: bool | None = None,
        conversation_id: str | None = None,
        contact_id: str | None = None,
        error_message: str | None = None,
    ) -> None:
        with txn() as cur:
            cur.execute(
                """
                UPDATE webhook_logs
                SET processing_status = %s,
                    phone = COALESCE(%s, phone),
                    is_group = COALESCE(%s, is_group),
                    conversation_id = COALESCE(%s, conversation_id),
                    contact_id = COALESCE(%s, contact_id),
                    error_message = %s,
                    updated_at = now()
                WHERE id = %s
                """,
                (
                    processing_status,
                    phone,
                    is_group,
                    conversation_id,
                    contact_id,
                    error_message,
                    log_id,
                ),
            )

    def list_logs(
        self,
        account_id: str,
        *,
        status: ProcessingStatus | None = None,
        limit: int = 100,
    ) -> list[WebhookLog]:
        with txn() as cur:
            rows = fetchall(
                cur,
                f"""
                SELECT {_COLUMNS} FROM webhook_logs
                WHERE account_id = %s
                  AND (%s::TEXT IS NULL OR processing_status = %s::TEXT)
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (account_id, status, status, limit),
            )
        return [_log_from_row(row) for row in rows]

    def get_log(self, account_id: str, log_id: str) -> WebhookLog | None:
        with txn() as cur:
            row = fetchone(
                cur,
                f"""
                SELECT {_COLUMNS} FROM webhook_logs
                WHERE account_id = %s AND id::TEXT = %s
                """,
                (account_id, log_id),
            )
        return _log_from_row(row) if row else None
