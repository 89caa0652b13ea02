"""Bulk reconciliation sync - pull chat history from Evolution into the inbox.

Webhooks can be missed (instance offline, misconfigured URL), so the
inbox can be rebuilt from the provider's own history. The merge is
additive: every historical message goes through the same ingest() as a
webhook, deduplicated by its provider id, so repeated or overlapping
runs converge on the same state and nothing is ever deleted.

Provider calls are awaited on the event loop; database work for one chat
runs in a worker thread (run_in_threadpool) inside one transaction.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from starlette.concurrency import run_in_threadpool

from aliado.domain.inbox import SELF_DISPLAY_NAMES, InboxRepository, ingest
from aliado.infra.db import StorageError
from aliado.infra.time import from_epoch_seconds
from aliado.observability.correlation import get_correlation_id
from aliado.observability.logging import get_logger
from aliado.observability.redaction import hash_identifier, safe_log_context
from aliado.whatsapp.decoder import decode
from aliado.whatsapp.errors import ProviderError
from aliado.whatsapp.evolution_client import EvolutionClient
from aliado.whatsapp.identity import InvalidIdentityError, normalize
from aliado.whatsapp.models import DecodedMessage, Identity

logger = get_logger(__name__)

SessionFactory = Callable[[], AbstractContextManager[InboxRepository]]


@dataclass
class SyncResult:
    new_conversations: int = 0
    updated_conversations: int = 0
    skipped: int = 0
    messages_ingested: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "newConversations": self.new_conversations,
            "updatedConversations": self.updated_conversations,
            "skipped": self.skipped,
            "messagesIngested": self.messages_ingested,
        }


@dataclass(frozen=True)
class HistoryEntry:
    """One provider history record, decoded and ready to ingest."""

    external_id: str | None
    from_me: bool
    timestamp: datetime | None
    decoded: DecodedMessage


def _history_entry(record: dict[str, Any]) -> HistoryEntry:
    key = record.get("key") if isinstance(record.get("key"), dict) else {}
    external_id = key.get("id") if isinstance(key.get("id"), str) else None
    return HistoryEntry(
        external_id=external_id or None,
        from_me=bool(key.get("fromMe", False)),
        timestamp=from_epoch_seconds(record.get("messageTimestamp")),
        decoded=decode(record.get("message")),
    )


def _oldest_first(entries: list[HistoryEntry]) -> list[HistoryEntry]:
    # Undated records sort first so dated ones decide the summary
    return sorted(entries, key=lambda e: e.timestamp.timestamp() if e.timestamp else 0.0)


def contact_push_name(records: list[dict[str, Any]]) -> str | None:
    """First pushName written by the counterparty (not by the account owner)."""
    for record in records:
        key = record.get("key") if isinstance(record.get("key"), dict) else {}
        if key.get("fromMe"):
            continue
        name = record.get("pushName")
        if isinstance(name, str) and name.strip() and name.strip() not in SELF_DISPLAY_NAMES:
            return name.strip()
    return None


def _ingest_chat(
    session_factory: SessionFactory,
    account_id: str,
    identity: Identity,
    display_name: str | None,
    entries: list[HistoryEntry],
) -> tuple[bool, int]:
    """Ingest one chat's history in one transaction. Returns (created, new messages)."""
    created = False
    inserted = 0
    with session_factory() as repo:
        for index, entry in enumerate(entries):
            result = ingest(
                repo,
                account_id,
                identity,
                entry.decoded,
                from_me=entry.from_me,
                external_message_id=entry.external_id,
                timestamp=entry.timestamp,
                display_name=display_name,
            )
            if index == 0:
                created = result.created_conversation
            if not result.duplicate:
                inserted += 1
    return created, inserted


async def _display_name(
    client: EvolutionClient,
    remote_jid: str,
    identity: Identity,
    records: list[dict[str, Any]],
) -> str | None:
    if identity.is_group:
        # None lets ingest() fall back to the "Grupo <id>" placeholder
        return await client.find_group_name(remote_jid)
    return contact_push_name(records)


async def sync(
    account_id: str,
    *,
    client: EvolutionClient,
    session_factory: SessionFactory,
) -> SyncResult:
    """Reconcile every chat of the Evolution instance into the account's inbox.

    Args:
        account_id: Account receiving the conversations (required).
        client: Open EvolutionClient bound to the instance to read.
        session_factory: Context manager factory yielding a repository
            bound to one transaction (inbox_session in production).

    Returns:
        SyncResult counters.

    Raises:
        ProviderError: If the chat list itself cannot be fetched.
    """
    if not account_id:
        raise ValueError("account_id is required")

    correlation_id = get_correlation_id()
    result = SyncResult()

    chats = await client.find_chats()

    for chat in chats:
        last_message = chat.get("lastMessage")
        key = last_message.get("key") if isinstance(last_message, dict) else None
        if not isinstance(key, dict):
            result.skipped += 1
            continue

        remote_jid = key.get("remoteJid") or chat.get("remoteJid") or ""
        chat_hash = hash_identifier(remote_jid)
        try:
            identity = normalize(remote_jid, key.get("senderPn") or chat.get("senderPn"))
        except InvalidIdentityError as e:
            logger.warning(
                "sync skipped chat with invalid identity",
                extra={
                    "extra_fields": safe_log_context(
                        correlationId=correlation_id, chat_hash=chat_hash, reason=str(e)
                    )
                },
            )
            result.skipped += 1
            continue

        try:
            records = await client.find_messages(remote_jid)
        except ProviderError as e:
            logger.warning(
                "sync failed to fetch chat history",
                extra={
                    "extra_fields": safe_log_context(
                        correlationId=correlation_id,
                        chat_hash=chat_hash,
                        error_type=type(e).__name__,
                    )
                },
            )
            result.skipped += 1
            continue

        if not records:
            result.skipped += 1
            continue

        entries = _oldest_first([_history_entry(record) for record in records])
        display_name = await _display_name(client, remote_jid, identity, records)

        try:
            created, inserted = await run_in_threadpool(
                _ingest_chat, session_factory, account_id, identity, display_name, entries
            )
        except StorageError:
            logger.exception(
                "sync failed to store chat",
                extra={
                    "extra_fields": safe_log_context(
                        correlationId=correlation_id, chat_hash=chat_hash
                    )
                },
            )
            result.skipped += 1
            continue

        if created:
            result.new_conversations += 1
        else:
            result.updated_conversations += 1
        result.messages_ingested += inserted

    logger.info(
        "sync completed",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                account_id=account_id,
                chats=len(chats),
                **result.to_dict(),
            )
        },
    )
    return result
