"""Async Evolution API client for history reads (chat list, messages, groups).

Used by the reconciliation sync, which must not block the event loop:
every call is an await point with a bounded timeout.
"""

from __future__ import annotations

import urllib.parse
from typing import Any

import httpx

from aliado.infra.config import EvolutionConfig, get_evolution_config
from aliado.observability.logging import get_logger
from aliado.observability.redaction import hash_identifier, safe_log_context

from .errors import ProviderSendError, ProviderTimeoutError

logger = get_logger(__name__)


def _records(body: Any) -> list[dict[str, Any]]:
    """Unwrap the list shapes Evolution versions return.

    v1: [...]; v2: {"messages": {"records": [...]}} or {"records": [...]}.
    """
    if isinstance(body, list):
        return [item for item in body if isinstance(item, dict)]
    if isinstance(body, dict):
        for key in ("messages", "chats"):
            inner = body.get(key)
            if inner is not None:
                return _records(inner)
        records = body.get("records")
        if isinstance(records, list):
            return [item for item in records if isinstance(item, dict)]
    return []


class EvolutionClient:
    """Thin async wrapper over the Evolution chat endpoints.

    Use as an async context manager so the underlying connection pool is
    closed after a sync run:

        async with EvolutionClient.from_env() as client:
            chats = await client.find_chats()
    """

    def __init__(
        self,
        config: EvolutionConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            headers={"apikey": config.api_key, "Content-Type": "application/json"},
            timeout=httpx.Timeout(config.timeout, connect=min(config.timeout, 5.0)),
            transport=transport,
        )

    @classmethod
    def from_env(cls, instance: str | None = None) -> "EvolutionClient":
        return cls(get_evolution_config(instance))

    async def __aenter__(self) -> "EvolutionClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def _instance_path(self) -> str:
        return urllib.parse.quote(self.config.instance, safe="")

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"{method} request timed out") from e
        except httpx.HTTPError as e:
            raise ProviderSendError(f"{method} request failed: {type(e).__name__}") from e

        if response.status_code >= 400:
            raise ProviderSendError(
                f"provider returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise ProviderSendError("provider returned invalid json") from e

    async def find_chats(self) -> list[dict[str, Any]]:
        """All chats of the instance, each with its `lastMessage` when known."""
        body = await self._request("POST", f"/chat/findChats/{self._instance_path}", json={})
        chats = _records(body)
        logger.info(
            "evolution chats fetched",
            extra={"extra_fields": safe_log_context(chat_count=len(chats))},
        )
        return chats

    async def find_messages(self, remote_jid: str) -> list[dict[str, Any]]:
        """Full message history for one chat (provider order, unsorted)."""
        body = await self._request(
            "POST",
            f"/chat/findMessages/{self._instance_path}",
            json={"where": {"key": {"remoteJid": remote_jid}}},
        )
        messages = _records(body)
        logger.debug(
            "evolution messages fetched",
            extra={
                "extra_fields": safe_log_context(
                    chat_hash=hash_identifier(remote_jid), message_count=len(messages)
                )
            },
        )
        return messages

    async def find_group_name(self, group_jid: str) -> str | None:
        """Group subject, or None when metadata is unavailable."""
        try:
            body = await self._request(
                "GET",
                f"/group/findGroupInfos/{self._instance_path}",
                params={"groupJid": group_jid},
            )
        except (ProviderSendError, ProviderTimeoutError) as e:
            logger.warning(
                "group metadata unavailable",
                extra={
                    "extra_fields": safe_log_context(
                        chat_hash=hash_identifier(group_jid), error_type=type(e).__name__
                    )
                },
            )
            return None
        if isinstance(body, dict):
            subject = body.get("subject") or body.get("name")
            if isinstance(subject, str) and subject.strip():
                return subject.strip()
        return None
