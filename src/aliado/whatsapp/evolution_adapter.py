"""Evolution API adapter - validate and flatten webhook payloads."""

from typing import Any

from aliado.infra.time import from_epoch_seconds

from .models import NormalizedInbound

MESSAGES_UPSERT = "messages.upsert"


class InvalidPayloadError(Exception):
    """Raised when Evolution payload has invalid shape."""

    pass


def event_type(payload: Any) -> str:
    """Event name of a webhook payload ("" when absent).

    Evolution v2 sends "messages.upsert"; some deployments send the
    enum form "MESSAGES_UPSERT".
    """
    if not isinstance(payload, dict):
        return ""
    event = payload.get("event")
    if not isinstance(event, str):
        return ""
    return event.strip().lower().replace("_", ".")


def _str_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def normalize(payload: dict[str, Any]) -> NormalizedInbound:
    """Normalize a `messages.upsert` payload.

    Accepts both layouts seen in the wild: `data` holding the message
    record directly, and `data.message` holding a record with its own
    `key` (older Evolution builds).

    Args:
        payload: Raw webhook payload from Evolution API.

    Returns:
        NormalizedInbound (contains PII - see model docstring).

    Raises:
        InvalidPayloadError: If `data`, `data.key`, the message id or
            remoteJid is missing.
    """
    if not isinstance(payload, dict):
        raise InvalidPayloadError("payload is not an object")

    data = payload.get("data")
    if isinstance(data, list) and data:
        data = data[0]
    if not isinstance(data, dict):
        raise InvalidPayloadError("missing data")

    record = data
    if not isinstance(record.get("key"), dict) and isinstance(data.get("message"), dict):
        nested = data["message"]
        if isinstance(nested.get("key"), dict):
            record = nested

    key = record.get("key")
    if not isinstance(key, dict):
        raise InvalidPayloadError("missing key")

    message_id = key.get("id")
    if not message_id or not isinstance(message_id, str):
        raise InvalidPayloadError("missing or invalid message_id")

    remote_jid = key.get("remoteJid", "")
    if not remote_jid or not isinstance(remote_jid, str):
        raise InvalidPayloadError("missing remoteJid")

    raw_message = record.get("message")

    return NormalizedInbound(
        event=event_type(payload) or MESSAGES_UPSERT,
        message_id=message_id,
        remote_jid=remote_jid,
        from_me=bool(key.get("fromMe", False)),
        sender_pn=_str_or_none(key.get("senderPn")) or _str_or_none(record.get("senderPn")),
        push_name=_str_or_none(record.get("pushName")),
        timestamp=from_epoch_seconds(record.get("messageTimestamp")),
        raw_message=raw_message if isinstance(raw_message, dict) else {},
        instance=_str_or_none(payload.get("instance")),
    )


def peek_audit_fields(payload: Any) -> dict[str, Any]:
    """Best-effort fields for the audit log, even from a broken payload."""
    fields: dict[str, Any] = {"remote_jid": None, "push_name": None, "from_me": False}
    if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
        return fields
    data = payload["data"]
    key = data.get("key") if isinstance(data.get("key"), dict) else {}
    fields["remote_jid"] = _str_or_none(key.get("remoteJid"))
    fields["push_name"] = _str_or_none(data.get("pushName"))
    fields["from_me"] = bool(key.get("fromMe", False))
    return fields
