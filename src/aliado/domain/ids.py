"""Deterministic identifiers derived from a normalized phone.

Every ingestion path (webhook, sync, outbound) uses these, so replaying
an event always lands on the same rows.
"""

import hashlib
import re
import uuid

_UNSAFE = re.compile(r"[^A-Za-z0-9_.\-]")


def contact_id(phone: str) -> str:
    return f"contact_{phone}"


def conversation_id(phone: str) -> str:
    return f"conv_{phone}"


def _provider_token(external_id: str) -> str:
    """Provider id as an id fragment, kept verbatim when already safe.

    Rewritten ids get a digest of the original after "~", a character
    the verbatim form never contains, so two provider ids never share a
    fragment.
    """
    safe = _UNSAFE.sub("_", external_id)
    if safe == external_id:
        return external_id
    digest = hashlib.sha1(external_id.encode("utf-8")).hexdigest()[:12]
    return f"{safe}~{digest}"


def message_id(phone: str, external_id: str | None) -> str:
    """Message id: stable for provider events, random for local ones."""
    if external_id:
        return f"msg_{phone}_{_provider_token(external_id)}"
    return f"msg_{uuid.uuid4().hex}"
