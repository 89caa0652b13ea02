"""Identity normalizer - routing address (JID) to canonical phone digits.

Evolution delivers the same counterparty under different address
conventions:

- "5511999998888@s.whatsapp.net"  individual, real phone number
- "225099319910513@lid"           individual, opaque linked-device id
- "120363025@g.us"                group

For @lid addresses the real number only arrives in `senderPn`, so the
alternate sender address wins whenever it is supplied for a non-group
chat. Conversation and contact ids are derived from the output, so
normalize() must stay pure.
"""

from __future__ import annotations

import re

from .models import Identity

GROUP_SUFFIX = "@g.us"
INDIVIDUAL_SUFFIX = "@s.whatsapp.net"
LID_SUFFIX = "@lid"
LEGACY_SUFFIX = "@c.us"

KNOWN_SUFFIXES = (INDIVIDUAL_SUFFIX, LID_SUFFIX, GROUP_SUFFIX, LEGACY_SUFFIX)

MIN_PHONE_DIGITS = 10

_NON_DIGITS = re.compile(r"\D")
# Legacy group ids are "<creator phone>-<creation ts>"; the hyphen is part of the id
_NON_GROUP_ID = re.compile(r"[^\d-]")


class InvalidIdentityError(ValueError):
    """Routing address cannot be resolved to a usable phone number."""


def _strip_suffixes(address: str) -> str:
    for suffix in KNOWN_SUFFIXES:
        address = address.replace(suffix, "")
    # Device-qualified ids ("5511...:12@s.whatsapp.net") carry the device after ':'
    return address.split(":", 1)[0]


def _digits(address: str) -> str:
    return _NON_DIGITS.sub("", _strip_suffixes(address.strip()))


def _group_id(address: str) -> str:
    return _NON_GROUP_ID.sub("", _strip_suffixes(address.strip())).strip("-")


def is_group_address(address: str | None) -> bool:
    return bool(address) and GROUP_SUFFIX in address


def normalize(routing_address: str, alt_sender_address: str | None = None) -> Identity:
    """Derive the canonical phone and group flag for a provider address.

    Args:
        routing_address: key.remoteJid from the provider.
        alt_sender_address: key.senderPn / data.senderPn, when present.

    Returns:
        Identity(phone=<digits>, is_group=<bool>). Group ids keep the
        hyphen of legacy "<creator>-<timestamp>" addresses.

    Raises:
        InvalidIdentityError: Fewer than 10 digits for an individual chat,
            or no digits at all for a group.
    """
    routing_address = routing_address or ""

    if is_group_address(routing_address):
        phone = _group_id(routing_address)
        if not _NON_DIGITS.sub("", phone):
            raise InvalidIdentityError("group address has no digits")
        return Identity(phone=phone, is_group=True)

    source = alt_sender_address if alt_sender_address else routing_address
    phone = _digits(source)
    if len(phone) < MIN_PHONE_DIGITS:
        raise InvalidIdentityError(
            f"phone too short ({len(phone)} digits, minimum {MIN_PHONE_DIGITS})"
        )
    return Identity(phone=phone, is_group=False)


def format_phone(phone: str) -> str:
    """Human-readable phone, used as a contact name fallback.

    Brazilian numbers (55 + area + 8/9 digits) render as
    "+55 (11) 99999-8888"; anything else as "+<digits>".
    """
    digits = _NON_DIGITS.sub("", phone or "")
    if len(digits) >= 12 and digits.startswith("55"):
        country, area, local = digits[:2], digits[2:4], digits[4:]
        return f"+{country} ({area}) {local[:-4]}-{local[-4:]}"
    return f"+{digits}"


def group_placeholder_name(phone: str) -> str:
    return f"Grupo {phone[:15]}"


def to_jid(phone: str, *, is_group: bool = False) -> str:
    """Build the outbound recipient address for a normalized phone.

    11-digit individual numbers without country code are assumed to be
    Brazilian and get the 55 prefix.
    """
    if "@" in phone:
        return phone
    if is_group:
        return f"{_NON_GROUP_ID.sub('', phone)}{GROUP_SUFFIX}"
    digits = _NON_DIGITS.sub("", phone)
    if len(digits) == 11 and not digits.startswith("55"):
        digits = "55" + digits
    return f"{digits}{INDIVIDUAL_SUFFIX}"
