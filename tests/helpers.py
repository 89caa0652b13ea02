"""Shared test helpers (plain functions, not fixtures)."""

from __future__ import annotations

import base64
import time
from typing import Any

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa

ISSUER = "https://auth.example.com"
AUDIENCE = "aliado-api"
JWKS_URL = "https://auth.example.com/.well-known/jwks.json"

OIDC_ENV = {
    "OIDC_ISSUER": ISSUER,
    "OIDC_AUDIENCE": AUDIENCE,
    "OIDC_JWKS_URL": JWKS_URL,
}


def _generate_rsa_keypair():
    """Generate RSA key pair for test JWT signing."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return private_key, private_key.public_key()


def _create_jwks(public_key, kid: str = "test-key-1") -> dict:
    """Create JWKS from public key."""
    numbers = public_key.public_numbers()

    def int_to_base64(n: int) -> str:
        byte_length = (n.bit_length() + 7) // 8
        return base64.urlsafe_b64encode(n.to_bytes(byte_length, "big")).rstrip(b"=").decode()

    return {
        "keys": [
            {
                "kty": "RSA",
                "use": "sig",
                "alg": "RS256",
                "kid": kid,
                "n": int_to_base64(numbers.n),
                "e": int_to_base64(numbers.e),
            }
        ]
    }


def _create_token(
    private_key,
    kid: str = "test-key-1",
    sub: str = "user-123",
    iss: str = ISSUER,
    aud: str = AUDIENCE,
    exp: int | None = None,
    azp: str | None = None,
) -> str:
    """Create signed JWT for testing."""
    now = int(time.time())
    payload: dict[str, Any] = {
        "sub": sub,
        "iss": iss,
        "aud": aud,
        "exp": exp if exp is not None else now + 3600,
        "iat": now,
    }
    if azp:
        payload["azp"] = azp
    return jwt.encode(payload, private_key, algorithm="RS256", headers={"kid": kid})


def evolution_payload(
    *,
    remote_jid: str = "5511999998888@s.whatsapp.net",
    message_id: str = "3EB0A1B2C3D4E5F6",
    from_me: bool = False,
    message: Any = None,
    push_name: str | None = "Maria Souza",
    timestamp: Any = 1736942400,
    sender_pn: str | None = None,
    event: str = "messages.upsert",
) -> dict[str, Any]:
    """Evolution v2 messages.upsert webhook body."""
    key: dict[str, Any] = {"remoteJid": remote_jid, "fromMe": from_me, "id": message_id}
    if sender_pn:
        key["senderPn"] = sender_pn
    data: dict[str, Any] = {
        "key": key,
        "message": message if message is not None else {"conversation": "Oi"},
        "messageTimestamp": timestamp,
    }
    if push_name is not None:
        data["pushName"] = push_name
    return {"event": event, "instance": "aliado-main", "data": data}
