"""OIDC bearer authentication for the dashboard API.

Provides:
- verify_token(): Validates an RS256 JWT against the issuer's JWKS, returns `sub`
- get_current_user(): FastAPI dependency resolving the agent from `users`

Every agent belongs to exactly one account; the account scopes all inbox
reads and writes made on their behalf.
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from typing import Any

import jwt
import requests
from fastapi import HTTPException, Request

# JWKS cache with TTL
_jwks_cache: dict[str, Any] | None = None
_jwks_cache_time: float = 0
_jwks_cache_lock = threading.Lock()
_JWKS_CACHE_TTL = 600  # 10 minutes


@dataclass
class CurrentUser:
    """Authenticated agent."""

    id: str
    external_subject: str
    email: str | None
    name: str | None
    account_id: str
    role: str


@dataclass(frozen=True)
class OidcSettings:
    issuer: str | None
    audience: str | None
    jwks_url: str | None
    authorized_parties: tuple[str, ...]

    @property
    def configured(self) -> bool:
        return bool(self.issuer and self.audience and self.jwks_url)


def _get_settings() -> OidcSettings:
    raw_parties = os.environ.get("OIDC_AUTHORIZED_PARTIES", "")
    return OidcSettings(
        issuer=os.environ.get("OIDC_ISSUER"),
        audience=os.environ.get("OIDC_AUDIENCE"),
        jwks_url=os.environ.get("OIDC_JWKS_URL"),
        authorized_parties=tuple(p.strip() for p in raw_parties.split(",") if p.strip()),
    )


def _fetch_jwks(jwks_url: str) -> dict[str, Any]:
    resp = requests.get(jwks_url, timeout=10)
    resp.raise_for_status()
    return resp.json()


def _get_jwks(jwks_url: str, force_refresh: bool = False) -> dict[str, Any]:
    """JWKS from cache, refetched after the TTL or on demand."""
    global _jwks_cache, _jwks_cache_time

    with _jwks_cache_lock:
        now = time.time()
        fresh = _jwks_cache is not None and (now - _jwks_cache_time) < _JWKS_CACHE_TTL
        if fresh and not force_refresh:
            return _jwks_cache

        try:
            _jwks_cache = _fetch_jwks(jwks_url)
        except requests.RequestException:
            raise HTTPException(status_code=503, detail="Auth temporarily unavailable")
        _jwks_cache_time = now
        return _jwks_cache


def _find_key(jwks: dict[str, Any], kid: str) -> dict[str, Any] | None:
    return next((k for k in jwks.get("keys", []) if k.get("kid") == kid), None)


def _invalid(detail: str = "Invalid token") -> HTTPException:
    return HTTPException(status_code=401, detail=detail)


def _decode(token: str, jwk_data: dict[str, Any], settings: OidcSettings) -> dict[str, Any]:
    try:
        public_key = jwt.algorithms.RSAAlgorithm.from_jwk(jwk_data)
    except (ValueError, TypeError, KeyError):
        raise _invalid()

    return jwt.decode(
        token,
        public_key,
        algorithms=["RS256"],
        issuer=settings.issuer,
        audience=settings.audience,
        options={"require": ["exp", "iss", "aud", "sub"]},
    )


def verify_token(token: str) -> str:
    """Verify a bearer JWT and return its subject.

    The JWKS is refetched once when the kid is unknown or the signature
    does not verify, which covers key rotation at the issuer.

    Raises:
        HTTPException: 401 for any invalid token, 503 if the JWKS is unreachable.
    """
    settings = _get_settings()
    if not settings.configured:
        raise _invalid("OIDC not configured")

    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except jwt.exceptions.DecodeError:
        raise _invalid()
    if not kid:
        raise _invalid()

    payload: dict[str, Any] | None = None
    for force_refresh in (False, True):
        key_data = _find_key(_get_jwks(settings.jwks_url, force_refresh=force_refresh), kid)
        if key_data is None:
            continue
        try:
            payload = _decode(token, key_data, settings)
            break
        except jwt.InvalidSignatureError:
            continue
        except jwt.ExpiredSignatureError:
            raise _invalid("Token expired")
        except jwt.InvalidTokenError:
            raise _invalid()

    if payload is None:
        raise _invalid()

    if settings.authorized_parties and "azp" in payload:
        if payload["azp"] not in settings.authorized_parties:
            raise _invalid()

    sub = payload.get("sub")
    if not sub:
        raise _invalid()
    return sub


def _extract_bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise _invalid("Missing authorization header")

    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip() or " " in token.strip():
        raise _invalid("Invalid authorization header")
    return token.strip()


def _get_user_from_db(external_subject: str) -> CurrentUser | None:
    """Lookup agent by OIDC subject (None when not provisioned)."""
    from aliado.infra.db import txn

    with txn() as cur:
        cur.execute(
            """
            SELECT id, external_subject, email, name, account_id, role
            FROM users
            WHERE external_subject = %s
            """,
            (external_subject,),
        )
        row = cur.fetchone()
    if row is None:
        return None
    return CurrentUser(
        id=str(row[0]),
        external_subject=row[1],
        email=row[2],
        name=row[3],
        account_id=row[4],
        role=row[5],
    )


def get_current_user(request: Request) -> CurrentUser:
    """FastAPI dependency: authenticated agent.

    Raises:
        HTTPException: 401 if the token is missing/invalid, 403 if the
            subject has no user row.
    """
    sub = verify_token(_extract_bearer_token(request))

    user = _get_user_from_db(sub)
    if user is None:
        raise HTTPException(status_code=403, detail="User not found")
    return user
