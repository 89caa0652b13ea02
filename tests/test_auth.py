"""Tests for OIDC JWT authentication."""

from __future__ import annotations

import time
from unittest.mock import patch
from uuid import uuid4

import pytest
import requests
from fastapi.testclient import TestClient

from aliado.api.auth import CurrentUser
from aliado.api.factory import create_app

from helpers import OIDC_ENV, _create_jwks, _create_token, _generate_rsa_keypair


@pytest.fixture(scope="module")
def rsa_keypair():
    """RSA key pair (module scope, key generation is slow)."""
    return _generate_rsa_keypair()


@pytest.fixture
def jwks(rsa_keypair):
    _, public_key = rsa_keypair
    return _create_jwks(public_key)


@pytest.fixture
def oidc_env():
    with patch.dict("os.environ", OIDC_ENV):
        yield OIDC_ENV


@pytest.fixture
def mock_jwks_fetch(jwks):
    with patch("aliado.api.auth._fetch_jwks", return_value=jwks) as mock:
        yield mock


@pytest.fixture
def mock_db_user():
    user_id = str(uuid4())

    def mock_get_user(external_subject: str):
        if external_subject == "user-123":
            return CurrentUser(
                id=user_id,
                external_subject="user-123",
                email="agente@example.com",
                name="Agente Teste",
                account_id="acct-1",
                role="agent",
            )
        return None

    with patch("aliado.api.auth._get_user_from_db", side_effect=mock_get_user) as mock:
        mock.user_id = user_id
        yield mock


@pytest.fixture
def client():
    return TestClient(create_app())


def _whoami(client, token: str):
    return client.get("/auth/whoami", headers={"Authorization": f"Bearer {token}"})


class TestAuthNoToken:
    def test_missing_auth_header(self, client, oidc_env):
        response = client.get("/auth/whoami")
        assert response.status_code == 401
        assert "Missing authorization header" in response.json()["detail"]

    def test_oidc_not_configured(self, client, rsa_keypair):
        private_key, _ = rsa_keypair
        response = _whoami(client, _create_token(private_key))
        assert response.status_code == 401
        assert response.json()["detail"] == "OIDC not configured"


class TestAuthInvalidToken:
    def test_malformed_token(self, client, oidc_env, mock_jwks_fetch):
        response = _whoami(client, "abc")
        assert response.status_code == 401
        assert "Invalid token" in response.json()["detail"]

    @pytest.mark.parametrize("header", ["Basic abc", "Bearer", "Bearer a b"])
    def test_invalid_bearer_format(self, client, oidc_env, header):
        response = client.get("/auth/whoami", headers={"Authorization": header})
        assert response.status_code == 401
        assert "Invalid authorization header" in response.json()["detail"]

    def test_expired_token(self, client, oidc_env, rsa_keypair, mock_jwks_fetch):
        private_key, _ = rsa_keypair
        token = _create_token(private_key, exp=int(time.time()) - 3600)
        response = _whoami(client, token)
        assert response.status_code == 401
        assert "Token expired" in response.json()["detail"]

    def test_wrong_issuer(self, client, oidc_env, rsa_keypair, mock_jwks_fetch):
        private_key, _ = rsa_keypair
        response = _whoami(client, _create_token(private_key, iss="https://wrong-issuer.com"))
        assert response.status_code == 401
        assert "Invalid token" in response.json()["detail"]

    def test_wrong_audience(self, client, oidc_env, rsa_keypair, mock_jwks_fetch):
        private_key, _ = rsa_keypair
        response = _whoami(client, _create_token(private_key, aud="wrong-audience"))
        assert response.status_code == 401

    def test_unknown_kid(self, client, oidc_env, rsa_keypair, mock_jwks_fetch):
        private_key, _ = rsa_keypair
        response = _whoami(client, _create_token(private_key, kid="unknown-key"))
        assert response.status_code == 401
        # Unknown kid forces exactly one refetch
        assert mock_jwks_fetch.call_count == 2

    def test_signed_by_other_key(self, client, oidc_env, mock_jwks_fetch):
        other_private, _ = _generate_rsa_keypair()
        response = _whoami(client, _create_token(other_private))
        assert response.status_code == 401


class TestAuthUserNotFound:
    def test_user_not_found(self, client, oidc_env, rsa_keypair, mock_jwks_fetch, mock_db_user):
        private_key, _ = rsa_keypair
        response = _whoami(client, _create_token(private_key, sub="unknown-user"))
        assert response.status_code == 403
        assert "User not found" in response.json()["detail"]


class TestAuthSuccess:
    def test_valid_token_and_user(self, client, oidc_env, rsa_keypair, mock_jwks_fetch, mock_db_user):
        private_key, _ = rsa_keypair
        response = _whoami(client, _create_token(private_key, sub="user-123"))

        assert response.status_code == 200
        assert response.json() == {
            "id": mock_db_user.user_id,
            "external_subject": "user-123",
            "email": "agente@example.com",
            "name": "Agente Teste",
            "account_id": "acct-1",
            "role": "agent",
        }


class TestAuthorizedParties:
    def test_azp_valid(self, client, oidc_env, rsa_keypair, mock_jwks_fetch, mock_db_user, monkeypatch):
        monkeypatch.setenv("OIDC_AUTHORIZED_PARTIES", "inbox-web, another-app")
        private_key, _ = rsa_keypair
        response = _whoami(client, _create_token(private_key, azp="inbox-web"))
        assert response.status_code == 200

    def test_azp_invalid(self, client, oidc_env, rsa_keypair, mock_jwks_fetch, monkeypatch):
        monkeypatch.setenv("OIDC_AUTHORIZED_PARTIES", "inbox-web")
        private_key, _ = rsa_keypair
        response = _whoami(client, _create_token(private_key, azp="unauthorized-app"))
        assert response.status_code == 401

    def test_azp_not_required_when_not_configured(
        self, client, oidc_env, rsa_keypair, mock_jwks_fetch, mock_db_user
    ):
        private_key, _ = rsa_keypair
        response = _whoami(client, _create_token(private_key, azp="any-app"))
        assert response.status_code == 200


class TestJWKSCache:
    def test_jwks_cached(self, client, oidc_env, rsa_keypair, mock_jwks_fetch, mock_db_user):
        private_key, _ = rsa_keypair
        token = _create_token(private_key)

        assert _whoami(client, token).status_code == 200
        assert _whoami(client, token).status_code == 200
        assert mock_jwks_fetch.call_count == 1

    def test_jwks_refresh_on_rotated_key(self, client, oidc_env, rsa_keypair, jwks, mock_db_user):
        private_key, _ = rsa_keypair
        with patch("aliado.api.auth._fetch_jwks", side_effect=[{"keys": []}, jwks]) as fetch:
            response = _whoami(client, _create_token(private_key))

        assert response.status_code == 200
        assert fetch.call_count == 2


class TestJWKSFetchError:
    @pytest.mark.parametrize(
        "error", [requests.ConnectionError("Network error"), requests.Timeout("Timeout")]
    )
    def test_jwks_unreachable_is_503(self, client, oidc_env, rsa_keypair, error):
        private_key, _ = rsa_keypair
        with patch("aliado.api.auth._fetch_jwks", side_effect=error):
            response = _whoami(client, _create_token(private_key))
        assert response.status_code == 503
        assert "Auth temporarily unavailable" in response.json()["detail"]
