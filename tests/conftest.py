"""Shared pytest fixtures for aliado tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_oidc_jwks_cache():
    """Reset the module-level JWKS cache so keys never leak between tests."""
    import aliado.api.auth as auth_module

    auth_module._jwks_cache = None
    auth_module._jwks_cache_time = 0
    yield
    auth_module._jwks_cache = None
    auth_module._jwks_cache_time = 0


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Start every test without provider, sync or OIDC settings."""
    for name in (
        "EVOLUTION_BASE_URL",
        "EVOLUTION_INSTANCE",
        "EVOLUTION_API_KEY",
        "EVOLUTION_HTTP_TIMEOUT",
        "EVOLUTION_WEBHOOK_SECRET",
        "SYNC_INTERVAL_SECONDS",
        "SYNC_ACCOUNT_ID",
        "OIDC_ISSUER",
        "OIDC_AUDIENCE",
        "OIDC_JWKS_URL",
        "OIDC_AUTHORIZED_PARTIES",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("APP_ENV", "test")
