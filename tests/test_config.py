"""Tests for environment configuration readers."""

import pytest

from aliado.infra.config import (
    ConfigurationError,
    get_app_env,
    get_evolution_config,
    get_sync_schedule,
    get_webhook_secret,
    is_evolution_configured,
)


@pytest.fixture
def evolution_env(monkeypatch):
    monkeypatch.setenv("EVOLUTION_BASE_URL", "http://evolution:8080/")
    monkeypatch.setenv("EVOLUTION_INSTANCE", "aliado-main")
    monkeypatch.setenv("EVOLUTION_API_KEY", "secret")


class TestEvolutionConfig:
    def test_missing(self):
        with pytest.raises(ConfigurationError):
            get_evolution_config()
        assert is_evolution_configured() is False

    def test_reads_env(self, evolution_env):
        config = get_evolution_config()
        assert config.base_url == "http://evolution:8080"
        assert config.instance == "aliado-main"
        assert config.api_key == "secret"
        assert config.timeout == 10.0
        assert is_evolution_configured() is True

    def test_explicit_instance_wins(self, evolution_env):
        assert get_evolution_config("outra").instance == "outra"

    def test_instance_argument_satisfies_missing_env(self, evolution_env, monkeypatch):
        monkeypatch.delenv("EVOLUTION_INSTANCE")
        assert get_evolution_config("outra").instance == "outra"

    @pytest.mark.parametrize("raw,expected", [("2.5", 2.5), ("nope", 10.0)])
    def test_timeout(self, evolution_env, monkeypatch, raw, expected):
        monkeypatch.setenv("EVOLUTION_HTTP_TIMEOUT", raw)
        assert get_evolution_config().timeout == expected


class TestAppEnv:
    def test_default_is_production(self, monkeypatch):
        monkeypatch.delenv("APP_ENV")
        assert get_app_env() == "production"

    def test_normalized(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", " Local ")
        assert get_app_env() == "local"

    def test_webhook_secret(self, monkeypatch):
        assert get_webhook_secret() == ""
        monkeypatch.setenv("EVOLUTION_WEBHOOK_SECRET", "s3")
        assert get_webhook_secret() == "s3"


class TestSyncSchedule:
    def test_disabled_by_default(self):
        schedule = get_sync_schedule()
        assert schedule.interval_seconds == 0
        assert schedule.account_id is None

    @pytest.mark.parametrize("raw,expected", [("300", 300), ("-5", 0), ("soon", 0)])
    def test_interval(self, monkeypatch, raw, expected):
        monkeypatch.setenv("SYNC_INTERVAL_SECONDS", raw)
        monkeypatch.setenv("SYNC_ACCOUNT_ID", "acct-1")
        schedule = get_sync_schedule()
        assert schedule.interval_seconds == expected
        assert schedule.account_id == "acct-1"
