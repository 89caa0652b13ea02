"""Environment configuration readers.

Values are read at call time so tests can monkeypatch the environment.
Missing credentials raise ConfigurationError, which only disables the
feature that needs them (outbound send, sync, database access).
"""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_EVOLUTION_HTTP_TIMEOUT = 10.0

# Environments where an unset webhook secret is tolerated
LOCAL_ENVS = {"local", "test"}


class ConfigurationError(RuntimeError):
    """Raised when required credentials are not configured."""


@dataclass(frozen=True)
class EvolutionConfig:
    """Evolution API connection settings."""

    base_url: str
    instance: str
    api_key: str
    timeout: float


def get_evolution_config(instance: str | None = None) -> EvolutionConfig:
    """Read Evolution API settings from the environment.

    Required env vars:
    - EVOLUTION_BASE_URL: Base URL (e.g., http://localhost:8080)
    - EVOLUTION_INSTANCE: Instance name (unless passed explicitly)
    - EVOLUTION_API_KEY: API token

    Optional:
    - EVOLUTION_HTTP_TIMEOUT: Request timeout in seconds (default: 10)

    Raises:
        ConfigurationError: If any required value is missing.
    """
    base_url = os.environ.get("EVOLUTION_BASE_URL", "")
    resolved_instance = instance or os.environ.get("EVOLUTION_INSTANCE", "")
    api_key = os.environ.get("EVOLUTION_API_KEY", "")

    if not base_url or not resolved_instance or not api_key:
        raise ConfigurationError(
            "Missing Evolution config: EVOLUTION_BASE_URL, EVOLUTION_INSTANCE, EVOLUTION_API_KEY"
        )

    try:
        timeout = float(os.environ.get("EVOLUTION_HTTP_TIMEOUT", DEFAULT_EVOLUTION_HTTP_TIMEOUT))
    except ValueError:
        timeout = DEFAULT_EVOLUTION_HTTP_TIMEOUT

    return EvolutionConfig(
        base_url=base_url.rstrip("/"),
        instance=resolved_instance,
        api_key=api_key,
        timeout=timeout,
    )


def is_evolution_configured() -> bool:
    """True when outbound send and sync have credentials."""
    try:
        get_evolution_config()
    except ConfigurationError:
        return False
    return True


def get_app_env() -> str:
    return os.environ.get("APP_ENV", "production").strip().lower()


def get_webhook_secret() -> str:
    return os.environ.get("EVOLUTION_WEBHOOK_SECRET", "")


@dataclass(frozen=True)
class SyncSchedule:
    """Periodic reconciliation settings (disabled when interval is 0)."""

    interval_seconds: int
    account_id: str | None


def get_sync_schedule() -> SyncSchedule:
    """Read SYNC_INTERVAL_SECONDS / SYNC_ACCOUNT_ID.

    The periodic sync needs an explicit account; it never falls back
    to a default one.
    """
    raw = os.environ.get("SYNC_INTERVAL_SECONDS", "0")
    try:
        interval = max(int(raw), 0)
    except ValueError:
        interval = 0
    account_id = os.environ.get("SYNC_ACCOUNT_ID") or None
    return SyncSchedule(interval_seconds=interval, account_id=account_id)
