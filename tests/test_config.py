from pathlib import Path

import pytest
from pydantic import ValidationError

from campus_alerts.config import get_settings


def test_settings_read_from_environment(monkeypatch):
    monkeypatch.setenv("BOT_TOKEN", "123:abc")
    monkeypatch.setenv("ADMIN_CHAT_ID", "42")
    monkeypatch.setenv("SESSION_USER_ID", "st1")
    monkeypatch.setenv("SESSION_ROLE", "student")
    monkeypatch.setenv("DELIVERY_INTERVAL", "2.5")
    monkeypatch.setenv("DEDUP_TTL_HOURS", "12")
    monkeypatch.setenv("STORE_SEED_PATH", "/tmp/seed.json")

    settings = get_settings()

    assert settings.bot.token == "123:abc"
    assert settings.bot.admin_chat_id == 42
    assert settings.session.user_id == "st1"
    assert settings.session.role == "student"
    assert settings.notifications.delivery_interval == 2.5
    assert settings.notifications.dedup_ttl_seconds == 12 * 3600
    assert settings.store.seed_path == Path("/tmp/seed.json")


def test_defaults(monkeypatch):
    for name in ("DELIVERY_INTERVAL", "DEDUP_TTL_HOURS", "SWEEP_INTERVAL", "STORE_SEED_PATH", "SESSION_ROLE"):
        monkeypatch.delenv(name, raising=False)

    settings = get_settings()

    assert settings.notifications.delivery_interval == 1.0
    assert settings.notifications.dedup_ttl_seconds == 24 * 3600
    assert settings.notifications.sweep_interval == 3600
    assert settings.store.seed_path is None
    assert settings.session.role == "admin"


def test_settings_are_cached(monkeypatch):
    monkeypatch.setenv("ADMIN_CHAT_ID", "1")
    assert get_settings() is get_settings()


def test_invalid_values_raise(monkeypatch):
    monkeypatch.setenv("DELIVERY_INTERVAL", "-1")

    with pytest.raises(ValidationError):
        get_settings()
