from datetime import datetime, timezone

import pytest

from cryptotaxreport.config import Settings


def test_defaults_follow_the_spanish_calendar():
    settings = Settings()
    assert settings.fiscal_timezone == "Europe/Madrid"
    assert settings.default_lot_method == "FIFO"
    # CET in winter
    assert datetime(2023, 12, 31, 23, 30, tzinfo=timezone.utc).astimezone(settings.fiscal_tz).year == 2024


def test_from_env(monkeypatch):
    monkeypatch.setenv("DEFAULT_LOT_METHOD", "lifo")
    monkeypatch.setenv("FISCAL_TIMEZONE", "Atlantic/Canary")
    monkeypatch.setenv("RETRY_ATTEMPTS", "6")
    settings = Settings.from_env()
    assert settings.default_lot_method == "LIFO"
    assert settings.fiscal_timezone == "Atlantic/Canary"
    assert settings.retry_attempts == 6


def test_from_env_rejects_unknown_lot_method(monkeypatch):
    monkeypatch.setenv("DEFAULT_LOT_METHOD", "average")
    with pytest.raises(ValueError, match="DEFAULT_LOT_METHOD"):
        Settings.from_env()
