import pytest
from pydantic import ValidationError

from quota_ledger.settings import Settings


def test_reservation_ttl_defaults_to_thirty_minutes():
    assert Settings().storage_quota_reservation_ttl_seconds == 1800


def test_reservation_ttl_must_be_positive(monkeypatch):
    monkeypatch.setenv("STORAGE_QUOTA_RESERVATION_TTL_SECONDS", "0")
    with pytest.raises(ValidationError):
        Settings()


def test_settings_read_from_environment(monkeypatch):
    monkeypatch.setenv("STORAGE_QUOTA_DEFAULT_LIMIT_BYTES", "1048576")
    monkeypatch.setenv("STORAGE_QUOTA_RECONCILE_FIX", "true")

    loaded = Settings()

    assert loaded.storage_quota_default_limit_bytes == 1048576
    assert loaded.storage_quota_reconcile_fix is True


def test_prod_requires_metrics_token(monkeypatch):
    monkeypatch.setenv("APP_ENV", "prod")
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.delenv("METRICS_TOKEN", raising=False)
    with pytest.raises(ValidationError):
        Settings()

    monkeypatch.setenv("METRICS_TOKEN", "scrape-token")
    assert Settings().metrics_token == "scrape-token"
