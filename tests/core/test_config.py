"""Tests for environment-driven settings."""

import pytest

from src.satdesk.core.config import RentalsSettings, load_settings
from src.satdesk.core.exceptions import ConfigurationError

ENV_VARS = (
    "RENTALS_BACKEND",
    "DATABASE_URL",
    "LOW_INVENTORY_THRESHOLD",
    "PENDING_ORDERS_WARNING_COUNT",
    "EXPIRING_WINDOW_DAYS",
    "RECOMMENDED_DEVICE_LIMIT",
    "ORDER_NUMBER_PREFIX",
    "RELEASE_MAX_ATTEMPTS",
    "RELEASE_INITIAL_DELAY_SECONDS",
    "ALERT_SCAN_INTERVAL_MINUTES",
    "ORPHAN_CLAIM_GRACE_SECONDS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestRentalsSettings:
    """Tests for RentalsSettings."""

    def test_defaults(self):
        settings = load_settings()

        assert settings.backend == "memory"
        assert settings.low_inventory_threshold == 3
        assert settings.pending_orders_warning_count == 5
        assert settings.expiring_window_days == 3
        assert settings.recommended_device_limit == 5
        assert settings.order_number_prefix == "MAG"
        assert settings.release_max_attempts == 5
        assert settings.alert_scan_interval_minutes == 15
        assert settings.orphan_claim_grace_seconds == 300

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("LOW_INVENTORY_THRESHOLD", "7")
        monkeypatch.setenv("RELEASE_INITIAL_DELAY_SECONDS", "0.25")
        monkeypatch.setenv("RENTALS_BACKEND", "POSTGRES")
        monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/rentals")

        settings = load_settings()

        assert settings.low_inventory_threshold == 7
        assert settings.release_initial_delay == 0.25
        assert settings.backend == "postgres"

    def test_bad_integer(self, monkeypatch):
        monkeypatch.setenv("EXPIRING_WINDOW_DAYS", "three")

        with pytest.raises(ConfigurationError):
            RentalsSettings()

    def test_unknown_backend(self, monkeypatch):
        monkeypatch.setenv("RENTALS_BACKEND", "sqlite")

        with pytest.raises(ConfigurationError):
            load_settings()

    def test_postgres_requires_url(self, monkeypatch):
        monkeypatch.setenv("RENTALS_BACKEND", "postgres")

        with pytest.raises(ConfigurationError) as exc_info:
            load_settings()

        assert exc_info.value.details["missing_keys"] == ["DATABASE_URL"]

    def test_release_attempts_must_be_positive(self, monkeypatch):
        monkeypatch.setenv("RELEASE_MAX_ATTEMPTS", "0")

        with pytest.raises(ConfigurationError):
            load_settings()

    def test_negative_orphan_grace_rejected(self, monkeypatch):
        monkeypatch.setenv("ORPHAN_CLAIM_GRACE_SECONDS", "-1")

        with pytest.raises(ConfigurationError):
            load_settings()
