from decimal import Decimal

import pytest
from pydantic import ValidationError

from hotspotrecon.utils.config import Settings, get_settings, reload_settings


def test_settings_defaults(tmp_path):
    """Test the defaults the matching engine and payouts rely on."""
    settings = Settings(data_dir=tmp_path)

    assert settings.match_max_time_skew_seconds == 300
    assert settings.match_search_window_hours == 24
    assert settings.match_amount_tolerance == Decimal("0.00")
    assert settings.match_auto_approve is True
    assert settings.payout_default_min_threshold == Decimal("1000")
    assert settings.payout_default_schedule == "monthly"
    assert settings.default_commission_rate == Decimal("20")
    assert settings.currency == "KES"


def test_database_url_falls_back_to_data_dir(tmp_path):
    """Test that the SQLite file lives in data_dir unless DATABASE_URL is set."""
    assert Settings(data_dir=tmp_path).resolved_database_url == f"sqlite:///{tmp_path / 'hotspotrecon.db'}"
    assert Settings(data_dir=tmp_path, database_url="sqlite://").resolved_database_url == "sqlite://"


def test_settings_env_override(monkeypatch):
    """Test that environment variables override defaults."""
    monkeypatch.setenv("MATCH_MAX_TIME_SKEW_SECONDS", "120")
    monkeypatch.setenv("DEBUG", "true")

    settings = reload_settings()

    assert settings.match_max_time_skew_seconds == 120
    assert settings.debug is True
    assert get_settings() is settings


def test_plan_assignments_from_env(monkeypatch):
    monkeypatch.setenv("BILLING_PLAN_ASSIGNMENTS", '{"merchant-2": "isp"}')

    settings = reload_settings()

    assert settings.billing_plan_assignments == {"merchant-2": "isp"}
    assert settings.default_billing_plan == "individual"


def test_log_level_is_normalized(tmp_path):
    assert Settings(data_dir=tmp_path, log_level="warning").log_level == "WARNING"

    with pytest.raises(ValidationError):
        Settings(data_dir=tmp_path, log_level="verbose")


def test_default_threshold_must_respect_bounds(tmp_path):
    with pytest.raises(ValidationError, match="payout_default_min_threshold"):
        Settings(data_dir=tmp_path, payout_default_min_threshold=Decimal("50"))


@pytest.mark.parametrize("currency", ["USD", "kes"])
def test_currency_is_fixed(tmp_path, currency):
    with pytest.raises(ValidationError):
        Settings(data_dir=tmp_path, currency=currency)
