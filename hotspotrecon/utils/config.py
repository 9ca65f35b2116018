"""Application settings.

Loaded from environment variables (case-insensitive, no prefix) and an
optional ``.env`` file in the working directory.

Example:
    >>> settings = get_settings()
    >>> settings.match_max_time_skew_seconds
    300
"""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from platformdirs import PlatformDirs
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

dirs = PlatformDirs("hotspotrecon", appauthor=False)


class Settings(BaseSettings):
    """Runtime configuration for the reconciliation back office."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    data_dir: Path = Field(default_factory=lambda: Path(dirs.user_data_dir))
    database_url: str | None = Field(
        default=None,
        description="SQLAlchemy URL; defaults to a SQLite file inside data_dir",
    )

    # Logging
    debug: bool = False
    log_level: str = "INFO"
    json_logs: bool = False

    # Currency is single-tenant; amounts are never converted.
    currency: str = Field(default="KES", pattern="^KES$")

    # Matching engine
    match_max_time_skew_seconds: int = Field(
        default=300,
        ge=0,
        le=86_400,
        description="Maximum gap between order creation and payment confirmation for the time signal",
    )
    match_search_window_hours: int = Field(
        default=24,
        ge=1,
        le=24 * 7,
        description="How far back from a payment system orders are compared at all",
    )
    match_amount_tolerance: Decimal = Field(
        default=Decimal("0.00"),
        ge=0,
        description="Absolute difference still counted as the amount signal",
    )
    match_auto_approve: bool = Field(
        default=True,
        description="Approve high-confidence candidates with no amount difference automatically",
    )
    match_stale_retries: int = Field(default=3, ge=0, le=20)

    # Payouts
    payout_default_min_threshold: Decimal = Field(default=Decimal("1000"))
    payout_min_threshold_floor: Decimal = Field(default=Decimal("100"))
    payout_min_threshold_ceiling: Decimal = Field(default=Decimal("1000000"))
    payout_default_schedule: str = Field(default="monthly", pattern="^(weekly|monthly|manual)$")
    payout_weekly_weekday: int = Field(default=0, ge=0, le=6, description="0 = Monday")
    payout_monthly_day: int = Field(default=1, ge=1, le=28)

    # Commission. The authoritative rate comes from the billing-plan source;
    # this only seeds the static plan catalogue.
    default_commission_rate: Decimal = Field(default=Decimal("20"), ge=0, le=100)
    default_billing_plan: str = Field(default="individual", pattern="^(individual|isp|isp_pro)$")
    # Merchant id -> plan code, e.g. BILLING_PLAN_ASSIGNMENTS='{"m-2": "isp"}'
    billing_plan_assignments: dict[str, str] = Field(default_factory=dict)

    # Metrics
    metrics_enabled: bool = False
    metrics_port: int = Field(default=8000, ge=1, le=65535)

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value}")
        return value

    @model_validator(mode="after")
    def _check_payout_bounds(self) -> "Settings":
        floor = self.payout_min_threshold_floor
        ceiling = self.payout_min_threshold_ceiling
        if not floor <= self.payout_default_min_threshold <= ceiling:
            raise ValueError(
                "payout_default_min_threshold must be between "
                f"{floor} and {ceiling}, got {self.payout_default_min_threshold}"
            )
        return self

    @property
    def resolved_database_url(self) -> str:
        """Database URL, falling back to a SQLite file in ``data_dir``."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.data_dir / 'hotspotrecon.db'}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached settings instance."""
    return Settings()


def reload_settings() -> Settings:
    """Drop the cached settings and read the environment again."""
    get_settings.cache_clear()
    return get_settings()
