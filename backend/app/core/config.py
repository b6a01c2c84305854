"""Application configuration using pydantic-settings.

All environment variables should be accessed through the settings object
rather than using os.getenv() directly. Business parameters that the
ordering core depends on (fees, point ratios, lead times) live here too so
they can be tuned per deployment without code changes.
"""

from decimal import Decimal
from functools import lru_cache
from typing import List, Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars
    )

    # Database - defaults to relative path for Docker, override via env for local dev
    database_url: str = "sqlite:///./ordering.db"

    # Security (tokens are issued by the identity service, only verified here)
    secret_key: str = "change-me-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 240  # 4 hours

    # CORS - comma-separated origins or "*" for development only
    cors_origins: str = "http://localhost:3000,http://localhost:8000"

    # ==========================================================================
    # Cart
    # ==========================================================================
    default_zone: Literal["capital", "interior"] = "capital"
    cart_expiration_days: int = 7
    # Adding an identical (product, variant, combo, options) line bumps the
    # existing line's quantity instead of appending a second line.
    cart_merge_identical_items: bool = True
    # Upper bound for a single line, including quantities merged into it
    max_item_quantity: int = 99

    # ==========================================================================
    # Order amounts
    # ==========================================================================
    delivery_fee_capital: Decimal = Decimal("0.00")
    delivery_fee_interior: Decimal = Decimal("0.00")
    # Applied to the item subtotal net of point discounts, floored at zero;
    # delivery fees are untaxed
    tax_rate: Decimal = Decimal("0")  # menu prices are tax-inclusive
    min_pickup_lead_minutes: int = 30
    nearest_pickup_limit: int = 3

    # ==========================================================================
    # Loyalty points
    # ==========================================================================
    quetzales_per_point: Decimal = Decimal("10")
    points_rounding_threshold: Decimal = Decimal("0.70")
    min_points_to_redeem: int = 100
    point_value: Decimal = Decimal("0.10")
    points_expiration_months: int = 6

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        if v == "change-me-in-production" or len(v) < 32:
            import warnings
            warnings.warn(
                "Using a default or short SECRET_KEY is insecure! Set SECRET_KEY environment variable.",
                UserWarning,
                stacklevel=2,
            )
        return v

    @field_validator("quetzales_per_point")
    @classmethod
    def validate_quetzales_per_point(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("QUETZALES_PER_POINT must be positive")
        return v

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Validate settings for production safety."""
        if not self.debug:
            if self.secret_key == "change-me-in-production":
                raise ValueError(
                    "FATAL: Cannot start in production mode with default SECRET_KEY. "
                    "Set a secure SECRET_KEY environment variable (minimum 32 characters)."
                )
            if len(self.secret_key) < 32:
                raise ValueError(
                    f"FATAL: SECRET_KEY must be at least 32 characters in production mode "
                    f"(current length: {len(self.secret_key)})."
                )
        return self

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins into a list, filtering localhost in production."""
        if self.cors_origins == "*":
            return ["*"]

        origins = [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

        if not self.debug:
            localhost_patterns = ["localhost", "127.0.0.1", "0.0.0.0"]
            origins = [o for o in origins if not any(p in o for p in localhost_patterns)]

        return origins

    def delivery_fee_for_zone(self, zone: str) -> Decimal:
        """Flat delivery fee charged for orders served from *zone*."""
        if zone == "interior":
            return self.delivery_fee_interior
        return self.delivery_fee_capital

    # Timezone used for restaurant schedules and promotion windows
    timezone: str = "America/Guatemala"

    # Server
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # API
    api_v1_prefix: str = "/api/v1"

    # Rate limiting
    rate_limit_enabled: bool = True


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
