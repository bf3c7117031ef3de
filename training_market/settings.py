from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class PricingSettings:
    """Discount and fee knobs consumed by the totals calculator.

    Built from ``Settings.pricing()``; the defaults live on ``Settings``.
    """

    sibling_discount_percent: float
    team_discount_tiers: Dict[int, float]
    multiweek_discount_tiers: Dict[int, float]
    referral_discount: float
    bundle_discount_percent: float
    processing_fee_enabled: bool
    processing_fee_percent: float
    processing_fee_fixed: float
    care_bundle_price: float
    jersey_price: float


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    secret_key: str = "dev-secret"
    database_url: str = "sqlite:///./training_market.db"
    cookie_secure: bool = False
    log_level: str = "INFO"
    timezone: str = "America/New_York"

    default_slot_minutes: int = 60
    min_slot_minutes: int = 30
    same_day_buffer_minutes: int = 30
    max_future_days: int = 60
    peak_start: str = "15:00"
    peak_end: str = "19:00"
    claim_block_minutes: int = 15
    reservation_ttl_minutes: int = 30

    default_hourly_rate: float = 80.0
    default_lesson_minutes: int = 60
    trainer_payout_percent: float = 75.0
    package_discount_tiers: Dict[int, float] = {3: 7.0, 5: 10.0, 10: 15.0}

    bundle_expiry_hours: int = 48
    abandoned_bundle_retention_days: int = 30

    sibling_discount_percent: float = 10.0
    team_discount_tiers: Dict[int, float] = {5: 10.0, 10: 15.0, 15: 20.0}
    multiweek_discount_tiers: Dict[int, float] = {2: 10.0, 3: 15.0, 4: 20.0}
    referral_discount: float = 25.0
    referral_max_uses: Optional[int] = 10
    bundle_discount_percent: float = 15.0
    processing_fee_enabled: bool = True
    processing_fee_percent: float = 3.0
    processing_fee_fixed: float = 0.30
    care_bundle_price: float = 60.0
    jersey_price: float = 50.0

    currency: str = "usd"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    bootstrap_admin_username: str = "admin"
    bootstrap_admin_password: str = "admin123"

    def pricing(self) -> PricingSettings:
        return PricingSettings(
            sibling_discount_percent=self.sibling_discount_percent,
            team_discount_tiers=dict(self.team_discount_tiers),
            multiweek_discount_tiers=dict(self.multiweek_discount_tiers),
            referral_discount=self.referral_discount,
            bundle_discount_percent=self.bundle_discount_percent,
            processing_fee_enabled=self.processing_fee_enabled,
            processing_fee_percent=self.processing_fee_percent,
            processing_fee_fixed=self.processing_fee_fixed,
            care_bundle_price=self.care_bundle_price,
            jersey_price=self.jersey_price,
        )


settings = Settings()
