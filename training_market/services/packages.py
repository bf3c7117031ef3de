from __future__ import annotations

from typing import List

from training_market.models import Trainer
from training_market.services.pricing import tier_percent
from training_market.settings import Settings, settings as default_settings

PACK_SIZES = (1, 3, 5, 10)


def package_price(
    hourly_rate: float,
    sessions: int,
    lesson_minutes: int = 60,
    config: Settings = default_settings,
) -> float:
    per_session = hourly_rate * lesson_minutes / 60
    percent = tier_percent(sessions, config.package_discount_tiers)
    return round(per_session * sessions * (1 - percent / 100), 2)


def get_packages(trainer: Trainer, config: Settings = default_settings) -> List[dict]:
    rate = trainer.hourly_rate or config.default_hourly_rate
    minutes = trainer.lesson_minutes or config.default_lesson_minutes
    single = round(rate * minutes / 60, 2)
    packages = []
    for count in PACK_SIZES:
        price = package_price(rate, count, minutes, config)
        savings = tier_percent(count, config.package_discount_tiers)
        packages.append(
            {
                "sessions": count,
                "label": "Single Session" if count == 1 else f"{count}-Pack",
                "price": price,
                "per_session": round(price / count, 2),
                "savings_percent": savings,
                "savings": round(single * count - price, 2),
            }
        )
    return packages
