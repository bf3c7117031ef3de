"""Cart totals.

``calculate_totals`` is the single place where discounts are stacked. It is a
pure function of its arguments: the referral code arrives as a snapshot and
the clock as ``context.now``, so recomputing the same cart always gives the
same breakdown.

Stacking order: sibling, team, multiweek, referral, bundle, processing fee.
Sibling, team and multiweek are each taken from raw base prices; the
referral discount is flat; the bundle percentage applies to the subtotal left
after those; the processing fee applies to what remains plus add-ons.
"""
from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence

from training_market.models import ItemType
from training_market.settings import PricingSettings


@dataclass(frozen=True)
class LineItem:
    item_type: ItemType
    base_price: float
    first_name: str = ""
    last_name: str = ""
    care_bundle: bool = False
    jersey: bool = False
    label: str = ""

    @property
    def participant_key(self) -> Optional[str]:
        first = self.first_name.strip().lower()
        last = self.last_name.strip().lower()
        if not first and not last:
            return None
        return f"{first}|{last}"


@dataclass(frozen=True)
class ReferralSnapshot:
    code: str
    is_active: bool = True
    times_used: int = 0
    max_uses: Optional[int] = None
    expires_at: Optional[datetime] = None

    def is_valid(self, now: Optional[datetime]) -> bool:
        if not self.is_active:
            return False
        if self.expires_at is not None and (now is None or self.expires_at <= now):
            return False
        if self.max_uses and self.times_used >= self.max_uses:
            return False
        return True


@dataclass(frozen=True)
class TotalsContext:
    referral: Optional[ReferralSnapshot] = None
    now: Optional[datetime] = None
    # Overrides for carts whose other half lives outside ``items``.
    has_camp_products: Optional[bool] = None
    has_training_products: Optional[bool] = None


@dataclass
class ItemTotals:
    index: int
    base_price: float
    sibling_discount: float = 0.0
    team_discount: float = 0.0
    multiweek_discount: float = 0.0

    @property
    def discount(self) -> float:
        return round(self.sibling_discount + self.team_discount + self.multiweek_discount, 2)

    @property
    def final_price(self) -> float:
        return round(self.base_price - self.discount, 2)

    @property
    def is_sibling(self) -> bool:
        return self.sibling_discount > 0


@dataclass
class Totals:
    subtotal: float = 0.0
    sibling_discount: float = 0.0
    team_discount: float = 0.0
    team_percent: float = 0.0
    multiweek_discount: float = 0.0
    referral_discount: float = 0.0
    referral_code: Optional[str] = None
    discount_amount: float = 0.0
    discounted_subtotal: float = 0.0
    has_bundle: bool = False
    bundle_percent: float = 0.0
    bundle_discount: float = 0.0
    care_bundle_total: float = 0.0
    jersey_total: float = 0.0
    processing_fee_enabled: bool = False
    processing_fee: float = 0.0
    total: float = 0.0
    camper_count: int = 0
    items: List[ItemTotals] = field(default_factory=list)
    breakdown: Dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "sibling_discount": self.sibling_discount,
            "team_discount": self.team_discount,
            "team_percent": self.team_percent,
            "multiweek_discount": self.multiweek_discount,
            "referral_discount": self.referral_discount,
            "referral_code": self.referral_code,
            "discount_amount": self.discount_amount,
            "discounted_subtotal": self.discounted_subtotal,
            "has_bundle": self.has_bundle,
            "bundle_percent": self.bundle_percent,
            "bundle_discount": self.bundle_discount,
            "care_bundle_total": self.care_bundle_total,
            "jersey_total": self.jersey_total,
            "processing_fee_enabled": self.processing_fee_enabled,
            "processing_fee": self.processing_fee,
            "total": self.total,
            "camper_count": self.camper_count,
            "items": [
                {
                    "index": item.index,
                    "base_price": item.base_price,
                    "discount": item.discount,
                    "final_price": item.final_price,
                }
                for item in self.items
            ],
            "breakdown": self.breakdown,
        }


def tier_percent(count: int, tiers: Mapping[int, float]) -> float:
    """Percent of the highest threshold ``count`` reaches; tiers never add up."""
    percent = 0.0
    for threshold in sorted(tiers):
        if count >= threshold:
            percent = float(tiers[threshold])
    return percent


def _pct(amount: float, percent: float) -> float:
    return round(amount * percent / 100, 2)


def calculate_totals(
    items: Sequence[LineItem],
    context: TotalsContext,
    pricing: PricingSettings,
) -> Totals:
    totals = Totals()
    per_item = [ItemTotals(index=i, base_price=round(float(item.base_price), 2)) for i, item in enumerate(items)]
    totals.items = per_item

    camp_indexes = [i for i, item in enumerate(items) if item.item_type == ItemType.camp]
    has_camps = bool(camp_indexes) if context.has_camp_products is None else context.has_camp_products
    has_training = (
        any(item.item_type == ItemType.training for item in items)
        if context.has_training_products is None
        else context.has_training_products
    )

    totals.subtotal = round(sum(entry.base_price for entry in per_item), 2)

    # Sibling: every camp registration after the first.
    sibling_lines = []
    for position, i in enumerate(camp_indexes):
        if position == 0:
            continue
        amount = _pct(per_item[i].base_price, pricing.sibling_discount_percent)
        per_item[i].sibling_discount = amount
        sibling_lines.append({"item": i, "amount": amount})
    if sibling_lines:
        totals.breakdown["sibling"] = sibling_lines

    # Team: one tier for the whole group, chosen by headcount.
    groups: "OrderedDict[str, List[int]]" = OrderedDict()
    for i in camp_indexes:
        key = items[i].participant_key or f"#{i}"
        groups.setdefault(key, []).append(i)
    totals.camper_count = len(groups)
    team_percent = tier_percent(totals.camper_count, pricing.team_discount_tiers)
    if team_percent > 0:
        for i in camp_indexes:
            per_item[i].team_discount = _pct(per_item[i].base_price, team_percent)
        totals.team_percent = team_percent
        totals.breakdown["team"] = {
            "percent": team_percent,
            "amount": round(sum(per_item[i].team_discount for i in camp_indexes), 2),
        }

    # Multiweek: per participant, tiered by how many weeks they are booked.
    multiweek_lines = []
    for key, indexes in groups.items():
        percent = tier_percent(len(indexes), pricing.multiweek_discount_tiers)
        if percent <= 0:
            continue
        amount = 0.0
        for i in indexes:
            per_item[i].multiweek_discount = _pct(per_item[i].base_price, percent)
            amount += per_item[i].multiweek_discount
        multiweek_lines.append(
            {"participant": key.split("|")[0], "weeks": len(indexes), "percent": percent, "amount": round(amount, 2)}
        )
    if multiweek_lines:
        totals.breakdown["multiweek"] = multiweek_lines

    totals.sibling_discount = round(sum(e.sibling_discount for e in per_item), 2)
    totals.team_discount = round(sum(e.team_discount for e in per_item), 2)
    totals.multiweek_discount = round(sum(e.multiweek_discount for e in per_item), 2)

    referral = context.referral
    if referral is not None and referral.is_valid(context.now):
        totals.referral_discount = round(pricing.referral_discount, 2)
        totals.referral_code = referral.code
        totals.breakdown["referral"] = {"code": referral.code, "amount": totals.referral_discount}

    totals.discount_amount = round(
        totals.sibling_discount
        + totals.team_discount
        + totals.multiweek_discount
        + totals.referral_discount,
        2,
    )
    totals.discounted_subtotal = round(max(0.0, totals.subtotal - totals.discount_amount), 2)

    totals.has_bundle = bool(has_camps and has_training)
    if totals.has_bundle and totals.discounted_subtotal > 0:
        totals.bundle_percent = float(pricing.bundle_discount_percent)
        totals.bundle_discount = _pct(totals.discounted_subtotal, totals.bundle_percent)
        totals.breakdown["bundle"] = {"percent": totals.bundle_percent, "amount": totals.bundle_discount}

    for i in camp_indexes:
        if items[i].care_bundle:
            totals.care_bundle_total += pricing.care_bundle_price
        if items[i].jersey:
            totals.jersey_total += pricing.jersey_price
    totals.care_bundle_total = round(totals.care_bundle_total, 2)
    totals.jersey_total = round(totals.jersey_total, 2)

    before_fee = round(
        totals.discounted_subtotal - totals.bundle_discount + totals.care_bundle_total + totals.jersey_total,
        2,
    )
    totals.processing_fee_enabled = bool(pricing.processing_fee_enabled)
    if pricing.processing_fee_enabled and before_fee > 0:
        totals.processing_fee = round(
            before_fee * pricing.processing_fee_percent / 100 + pricing.processing_fee_fixed, 2
        )

    totals.total = round(before_fee + totals.processing_fee, 2)
    return totals
