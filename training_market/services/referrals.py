from __future__ import annotations

import logging
import re
import secrets
from datetime import datetime
from typing import Optional

from sqlalchemy import or_, update
from sqlmodel import Session, select

from training_market.errors import ServiceError
from training_market.models import Order, ReferralCode
from training_market.services.pricing import ReferralSnapshot
from training_market.settings import Settings, settings as default_settings
from training_market.time_utils import utcnow

logger = logging.getLogger(__name__)


class ReferralError(ServiceError):
    code = "invalid_referral"


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def generate_referral_code(email: str) -> str:
    local = (email or "").split("@")[0]
    base = re.sub(r"[^a-zA-Z]", "", local)[:4].upper().ljust(4, "X")
    return base + secrets.token_hex(2).upper()


def get_referral(session: Session, code: str) -> Optional[ReferralCode]:
    return session.exec(select(ReferralCode).where(ReferralCode.code == normalize_code(code))).first()


def snapshot(referral: ReferralCode) -> ReferralSnapshot:
    return ReferralSnapshot(
        code=referral.code,
        is_active=referral.is_active,
        times_used=referral.times_used,
        max_uses=referral.max_uses,
        expires_at=referral.expires_at,
    )


def validate_referral_code(
    session: Session, code: Optional[str], now: Optional[datetime] = None
) -> ReferralSnapshot:
    """Look up ``code`` and explain why it cannot be used, if it cannot."""
    code = normalize_code(code)
    if not code:
        raise ReferralError("No code provided", code="missing_referral")
    referral = get_referral(session, code)
    if not referral or not referral.is_active:
        raise ReferralError("Invalid referral code")
    now = now or utcnow()
    if referral.expires_at is not None and referral.expires_at <= now:
        raise ReferralError("This code has expired", code="referral_expired")
    if referral.max_uses and referral.times_used >= referral.max_uses:
        raise ReferralError("This code has reached its maximum uses", code="referral_exhausted")
    return snapshot(referral)


def issue_referral_code(
    session: Session, order: Order, config: Settings = default_settings
) -> ReferralCode:
    """Create the order's own referral code; at most one exists per order."""
    existing = session.exec(select(ReferralCode).where(ReferralCode.order_id == order.id)).first()
    if existing:
        return existing
    code = generate_referral_code(order.billing_email)
    while get_referral(session, code) is not None:
        code = generate_referral_code(order.billing_email)
    referral = ReferralCode(
        code=code,
        order_id=order.id,
        user_id=order.user_id,
        email=order.billing_email,
        max_uses=config.referral_max_uses,
    )
    session.add(referral)
    session.flush()
    order.referral_code_generated = code
    session.add(order)
    return referral


def record_redemption(session: Session, code: str, amount: float) -> bool:
    """Count one use of ``code``; returns False when the code is already at its cap."""
    result = session.exec(
        update(ReferralCode)
        .where(
            ReferralCode.code == normalize_code(code),
            or_(
                ReferralCode.max_uses == None,  # noqa: E711
                ReferralCode.times_used < ReferralCode.max_uses,
            ),
        )
        .values(
            times_used=ReferralCode.times_used + 1,
            total_discount_given=ReferralCode.total_discount_given + amount,
        )
    )
    if result.rowcount != 1:
        logger.warning("referral %s not credited: unknown code or use cap reached", normalize_code(code))
        return False
    return True
