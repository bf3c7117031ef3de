from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import delete, update
from sqlmodel import Session, select

from training_market.errors import NotFoundError, ServiceError
from training_market.models import Bundle, BundleStatus, ItemType, Trainer
from training_market.schemas import CartItemIn
from training_market.services.availability import is_slot_available
from training_market.services.camps import get_camp
from training_market.settings import Settings, settings as default_settings
from training_market.time_utils import hm_to_minute, minute_to_hm, utcnow

logger = logging.getLogger(__name__)

LIVE_STATUSES = (BundleStatus.active, BundleStatus.partial)
_CODE_ALPHABET = string.ascii_uppercase + string.digits


class BundleError(ServiceError):
    code = "invalid_bundle"


def generate_bundle_code() -> str:
    return "BND-" + "".join(secrets.choice(_CODE_ALPHABET) for _ in range(8))


def create_bundle(
    session: Session,
    trainer_id: int,
    date: str,
    time: str,
    session_id: Optional[str] = None,
    user_id: Optional[int] = None,
    package: str = "single",
    sessions: int = 1,
    location: str = "",
    now: Optional[datetime] = None,
    config: Settings = default_settings,
) -> Bundle:
    """Park a training selection so a camp can join it before checkout."""
    if not session_id and not user_id:
        raise BundleError("A browser session or user is required", code="missing_owner")
    trainer = session.get(Trainer, trainer_id)
    if not trainer or not trainer.is_active:
        raise NotFoundError("Trainer not found")
    if sessions < 1:
        raise BundleError("Sessions must be at least 1", code="invalid_sessions")
    try:
        start_minute = hm_to_minute(time)
    except ValueError:
        raise BundleError("Invalid time format", code="invalid_time")
    lesson = trainer.lesson_minutes or config.default_lesson_minutes
    if not is_slot_available(session, trainer_id, date, start_minute, lesson, now=now, config=config):
        raise BundleError("This time slot is not available", code="slot_taken")

    bundle = Bundle(
        bundle_code=generate_bundle_code(),
        session_id=session_id,
        user_id=user_id,
        trainer_id=trainer_id,
        training_date=date,
        training_start_minute=start_minute,
        training_location=location,
        training_package=package,
        training_sessions=sessions,
        expires_at=utcnow() + timedelta(hours=config.bundle_expiry_hours),
    )
    session.add(bundle)
    session.commit()
    session.refresh(bundle)
    logger.info("bundle %s created for trainer %s", bundle.bundle_code, trainer_id)
    return bundle


def get_bundle_by_code(
    session: Session, bundle_code: str, now: Optional[datetime] = None
) -> Optional[Bundle]:
    now = now or utcnow()
    bundle = session.exec(select(Bundle).where(Bundle.bundle_code == bundle_code)).first()
    if not bundle or bundle.status not in LIVE_STATUSES:
        return None
    if bundle.expires_at is not None and bundle.expires_at <= now:
        return None
    return bundle


def get_active_bundle(
    session: Session,
    session_id: Optional[str] = None,
    user_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Optional[Bundle]:
    if not session_id and not user_id:
        return None
    now = now or utcnow()
    stmt = select(Bundle).where(
        Bundle.status.in_(LIVE_STATUSES),
        Bundle.expires_at > now,
    )
    if user_id:
        stmt = stmt.where(Bundle.user_id == user_id)
    else:
        stmt = stmt.where(Bundle.session_id == session_id)
    return session.exec(stmt.order_by(Bundle.created_at.desc())).first()


def add_camp_to_bundle(
    session: Session,
    bundle_code: str,
    camp_id: int,
    quantity: int = 1,
) -> Bundle:
    """Attach a camp to the bundle. Prices are quoted at checkout, not stored here."""
    bundle = get_bundle_by_code(session, bundle_code)
    if not bundle:
        raise BundleError("Bundle not found or expired")
    if bundle.status != BundleStatus.active:
        raise BundleError("Checkout already started for this bundle", code="bundle_locked")
    if quantity < 1:
        raise BundleError("Quantity must be at least 1", code="invalid_quantity")
    camp = get_camp(session, camp_id)

    bundle.camp_id = camp.id
    bundle.camp_quantity = quantity
    session.add(bundle)
    session.commit()
    session.refresh(bundle)
    return bundle


def clear_bundle(session: Session, bundle_code: str) -> bool:
    result = session.exec(
        update(Bundle)
        .where(Bundle.bundle_code == bundle_code, Bundle.status.in_(LIVE_STATUSES))
        .values(status=BundleStatus.cancelled)
    )
    session.commit()
    return result.rowcount > 0


def bundle_items(bundle: Bundle) -> List[CartItemIn]:
    """Cart lines a bundle contributes to an order."""
    items = []
    if bundle.trainer_id:
        items.append(
            CartItemIn(
                item_type=ItemType.training,
                trainer_id=bundle.trainer_id,
                date=bundle.training_date,
                time=minute_to_hm(bundle.training_start_minute or 0),
                package=bundle.training_package,
                sessions=bundle.training_sessions,
                location=bundle.training_location,
            )
        )
    for _ in range(bundle.camp_quantity if bundle.camp_id else 0):
        items.append(CartItemIn(item_type=ItemType.camp, camp_id=bundle.camp_id))
    return items


def mark_checkout_started(session: Session, bundle: Bundle, order_id: int) -> None:
    bundle.order_id = order_id
    bundle.status = BundleStatus.partial
    session.add(bundle)


def mark_completed(session: Session, order_id: int, now: Optional[datetime] = None) -> None:
    session.exec(
        update(Bundle)
        .where(Bundle.order_id == order_id, Bundle.status.in_(LIVE_STATUSES))
        .values(status=BundleStatus.completed, completed_at=now or utcnow())
    )


def cleanup_bundles(
    session: Session, now: Optional[datetime] = None, config: Settings = default_settings
) -> dict:
    """Abandon expired live bundles and purge old abandoned ones."""
    now = now or utcnow()
    abandoned = session.exec(
        update(Bundle)
        .where(Bundle.status.in_(LIVE_STATUSES), Bundle.expires_at <= now)
        .values(status=BundleStatus.abandoned)
    ).rowcount
    purged = session.exec(
        delete(Bundle).where(
            Bundle.status == BundleStatus.abandoned,
            Bundle.created_at < now - timedelta(days=config.abandoned_bundle_retention_days),
        )
    ).rowcount
    session.commit()
    if abandoned or purged:
        logger.info("bundles cleanup: %d abandoned, %d purged", abandoned, purged)
    return {"abandoned": abandoned, "purged": purged}


def bundle_to_dict(bundle: Bundle) -> dict:
    return {
        "bundle_code": bundle.bundle_code,
        "trainer_id": bundle.trainer_id,
        "training_date": bundle.training_date,
        "training_time": (
            minute_to_hm(bundle.training_start_minute)
            if bundle.training_start_minute is not None
            else None
        ),
        "training_package": bundle.training_package,
        "training_sessions": bundle.training_sessions,
        "camp_id": bundle.camp_id,
        "camp_quantity": bundle.camp_quantity,
        "status": bundle.status,
        "expires_at": bundle.expires_at.isoformat() if bundle.expires_at else None,
    }
