from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from training_market.errors import NotFoundError, ServiceError
from training_market.models import (
    Booking,
    BookingStatus,
    Parent,
    PaymentStatus,
    SlotClaim,
    Trainer,
)
from training_market.services.availability import is_slot_available
from training_market.settings import Settings, settings as default_settings
from training_market.time_utils import minute_to_hm, utcnow

logger = logging.getLogger(__name__)


class BookingError(ServiceError):
    code = "booking_error"


class SlotTakenError(BookingError):
    """The requested time is no longer free; the caller may pick another slot."""

    code = "slot_taken"
    status_code = 409
    retryable = True


def get_parent_by_user_id(session: Session, user_id: int) -> Optional[Parent]:
    return session.exec(select(Parent).where(Parent.user_id == user_id)).first()


def get_trainer_by_user_id(session: Session, user_id: int) -> Optional[Trainer]:
    return session.exec(select(Trainer).where(Trainer.user_id == user_id)).first()


def generate_booking_number() -> str:
    return "BK-" + secrets.token_hex(4).upper()


def claim_blocks(start_minute: int, end_minute: int, block_minutes: int) -> List[int]:
    return list(range(start_minute, end_minute, block_minutes))


def split_payout(amount: float, config: Settings = default_settings) -> tuple:
    payout = round(amount * config.trainer_payout_percent / 100, 2)
    return payout, round(amount - payout, 2)


def release_claims(session: Session, booking_id: int) -> None:
    session.exec(delete(SlotClaim).where(SlotClaim.booking_id == booking_id))


def release_lapsed_reservations(
    session: Session,
    trainer_id: Optional[int] = None,
    date: Optional[str] = None,
    now_utc: Optional[datetime] = None,
    commit: bool = True,
) -> int:
    """Cancel unpaid pending bookings whose hold expired and free their claims."""
    now_utc = now_utc or utcnow()
    stmt = select(Booking).where(
        Booking.status == BookingStatus.pending,
        Booking.payment_status != PaymentStatus.paid,
        Booking.reserved_until != None,  # noqa: E711
        Booking.reserved_until <= now_utc,
    )
    if trainer_id is not None:
        stmt = stmt.where(Booking.trainer_id == trainer_id)
    if date is not None:
        stmt = stmt.where(Booking.session_date == date)
    released = 0
    for booking in session.exec(stmt).all():
        booking.status = BookingStatus.cancelled
        booking.updated_at = now_utc
        release_claims(session, booking.id)
        session.add(booking)
        released += 1
    if released:
        logger.info("released %d lapsed slot reservations", released)
    if commit:
        session.commit()
    else:
        session.flush()
    return released


def claim_slot(session: Session, booking: Booking, config: Settings = default_settings) -> None:
    """Insert the claim rows for ``booking``; raises ``SlotTakenError`` on overlap.

    On conflict the session is rolled back, discarding whatever the caller
    had pending in the same transaction.
    """
    for block in claim_blocks(booking.start_minute, booking.end_minute, config.claim_block_minutes):
        session.add(
            SlotClaim(
                trainer_id=booking.trainer_id,
                session_date=booking.session_date,
                block_start=block,
                booking_id=booking.id,
            )
        )
    try:
        session.flush()
    except IntegrityError:
        session.rollback()
        logger.info(
            "slot conflict for trainer %s on %s at %s",
            booking.trainer_id,
            booking.session_date,
            booking.start_minute,
        )
        raise SlotTakenError("This time slot was just booked. Please choose another time.")


def reserve_training(
    session: Session,
    trainer_id: int,
    date: str,
    start_minute: int,
    amount: float,
    parent_id: Optional[int] = None,
    player_id: Optional[int] = None,
    order_id: Optional[int] = None,
    package: str = "single",
    sessions: int = 1,
    location: str = "",
    now: Optional[datetime] = None,
    config: Settings = default_settings,
    commit: bool = True,
) -> Booking:
    """Hold a training slot as a pending booking until payment or expiry."""
    trainer = session.get(Trainer, trainer_id)
    if not trainer or not trainer.is_active:
        raise NotFoundError("Trainer not found")
    duration = trainer.lesson_minutes or config.default_lesson_minutes
    if start_minute % config.claim_block_minutes or duration % config.claim_block_minutes:
        raise BookingError(
            f"Sessions must start and end on a {config.claim_block_minutes}-minute boundary",
            code="off_grid",
        )

    release_lapsed_reservations(session, trainer_id=trainer_id, date=date, commit=False)
    if not is_slot_available(
        session, trainer_id, date, start_minute, duration, now=now, config=config
    ):
        raise SlotTakenError("This time slot is not available.")

    payout, platform_fee = split_payout(amount, config)
    booking = Booking(
        booking_number=generate_booking_number(),
        order_id=order_id,
        parent_id=parent_id,
        player_id=player_id,
        trainer_id=trainer_id,
        session_date=date,
        start_minute=start_minute,
        end_minute=start_minute + duration,
        location=location,
        package=package,
        sessions=sessions,
        amount=amount,
        trainer_payout=payout,
        platform_fee=platform_fee,
        reserved_until=utcnow() + timedelta(minutes=config.reservation_ttl_minutes),
    )
    session.add(booking)
    session.flush()
    claim_slot(session, booking, config)
    if commit:
        session.commit()
        session.refresh(booking)
    return booking


def ensure_claimed(session: Session, booking: Booking, config: Settings = default_settings) -> None:
    """Re-take the claims of a booking whose hold lapsed before payment landed."""
    held = session.exec(
        select(func.count()).select_from(SlotClaim).where(SlotClaim.booking_id == booking.id)
    ).one()
    if held:
        return
    claim_slot(session, booking, config)


def cancel_booking(session: Session, booking_id: int, parent_id: Optional[int] = None) -> Booking:
    booking = session.get(Booking, booking_id)
    if not booking or (parent_id is not None and booking.parent_id != parent_id):
        raise NotFoundError("Booking not found")
    if booking.status not in {BookingStatus.pending, BookingStatus.confirmed}:
        raise BookingError("Booking can no longer be cancelled", code="invalid_status")
    booking.status = BookingStatus.cancelled
    booking.updated_at = utcnow()
    release_claims(session, booking.id)
    session.add(booking)
    session.commit()
    session.refresh(booking)
    return booking


def _trainer_transition(
    session: Session, booking_id: int, trainer_id: int, status: BookingStatus
) -> Booking:
    booking = session.get(Booking, booking_id)
    if not booking or booking.trainer_id != trainer_id:
        raise NotFoundError("Booking not found")
    if booking.status != BookingStatus.confirmed:
        raise BookingError("Only confirmed sessions can be closed", code="invalid_status")
    booking.status = status
    booking.updated_at = utcnow()
    session.add(booking)
    session.commit()
    session.refresh(booking)
    return booking


def complete_booking(session: Session, booking_id: int, trainer_id: int) -> Booking:
    return _trainer_transition(session, booking_id, trainer_id, BookingStatus.completed)


def mark_no_show(session: Session, booking_id: int, trainer_id: int) -> Booking:
    return _trainer_transition(session, booking_id, trainer_id, BookingStatus.no_show)


def trainer_payout_summary(session: Session, trainer_id: int) -> dict:
    rows = session.exec(
        select(Booking.status, func.count(Booking.id), func.sum(Booking.trainer_payout))
        .where(
            Booking.trainer_id == trainer_id,
            Booking.payment_status == PaymentStatus.paid,
        )
        .group_by(Booking.status)
    ).all()
    by_status = {status: (int(count), float(total or 0)) for status, count, total in rows}
    earned = by_status.get(BookingStatus.completed, (0, 0.0))
    upcoming = by_status.get(BookingStatus.confirmed, (0, 0.0))
    return {
        "trainer_id": trainer_id,
        "completed_sessions": earned[0],
        "earned": round(earned[1], 2),
        "upcoming_sessions": upcoming[0],
        "pending_payout": round(upcoming[1], 2),
    }


def booking_to_dict(booking: Booking) -> dict:
    return {
        "id": booking.id,
        "booking_number": booking.booking_number,
        "order_id": booking.order_id,
        "trainer_id": booking.trainer_id,
        "parent_id": booking.parent_id,
        "player_id": booking.player_id,
        "session_date": booking.session_date,
        "start_time": minute_to_hm(booking.start_minute),
        "end_time": minute_to_hm(booking.end_minute),
        "amount": booking.amount,
        "trainer_payout": booking.trainer_payout,
        "platform_fee": booking.platform_fee,
        "status": booking.status,
        "payment_status": booking.payment_status,
    }
