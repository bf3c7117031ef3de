"""Order checkout.

An ``Order`` moves ``cart -> intent_created -> awaiting_confirmation`` and
ends ``paid``, ``failed`` or ``expired``. Camp registrations and training
sessions are line items of the same order, so there is one status to keep
consistent.

Finalization is a conditional UPDATE on the order status: whichever caller
(client confirmation or webhook) wins it applies the paid side effects in
the same transaction; everybody else sees ``paid`` and returns. The
confirmation notice is claimed separately through ``notified_at`` after the
commit, so it goes out once even when success is reported twice.
"""
from __future__ import annotations

import logging
import secrets
from collections import Counter
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from training_market.errors import NotFoundError, ServiceError
from training_market.models import (
    Booking,
    BookingStatus,
    Bundle,
    ItemType,
    Order,
    OrderItem,
    OrderStatus,
    PaymentEvent,
    PaymentStatus,
    ReconciliationItem,
    Trainer,
)
from training_market.schemas import CartItemIn, CustomerIn
from training_market.services import bundles as bundle_service
from training_market.services.bookings import (
    booking_to_dict,
    ensure_claimed,
    release_claims,
    reserve_training,
)
from training_market.services.camps import get_camp, seats_left, take_seats
from training_market.services.notifications import Notifier
from training_market.services.packages import package_price
from training_market.services.payments import (
    PaymentGateway,
    PaymentIntent,
    verify_intent_status,
)
from training_market.services.pricing import LineItem, Totals, TotalsContext, calculate_totals
from training_market.services.referrals import (
    get_referral,
    issue_referral_code,
    record_redemption,
    snapshot,
    validate_referral_code,
)
from training_market.settings import Settings, settings as default_settings
from training_market.time_utils import hm_to_minute, utcnow

logger = logging.getLogger(__name__)

PAYABLE_STATUSES = (OrderStatus.cart, OrderStatus.intent_created, OrderStatus.failed)
FINALIZABLE_STATUSES = (
    OrderStatus.intent_created,
    OrderStatus.awaiting_confirmation,
    OrderStatus.failed,
    OrderStatus.expired,
)
EXPIRABLE_STATUSES = (
    OrderStatus.cart,
    OrderStatus.intent_created,
    OrderStatus.awaiting_confirmation,
    OrderStatus.failed,
)
PENDING_INTENT_STATUSES = ("processing", "requires_action", "requires_confirmation")
FAILED_INTENT_STATUSES = ("requires_payment_method", "canceled")


class CheckoutError(ServiceError):
    code = "invalid_checkout"


class OrderStateError(CheckoutError):
    code = "invalid_order_state"
    status_code = 409


class ReconciliationError(ServiceError):
    """Money moved but the order could not be finalized; a retry is queued."""

    code = "reconciliation_pending"
    status_code = 500
    retryable = True


def generate_order_number() -> str:
    return "ORD-" + secrets.token_hex(5).upper()


def get_order(session: Session, order_id: int) -> Order:
    order = session.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found")
    return order


def get_order_by_intent(session: Session, payment_intent_id: str) -> Optional[Order]:
    return session.exec(select(Order).where(Order.payment_intent_id == payment_intent_id)).first()


def order_items(session: Session, order_id: int) -> List[OrderItem]:
    return list(session.exec(select(OrderItem).where(OrderItem.order_id == order_id)).all())


def order_bookings(session: Session, order_id: int) -> List[Booking]:
    return list(session.exec(select(Booking).where(Booking.order_id == order_id)).all())


def _validate_customer(customer: CustomerIn) -> None:
    if not customer.first_name.strip():
        raise CheckoutError("First name is required", code="missing_field")
    email = customer.email.strip()
    if not email or "@" not in email:
        raise CheckoutError("A valid email is required", code="invalid_email")


def _price_items(
    session: Session, items: Sequence[CartItemIn], config: Settings
) -> List[LineItem]:
    """Resolve catalog prices. Camps use the camp price, training the trainer's package price."""
    lines = []
    camp_counts = Counter(item.camp_id for item in items if item.item_type == ItemType.camp)
    for camp_id, count in camp_counts.items():
        if camp_id is None:
            raise CheckoutError("Camp item without a camp", code="missing_field")
        if seats_left(get_camp(session, camp_id)) < count:
            raise CheckoutError("Not enough seats left in this camp", code="camp_full")

    for item in items:
        if item.item_type == ItemType.camp:
            camp = get_camp(session, item.camp_id)
            lines.append(
                LineItem(
                    item_type=ItemType.camp,
                    base_price=camp.price,
                    first_name=item.first_name,
                    last_name=item.last_name,
                    care_bundle=item.care_bundle,
                    jersey=item.jersey,
                    label=camp.name,
                )
            )
            continue
        if item.trainer_id is None or not item.date or not item.time:
            raise CheckoutError("Training items need a trainer, date and time", code="missing_field")
        if item.sessions < 1:
            raise CheckoutError("Sessions must be at least 1", code="invalid_sessions")
        try:
            hm_to_minute(item.time)
        except ValueError:
            raise CheckoutError("Invalid time format", code="invalid_time")
        trainer = session.get(Trainer, item.trainer_id)
        if not trainer or not trainer.is_active:
            raise NotFoundError("Trainer not found")
        amount = package_price(
            trainer.hourly_rate or config.default_hourly_rate,
            item.sessions,
            trainer.lesson_minutes or config.default_lesson_minutes,
            config,
        )
        lines.append(
            LineItem(
                item_type=ItemType.training,
                base_price=amount,
                first_name=item.first_name,
                last_name=item.last_name,
                label=f"Training with {trainer.display_name}",
            )
        )
    return lines


def _collect_items(
    session: Session, items: Sequence[CartItemIn], bundle_code: Optional[str]
) -> Tuple[List[CartItemIn], Optional[Bundle]]:
    collected = list(items)
    bundle = None
    if bundle_code:
        bundle = bundle_service.get_bundle_by_code(session, bundle_code)
        if not bundle:
            raise bundle_service.BundleError("Bundle not found or expired")
        has_training = any(item.item_type == ItemType.training for item in collected)
        has_camp = any(item.item_type == ItemType.camp for item in collected)
        for extra in bundle_service.bundle_items(bundle):
            if extra.item_type == ItemType.training and has_training:
                continue
            if extra.item_type == ItemType.camp and has_camp:
                continue
            collected.append(extra)
    return collected, bundle


def quote_totals(
    session: Session,
    items: Sequence[CartItemIn],
    referral_code: Optional[str] = None,
    bundle_code: Optional[str] = None,
    config: Settings = default_settings,
) -> Totals:
    """Price a cart without reserving anything."""
    collected, _ = _collect_items(session, items, bundle_code)
    lines = _price_items(session, collected, config)
    referral = get_referral(session, referral_code) if referral_code else None
    context = TotalsContext(referral=snapshot(referral) if referral else None, now=utcnow())
    return calculate_totals(lines, context, config.pricing())


def create_order(
    session: Session,
    items: Sequence[CartItemIn],
    customer: CustomerIn,
    referral_code: Optional[str] = None,
    bundle_code: Optional[str] = None,
    user_id: Optional[int] = None,
    parent_id: Optional[int] = None,
    now: Optional[datetime] = None,
    config: Settings = default_settings,
) -> Order:
    """Create an order in ``cart`` state and hold its training slots."""
    _validate_customer(customer)
    collected, bundle = _collect_items(session, items, bundle_code)
    if not collected:
        raise CheckoutError("Cart is empty", code="empty_cart")

    lines = _price_items(session, collected, config)
    referral = validate_referral_code(session, referral_code) if referral_code else None
    totals = calculate_totals(lines, TotalsContext(referral=referral, now=utcnow()), config.pricing())

    order = Order(
        order_number=generate_order_number(),
        user_id=user_id,
        parent_id=parent_id,
        billing_first_name=customer.first_name.strip(),
        billing_last_name=customer.last_name.strip(),
        billing_email=customer.email.strip().lower(),
        billing_phone=customer.phone.strip(),
        subtotal=totals.subtotal,
        discount_amount=totals.discount_amount,
        discount_breakdown=totals.breakdown,
        bundle_discount=totals.bundle_discount,
        care_bundle_total=totals.care_bundle_total,
        jersey_total=totals.jersey_total,
        processing_fee=totals.processing_fee,
        total_amount=totals.total,
        referral_code_used=totals.referral_code,
        bundle_code=bundle.bundle_code if bundle else None,
    )
    session.add(order)
    session.flush()

    try:
        _add_lines(session, order, collected, lines, totals, parent_id, now, config)
    except ServiceError:
        session.rollback()
        raise

    if bundle is not None:
        bundle_service.mark_checkout_started(session, bundle, order.id)
    session.commit()
    session.refresh(order)
    logger.info("order %s created, total %.2f", order.order_number, order.total_amount)
    return order


def _add_lines(
    session: Session,
    order: Order,
    collected: Sequence[CartItemIn],
    lines: Sequence[LineItem],
    totals: Totals,
    parent_id: Optional[int],
    now: Optional[datetime],
    config: Settings,
) -> None:
    for item, line, priced in zip(collected, lines, totals.items):
        booking_id = None
        if item.item_type == ItemType.training:
            booking = reserve_training(
                session,
                trainer_id=item.trainer_id,
                date=item.date,
                start_minute=hm_to_minute(item.time),
                amount=priced.final_price,
                parent_id=parent_id,
                player_id=item.player_id,
                order_id=order.id,
                package=item.package,
                sessions=item.sessions,
                location=item.location,
                now=now,
                config=config,
                commit=False,
            )
            booking_id = booking.id
        session.add(
            OrderItem(
                order_id=order.id,
                item_type=item.item_type,
                label=line.label,
                camp_id=item.camp_id if item.item_type == ItemType.camp else None,
                booking_id=booking_id,
                participant_first_name=item.first_name,
                participant_last_name=item.last_name,
                base_price=priced.base_price,
                discount_amount=priced.discount,
                final_price=priced.final_price,
                is_sibling=priced.is_sibling,
                care_bundle=item.care_bundle,
                jersey=item.jersey,
            )
        )


def _hold_bookings(session: Session, order: Order, config: Settings) -> None:
    held_until = utcnow() + timedelta(minutes=config.reservation_ttl_minutes)
    for booking in order_bookings(session, order.id):
        if booking.status == BookingStatus.cancelled:
            booking.status = BookingStatus.pending
            ensure_claimed(session, booking, config)
        if booking.status == BookingStatus.pending:
            booking.reserved_until = held_until
            session.add(booking)


def start_payment(
    session: Session,
    order_id: int,
    gateway: PaymentGateway,
    config: Settings = default_settings,
) -> PaymentIntent:
    order = get_order(session, order_id)
    if order.status not in PAYABLE_STATUSES:
        raise OrderStateError(f"Order is {order.status.value}; payment cannot start")
    if order.total_amount <= 0:
        raise CheckoutError("Order total must be greater than zero", code="invalid_amount")

    _hold_bookings(session, order, config)
    intent = gateway.create_intent(
        order.total_amount,
        {"order_id": str(order.id), "order_number": order.order_number},
    )
    order.payment_intent_id = intent.id
    order.status = OrderStatus.intent_created
    order.failure_reason = None
    order.updated_at = utcnow()
    session.add(order)
    session.commit()
    session.refresh(order)
    logger.info("order %s: payment intent %s created", order.order_number, intent.id)
    return intent


def record_reconciliation(
    session: Session, order: Order, stage: str, error: str
) -> ReconciliationItem:
    item = session.exec(
        select(ReconciliationItem).where(
            ReconciliationItem.order_id == order.id,
            ReconciliationItem.resolved == False,  # noqa: E712
        )
    ).first()
    if item:
        item.attempts += 1
        item.stage = stage
        item.error = error
        item.updated_at = utcnow()
    else:
        item = ReconciliationItem(
            order_id=order.id,
            payment_intent_id=order.payment_intent_id or "",
            stage=stage,
            error=error,
        )
    session.add(item)
    session.commit()
    session.refresh(item)
    logger.error(
        "order %s needs reconciliation at stage %s (attempt %d): %s",
        order.order_number,
        stage,
        item.attempts,
        error,
    )
    return item


def _resolve_reconciliation(session: Session, order_id: int) -> None:
    session.exec(
        update(ReconciliationItem)
        .where(ReconciliationItem.order_id == order_id, ReconciliationItem.resolved == False)  # noqa: E712
        .values(resolved=True, updated_at=utcnow())
    )


def _confirm_bookings(session: Session, order: Order, now: datetime, config: Settings) -> None:
    for booking in order_bookings(session, order.id):
        ensure_claimed(session, booking, config)
        booking.status = BookingStatus.confirmed
        booking.payment_status = PaymentStatus.paid
        booking.paid_at = now
        booking.reserved_until = None
        booking.updated_at = now
        session.add(booking)


def _take_camp_seats(session: Session, order: Order) -> None:
    seats = Counter(
        item.camp_id
        for item in order_items(session, order.id)
        if item.item_type == ItemType.camp and item.camp_id is not None
    )
    for camp_id, count in seats.items():
        take_seats(session, camp_id, count)


def _settle_referrals(session: Session, order: Order, config: Settings) -> None:
    if order.referral_code_used:
        referral = (order.discount_breakdown or {}).get("referral") or {}
        record_redemption(session, order.referral_code_used, float(referral.get("amount", 0.0)))
    issue_referral_code(session, order, config)


def finalize_order(
    session: Session,
    order: Order,
    notifier: Notifier,
    config: Settings = default_settings,
) -> Order:
    """Move ``order`` to paid and apply its side effects exactly once."""
    now = utcnow()
    order_id = order.id
    stage = "order"
    try:
        won = session.exec(
            update(Order)
            .where(Order.id == order_id, Order.status.in_(FINALIZABLE_STATUSES))
            .values(status=OrderStatus.paid, paid_at=now, updated_at=now, failure_reason=None)
        ).rowcount
        if won:
            session.refresh(order)
            stage = "bookings"
            _confirm_bookings(session, order, now, config)
            stage = "camps"
            _take_camp_seats(session, order)
            stage = "referrals"
            _settle_referrals(session, order, config)
            stage = "bundle"
            bundle_service.mark_completed(session, order_id, now)
            _resolve_reconciliation(session, order_id)
        session.commit()
    except (ServiceError, SQLAlchemyError) as exc:
        session.rollback()
        order = get_order(session, order_id)
        item = record_reconciliation(session, order, stage, getattr(exc, "message", None) or str(exc))
        raise ReconciliationError(
            f"Payment received but order {order.order_number} could not be completed; "
            f"reconciliation #{item.id} queued"
        )

    session.refresh(order)
    if order.status != OrderStatus.paid:
        raise OrderStateError(f"Order is {order.status.value}; payment cannot be applied")
    if won:
        logger.info("order %s paid", order.order_number)
    notify_once(session, order, notifier)
    return order


def notify_once(session: Session, order: Order, notifier: Notifier) -> bool:
    claimed = session.exec(
        update(Order)
        .where(Order.id == order.id, Order.notified_at == None)  # noqa: E711
        .values(notified_at=utcnow())
    ).rowcount
    session.commit()
    if not claimed:
        return False
    try:
        notifier.order_paid(order)
    except Exception as exc:
        logger.exception("confirmation for order %s failed", order.order_number)
        session.exec(update(Order).where(Order.id == order.id).values(notified_at=None))
        session.commit()
        record_reconciliation(session, order, "notify", str(exc))
        return False
    session.refresh(order)
    return True


def settle_intent(
    session: Session,
    order: Order,
    status: str,
    notifier: Notifier,
    config: Settings = default_settings,
) -> Order:
    """Apply a provider-reported intent status to ``order``."""
    if order.status == OrderStatus.paid:
        notify_once(session, order, notifier)
        return order
    if status == "succeeded":
        return finalize_order(session, order, notifier, config)

    if status in PENDING_INTENT_STATUSES and order.status != OrderStatus.expired:
        order.status = OrderStatus.awaiting_confirmation
    elif status in FAILED_INTENT_STATUSES and order.status != OrderStatus.expired:
        order.status = OrderStatus.failed
        order.failure_reason = status
    order.updated_at = utcnow()
    session.add(order)
    session.commit()
    logger.info("order %s: intent status %s", order.order_number, status)
    verify_intent_status(status)
    return order


def confirm_payment(
    session: Session,
    gateway: PaymentGateway,
    notifier: Notifier,
    payment_intent_id: Optional[str] = None,
    order_id: Optional[int] = None,
    config: Settings = default_settings,
) -> Order:
    if payment_intent_id:
        order = get_order_by_intent(session, payment_intent_id)
        if not order:
            raise NotFoundError("No order for this payment")
    elif order_id is not None:
        order = get_order(session, order_id)
    else:
        raise CheckoutError("Missing payment reference", code="missing_field")

    if order.status == OrderStatus.paid:
        notify_once(session, order, notifier)
        return order
    if not order.payment_intent_id:
        raise OrderStateError("Payment has not been started for this order")
    if payment_intent_id and order.payment_intent_id != payment_intent_id:
        raise CheckoutError("Payment does not belong to this order", code="intent_mismatch")

    status = gateway.get_intent_status(order.payment_intent_id)
    return settle_intent(session, order, status, notifier, config)


def expire_order(session: Session, order: Order) -> bool:
    """Expire an unpaid order and release its holds; paid orders are left alone."""
    now = utcnow()
    expired = session.exec(
        update(Order)
        .where(Order.id == order.id, Order.status.in_(EXPIRABLE_STATUSES))
        .values(status=OrderStatus.expired, updated_at=now)
    ).rowcount
    if not expired:
        session.rollback()
        logger.info("expiry ignored for order %s (%s)", order.order_number, order.status.value)
        return False
    for booking in order_bookings(session, order.id):
        if booking.status != BookingStatus.pending:
            continue
        booking.status = BookingStatus.cancelled
        booking.updated_at = now
        release_claims(session, booking.id)
        session.add(booking)
    session.commit()
    session.refresh(order)
    logger.info("order %s expired", order.order_number)
    return True


def fail_payment(session: Session, order: Order, reason: str) -> bool:
    failed = session.exec(
        update(Order)
        .where(
            Order.id == order.id,
            Order.status.in_((OrderStatus.intent_created, OrderStatus.awaiting_confirmation)),
        )
        .values(status=OrderStatus.failed, failure_reason=reason, updated_at=utcnow())
    ).rowcount
    session.commit()
    session.refresh(order)
    if failed:
        logger.info("order %s payment failed: %s", order.order_number, reason)
    return bool(failed)


def _event_order(session: Session, obj: dict) -> Optional[Order]:
    intent_id = obj.get("payment_intent") if obj.get("object") == "checkout.session" else obj.get("id")
    if intent_id:
        order = get_order_by_intent(session, intent_id)
        if order:
            return order
    order_id = (obj.get("metadata") or {}).get("order_id")
    if order_id and str(order_id).isdigit():
        return session.get(Order, int(order_id))
    return None


def handle_webhook_event(
    session: Session,
    event: dict,
    notifier: Notifier,
    config: Settings = default_settings,
) -> str:
    """Apply a verified provider event; a redelivered event id is a no-op."""
    event_id = event.get("id")
    event_type = event.get("type", "")
    if not event_id:
        raise CheckoutError("Event without id", code="invalid_webhook")
    if session.exec(select(PaymentEvent).where(PaymentEvent.event_id == event_id)).first():
        return "duplicate"

    obj = (event.get("data") or {}).get("object") or {}
    order = _event_order(session, obj)
    outcome = "ignored"
    if order is not None:
        if event_type == "payment_intent.succeeded":
            settle_intent(session, order, "succeeded", notifier, config)
            outcome = "paid"
        elif event_type == "payment_intent.payment_failed":
            error = obj.get("last_payment_error") or {}
            fail_payment(session, order, error.get("message") or "payment_failed")
            outcome = "failed"
        elif event_type in ("checkout.session.expired", "payment_intent.canceled"):
            outcome = "expired" if expire_order(session, order) else "ignored"
    else:
        logger.warning("webhook %s (%s) matches no order", event_id, event_type)

    session.add(
        PaymentEvent(
            event_id=event_id,
            event_type=event_type,
            payment_intent_id=order.payment_intent_id if order else None,
        )
    )
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        return "duplicate"
    return outcome


def list_reconciliation(session: Session, unresolved_only: bool = True) -> List[ReconciliationItem]:
    stmt = select(ReconciliationItem)
    if unresolved_only:
        stmt = stmt.where(ReconciliationItem.resolved == False)  # noqa: E712
    return list(session.exec(stmt.order_by(ReconciliationItem.created_at.asc())).all())


def retry_reconciliation(
    session: Session,
    item_id: int,
    notifier: Notifier,
    config: Settings = default_settings,
) -> ReconciliationItem:
    item = session.get(ReconciliationItem, item_id)
    if not item:
        raise NotFoundError("Reconciliation item not found")
    if item.resolved:
        return item
    order = get_order(session, item.order_id)
    if item.stage == "notify":
        notify_once(session, order, notifier)
    else:
        finalize_order(session, order, notifier, config)
    session.refresh(order)
    session.refresh(item)
    done = order.status == OrderStatus.paid and (item.stage != "notify" or order.notified_at is not None)
    if done and not item.resolved:
        item.resolved = True
        item.updated_at = utcnow()
        session.add(item)
        session.commit()
        session.refresh(item)
    logger.info("reconciliation #%d retried, resolved=%s", item.id, item.resolved)
    return item


def order_to_dict(session: Session, order: Order) -> dict:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "subtotal": order.subtotal,
        "discount_amount": order.discount_amount,
        "discount_breakdown": order.discount_breakdown,
        "bundle_discount": order.bundle_discount,
        "care_bundle_total": order.care_bundle_total,
        "jersey_total": order.jersey_total,
        "processing_fee": order.processing_fee,
        "total_amount": order.total_amount,
        "referral_code_used": order.referral_code_used,
        "referral_code_generated": order.referral_code_generated,
        "bundle_code": order.bundle_code,
        "payment_intent_id": order.payment_intent_id,
        "paid_at": order.paid_at.isoformat() if order.paid_at else None,
        "items": [
            {
                "item_type": item.item_type,
                "label": item.label,
                "camp_id": item.camp_id,
                "booking_id": item.booking_id,
                "participant": f"{item.participant_first_name} {item.participant_last_name}".strip(),
                "base_price": item.base_price,
                "discount_amount": item.discount_amount,
                "final_price": item.final_price,
                "care_bundle": item.care_bundle,
                "jersey": item.jersey,
            }
            for item in order_items(session, order.id)
        ],
        "bookings": [booking_to_dict(b) for b in order_bookings(session, order.id)],
    }
