import pytest
from sqlmodel import select

from conftest import RecordingNotifier, future_date
from training_market.models import (
    Booking,
    BookingStatus,
    BundleStatus,
    Camp,
    ItemType,
    Order,
    OrderStatus,
    PaymentStatus,
    ReconciliationItem,
    ReferralCode,
)
from training_market.schemas import CartItemIn, CustomerIn
from training_market.services import bundles
from training_market.services.availability import build_slots
from training_market.services.bookings import SlotTakenError
from training_market.services.checkout import (
    CheckoutError,
    OrderStateError,
    ReconciliationError,
    confirm_payment,
    create_order,
    expire_order,
    handle_webhook_event,
    list_reconciliation,
    quote_totals,
    retry_reconciliation,
    start_payment,
)
from training_market.services.payments import (
    PaymentCanceledError,
    PaymentDeclinedError,
    PaymentProcessingError,
    PaymentRequiresActionError,
    PaymentStatusUnknownError,
)
from training_market.services.referrals import ReferralError

CUSTOMER = CustomerIn(first_name="Pat", last_name="Lee", email="Pat.Lee@example.com")


@pytest.fixture
def day(trainer, open_weekday):
    day = future_date(10)
    open_weekday(trainer, day)
    return day


def training_item(trainer, day, time="10:00", **extra):
    return CartItemIn(item_type=ItemType.training, trainer_id=trainer.id, date=day, time=time, **extra)


def camp_item(camp, first, last="Lee", **extra):
    return CartItemIn(item_type=ItemType.camp, camp_id=camp.id, first_name=first, last_name=last, **extra)


def pay(session, gateway, config, items, customer=CUSTOMER, **extra):
    order = create_order(session, items, customer, config=config, **extra)
    intent = start_payment(session, order.id, gateway, config=config)
    gateway.set_status(intent.id, "succeeded")
    return order, intent


def test_create_order_holds_slot(session, trainer, day, make_camp, config):
    camp = make_camp()
    items = [training_item(trainer, day), camp_item(camp, "Sam")]
    quoted = quote_totals(session, items, config=config)
    order = create_order(session, items, CUSTOMER, config=config)

    assert order.status == OrderStatus.cart
    assert order.billing_email == "pat.lee@example.com"
    assert order.total_amount == quoted.total
    assert order.bundle_discount > 0

    booking = session.exec(select(Booking).where(Booking.order_id == order.id)).one()
    assert booking.status == BookingStatus.pending
    assert booking.reserved_until is not None
    assert booking.trainer_payout == pytest.approx(booking.amount * 0.75)
    assert "10:00" not in [s.time for s in build_slots(session, trainer.id, day, config=config)]


def test_second_order_for_same_slot_is_rejected(session, trainer, day, config):
    create_order(session, [training_item(trainer, day)], CUSTOMER, config=config)
    with pytest.raises(SlotTakenError) as excinfo:
        create_order(session, [training_item(trainer, day)], CUSTOMER, config=config)
    assert excinfo.value.retryable
    assert excinfo.value.code == "slot_taken"
    assert len(session.exec(select(Order)).all()) == 1


def test_create_order_validation(session, trainer, day, config):
    with pytest.raises(CheckoutError) as excinfo:
        create_order(session, [], CUSTOMER, config=config)
    assert excinfo.value.code == "empty_cart"

    bad = CustomerIn(first_name="Pat", email="not-an-email")
    with pytest.raises(CheckoutError) as excinfo:
        create_order(session, [training_item(trainer, day)], bad, config=config)
    assert excinfo.value.code == "invalid_email"

    with pytest.raises(ReferralError):
        create_order(session, [training_item(trainer, day)], CUSTOMER, referral_code="NOPE1234", config=config)


def test_success_reported_twice_notifies_once(session, trainer, day, make_camp, gateway, config):
    camp = make_camp(capacity=5)
    notifier = RecordingNotifier()
    order, intent = pay(session, gateway, config, [training_item(trainer, day), camp_item(camp, "Sam")])

    confirm_payment(session, gateway, notifier, payment_intent_id=intent.id, config=config)
    confirm_payment(session, gateway, notifier, payment_intent_id=intent.id, config=config)
    event = {
        "id": "evt_1",
        "type": "payment_intent.succeeded",
        "data": {"object": {"object": "payment_intent", "id": intent.id}},
    }
    assert handle_webhook_event(session, event, notifier, config) == "paid"

    session.refresh(order)
    assert order.status == OrderStatus.paid
    assert notifier.sent == [order.id]
    assert len(session.exec(select(ReferralCode)).all()) == 1
    assert order.referral_code_generated.startswith("PATL")
    assert session.get(Camp, camp.id).registered == 1

    booking = session.exec(select(Booking).where(Booking.order_id == order.id)).one()
    assert booking.status == BookingStatus.confirmed
    assert booking.payment_status == PaymentStatus.paid
    assert booking.reserved_until is None


@pytest.mark.parametrize(
    "status,error,order_status",
    [
        ("processing", PaymentProcessingError, OrderStatus.awaiting_confirmation),
        ("requires_action", PaymentRequiresActionError, OrderStatus.awaiting_confirmation),
        ("requires_payment_method", PaymentDeclinedError, OrderStatus.failed),
        ("canceled", PaymentCanceledError, OrderStatus.failed),
        ("mystery", PaymentStatusUnknownError, OrderStatus.intent_created),
    ],
)
def test_unsuccessful_intents_raise_distinct_errors(
    session, trainer, day, gateway, notifier, config, status, error, order_status
):
    order, intent = pay(session, gateway, config, [training_item(trainer, day)])
    gateway.set_status(intent.id, status)
    with pytest.raises(error):
        confirm_payment(session, gateway, notifier, order_id=order.id, config=config)
    session.refresh(order)
    assert order.status == order_status
    assert notifier.sent == []


def test_processing_then_success(session, trainer, day, gateway, notifier, config):
    order, intent = pay(session, gateway, config, [training_item(trainer, day)])
    gateway.set_status(intent.id, "processing")
    with pytest.raises(PaymentProcessingError) as excinfo:
        confirm_payment(session, gateway, notifier, payment_intent_id=intent.id, config=config)
    assert excinfo.value.retryable

    gateway.set_status(intent.id, "succeeded")
    order = confirm_payment(session, gateway, notifier, payment_intent_id=intent.id, config=config)
    assert order.status == OrderStatus.paid
    assert notifier.sent == [order.id]


def test_expiry_never_touches_paid_order(session, trainer, day, gateway, notifier, config):
    order, intent = pay(session, gateway, config, [training_item(trainer, day)])
    confirm_payment(session, gateway, notifier, payment_intent_id=intent.id, config=config)

    assert expire_order(session, order) is False
    event = {
        "id": "evt_exp",
        "type": "checkout.session.expired",
        "data": {"object": {"object": "checkout.session", "payment_intent": intent.id}},
    }
    assert handle_webhook_event(session, event, notifier, config) == "ignored"

    session.refresh(order)
    assert order.status == OrderStatus.paid
    booking = session.exec(select(Booking).where(Booking.order_id == order.id)).one()
    assert booking.status == BookingStatus.confirmed


def test_expiry_releases_unpaid_hold(session, trainer, day, gateway, config):
    order = create_order(session, [training_item(trainer, day)], CUSTOMER, config=config)
    start_payment(session, order.id, gateway, config=config)
    assert expire_order(session, order) is True
    assert order.status == OrderStatus.expired

    booking = session.exec(select(Booking).where(Booking.order_id == order.id)).one()
    assert booking.status == BookingStatus.cancelled
    assert "10:00" in [s.time for s in build_slots(session, trainer.id, day, config=config)]


def test_late_success_after_expiry_reclaims_slot(session, trainer, day, gateway, notifier, config):
    order, intent = pay(session, gateway, config, [training_item(trainer, day)])
    expire_order(session, order)
    order = confirm_payment(session, gateway, notifier, payment_intent_id=intent.id, config=config)
    assert order.status == OrderStatus.paid
    booking = session.exec(select(Booking).where(Booking.order_id == order.id)).one()
    assert booking.status == BookingStatus.confirmed
    assert "10:00" not in [s.time for s in build_slots(session, trainer.id, day, config=config)]


def test_finalize_failure_is_queued_and_retried(session, make_camp, gateway, notifier, config):
    camp = make_camp(capacity=1)
    order, intent = pay(session, gateway, config, [camp_item(camp, "Sam")])
    camp.registered = 1
    session.add(camp)
    session.commit()

    with pytest.raises(ReconciliationError) as excinfo:
        confirm_payment(session, gateway, notifier, payment_intent_id=intent.id, config=config)
    assert excinfo.value.retryable

    session.refresh(order)
    assert order.status == OrderStatus.intent_created
    [item] = list_reconciliation(session)
    assert item.stage == "camps"
    assert item.payment_intent_id == intent.id
    assert notifier.sent == []

    camp.capacity = 2
    session.add(camp)
    session.commit()
    item = retry_reconciliation(session, item.id, notifier, config)
    assert item.resolved
    session.refresh(order)
    assert order.status == OrderStatus.paid
    assert notifier.sent == [order.id]
    assert list_reconciliation(session) == []


def test_failed_notification_is_retried_once(session, trainer, day, gateway, config):
    notifier = RecordingNotifier(fail=True)
    order, intent = pay(session, gateway, config, [training_item(trainer, day)])
    order = confirm_payment(session, gateway, notifier, payment_intent_id=intent.id, config=config)
    assert order.status == OrderStatus.paid
    assert order.notified_at is None

    [item] = list_reconciliation(session)
    assert item.stage == "notify"

    notifier.fail = False
    retry_reconciliation(session, item.id, notifier, config)
    retry_reconciliation(session, item.id, notifier, config)
    assert notifier.sent == [order.id]
    assert session.get(ReconciliationItem, item.id).resolved


def test_referral_code_from_paid_order_discounts_next(session, make_camp, gateway, notifier, config):
    camp = make_camp(capacity=10)
    first, intent = pay(session, gateway, config, [camp_item(camp, "Sam")])
    first = confirm_payment(session, gateway, notifier, payment_intent_id=intent.id, config=config)
    code = first.referral_code_generated

    friend = CustomerIn(first_name="Jo", email="jo@example.com")
    second, intent = pay(
        session, gateway, config, [camp_item(camp, "Max", "Ray")], customer=friend, referral_code=code.lower()
    )
    assert second.referral_code_used == code
    assert second.discount_amount == 25.0
    confirm_payment(session, gateway, notifier, payment_intent_id=intent.id, config=config)

    referral = session.exec(select(ReferralCode).where(ReferralCode.code == code)).one()
    assert referral.times_used == 1
    assert referral.total_discount_given == 25.0


def test_start_payment_rules(session, trainer, day, make_camp, gateway, notifier, config):
    order, intent = pay(session, gateway, config, [training_item(trainer, day)])
    confirm_payment(session, gateway, notifier, payment_intent_id=intent.id, config=config)
    with pytest.raises(OrderStateError):
        start_payment(session, order.id, gateway, config=config)

    free_camp = make_camp(name="Free clinic", price=0.0)
    free = create_order(session, [camp_item(free_camp, "Sam")], CUSTOMER, config=config)
    with pytest.raises(CheckoutError) as excinfo:
        start_payment(session, free.id, gateway, config=config)
    assert excinfo.value.code == "invalid_amount"


def test_webhook_redelivery_and_failure(session, trainer, day, gateway, notifier, config):
    order = create_order(session, [training_item(trainer, day)], CUSTOMER, config=config)
    intent = start_payment(session, order.id, gateway, config=config)
    failed = {
        "id": "evt_fail",
        "type": "payment_intent.payment_failed",
        "data": {
            "object": {
                "object": "payment_intent",
                "id": intent.id,
                "last_payment_error": {"message": "Your card was declined."},
            }
        },
    }
    assert handle_webhook_event(session, failed, notifier, config) == "failed"
    assert handle_webhook_event(session, failed, notifier, config) == "duplicate"
    session.refresh(order)
    assert order.status == OrderStatus.failed
    assert order.failure_reason == "Your card was declined."

    unknown = {"id": "evt_other", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_x"}}}
    assert handle_webhook_event(session, unknown, notifier, config) == "ignored"


def test_bundle_checkout(session, trainer, day, make_camp, gateway, notifier, config):
    camp = make_camp()
    bundle = bundles.create_bundle(session, trainer.id, day, "11:00", session_id="browser-1", config=config)
    bundles.add_camp_to_bundle(session, bundle.bundle_code, camp.id)

    order = create_order(session, [], CUSTOMER, bundle_code=bundle.bundle_code, config=config)
    assert order.bundle_code == bundle.bundle_code
    assert order.bundle_discount > 0
    session.refresh(bundle)
    assert bundle.status == BundleStatus.partial
    assert bundle.order_id == order.id

    intent = start_payment(session, order.id, gateway, config=config)
    gateway.set_status(intent.id, "succeeded")
    confirm_payment(session, gateway, notifier, payment_intent_id=intent.id, config=config)
    session.refresh(bundle)
    assert bundle.status == BundleStatus.completed
    assert bundle.completed_at is not None


def test_client_amount_cannot_lower_training_price(session, trainer, day, config):
    order = create_order(session, [training_item(trainer, day, amount=1.0)], CUSTOMER, config=config)
    assert order.subtotal == 80.0
    assert order.total_amount >= 80.0
    booking = session.exec(select(Booking).where(Booking.order_id == order.id)).one()
    assert booking.amount == 80.0


def test_bundle_quote_matches_charged_total(session, trainer, day, make_camp, config):
    camp = make_camp(price=100.0)
    bundle = bundles.create_bundle(session, trainer.id, day, "11:00", session_id="browser-1", config=config)
    bundles.add_camp_to_bundle(session, bundle.bundle_code, camp.id, quantity=2)

    quoted = quote_totals(session, [], bundle_code=bundle.bundle_code, config=config)
    # 80 training + 2 x 100 camp, 10 sibling on the second camp, then 15% bundle
    assert quoted.subtotal == 280.0
    assert quoted.sibling_discount == 10.0
    assert quoted.bundle_discount == 40.5

    order = create_order(session, [], CUSTOMER, bundle_code=bundle.bundle_code, config=config)
    assert order.total_amount == quoted.total


def test_referral_cap_holds_when_orders_race(session, make_camp, gateway, notifier, config):
    camp = make_camp(capacity=10)
    session.add(ReferralCode(code="LAST1234", max_uses=1))
    session.commit()

    first, first_intent = pay(session, gateway, config, [camp_item(camp, "Ann")], referral_code="LAST1234")
    second, second_intent = pay(session, gateway, config, [camp_item(camp, "Ben")], referral_code="LAST1234")
    confirm_payment(session, gateway, notifier, payment_intent_id=first_intent.id, config=config)
    confirm_payment(session, gateway, notifier, payment_intent_id=second_intent.id, config=config)

    referral = session.exec(select(ReferralCode).where(ReferralCode.code == "LAST1234")).one()
    assert referral.times_used == 1
    assert referral.total_discount_given == 25.0
    with pytest.raises(ReferralError) as excinfo:
        create_order(session, [camp_item(camp, "Cal")], CUSTOMER, referral_code="LAST1234", config=config)
    assert excinfo.value.code == "referral_exhausted"


def test_issued_referral_codes_are_capped(session, make_camp, gateway, notifier, config):
    camp = make_camp()
    order, intent = pay(session, gateway, config, [camp_item(camp, "Ann")])
    order = confirm_payment(session, gateway, notifier, payment_intent_id=intent.id, config=config)
    referral = session.exec(select(ReferralCode).where(ReferralCode.order_id == order.id)).one()
    assert referral.max_uses == config.referral_max_uses == 10
