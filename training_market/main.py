import logging
import secrets
from typing import Optional

from fastapi import Depends, FastAPI, Form, HTTPException, Request
from starlette.middleware.sessions import SessionMiddleware
from starlette.responses import JSONResponse
from sqlmodel import Session, select

from training_market.auth import (
    authenticate_user,
    create_user,
    ensure_bootstrap_admin,
    get_current_user,
    get_optional_user,
    require_roles,
)
from training_market.db import create_db_and_tables, engine, get_session
from training_market.errors import NotFoundError, ServiceError
from training_market.models import Booking, ExceptionType, Trainer, User, UserRole
from training_market.schemas import (
    BundleCampIn,
    BundleCreate,
    CampCreate,
    DaySchedule,
    ExceptionIn,
    OpenDateIn,
    OrderCreate,
    PaymentConfirm,
    TotalsRequest,
    UserCreate,
    WeeklySchedule,
)
from training_market.settings import Settings, settings
from training_market.services import availability, bundles, camps, checkout
from training_market.services.bookings import (
    booking_to_dict,
    cancel_booking,
    complete_booking,
    get_parent_by_user_id,
    get_trainer_by_user_id,
    mark_no_show,
    release_lapsed_reservations,
    trainer_payout_summary,
)
from training_market.services.notifications import LoggingNotifier, Notifier
from training_market.services.packages import get_packages
from training_market.services.payments import PaymentGateway, StripeGateway, construct_webhook_event
from training_market.services.referrals import validate_referral_code
from training_market.time_utils import minute_to_hm, parse_ymd

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Training Market")
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.secret_key,
    same_site="lax",
    https_only=settings.cookie_secure,
)


def get_settings() -> Settings:
    return settings


def get_gateway() -> PaymentGateway:
    return StripeGateway(settings)


def get_notifier() -> Notifier:
    return LoggingNotifier()


@app.exception_handler(ServiceError)
def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.on_event("startup")
def on_startup() -> None:
    create_db_and_tables()
    with Session(engine) as session:
        ensure_bootstrap_admin(
            session=session,
            username=settings.bootstrap_admin_username,
            password=settings.bootstrap_admin_password,
        )


def _trainer_profile(session: Session, user: User) -> Trainer:
    trainer = get_trainer_by_user_id(session=session, user_id=user.id)
    if not trainer:
        raise HTTPException(status_code=400, detail="Trainer profile not found")
    return trainer


def _bundle_session_id(request: Request) -> str:
    session_id = request.session.get("bundle_session")
    if not session_id:
        session_id = secrets.token_hex(16)
        request.session["bundle_session"] = session_id
    return session_id


def _bundle_response(session: Session, bundle, config: Settings) -> dict:
    totals = checkout.quote_totals(session, [], bundle_code=bundle.bundle_code, config=config)
    return {**bundles.bundle_to_dict(bundle), "totals": totals.to_dict()}


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/login")
def login(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    session: Session = Depends(get_session),
):
    user = authenticate_user(session=session, username=username, password=password)
    if not user:
        raise HTTPException(status_code=400, detail="Invalid username or password")
    request.session["user_id"] = user.id
    return {"id": user.id, "username": user.username, "role": user.role}


@app.post("/logout")
def logout(request: Request):
    request.session.clear()
    return {"ok": True}


@app.get("/me")
def me(user: User = Depends(get_current_user)):
    return {"id": user.id, "username": user.username, "role": user.role}


# Catalog


@app.get("/api/trainers")
def api_list_trainers(session: Session = Depends(get_session)):
    trainers = session.exec(
        select(Trainer).where(Trainer.is_active == True).order_by(Trainer.display_name)  # noqa: E712
    ).all()
    return [
        {
            "id": t.id,
            "display_name": t.display_name,
            "hourly_rate": t.hourly_rate,
            "lesson_minutes": t.lesson_minutes,
            "has_availability": availability.has_availability(session, t.id),
        }
        for t in trainers
    ]


@app.get("/api/trainers/{trainer_id}/slots")
def api_trainer_slots(
    trainer_id: int,
    date: str,
    include_unavailable: bool = False,
    session: Session = Depends(get_session),
    config: Settings = Depends(get_settings),
):
    try:
        parse_ymd(date)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid date format")
    slots = availability.build_slots(
        session=session,
        trainer_id=trainer_id,
        date=date,
        include_unavailable=include_unavailable,
        config=config,
    )
    return {"date": date, "slots": [s.to_dict() for s in slots]}


@app.get("/api/trainers/{trainer_id}/available-dates")
def api_available_dates(
    trainer_id: int,
    month: int,
    year: int,
    session: Session = Depends(get_session),
    config: Settings = Depends(get_settings),
):
    return {
        "dates": availability.get_available_dates(session, trainer_id, month, year, config=config)
    }


@app.get("/api/trainers/{trainer_id}/packages")
def api_trainer_packages(
    trainer_id: int,
    session: Session = Depends(get_session),
    config: Settings = Depends(get_settings),
):
    trainer = session.get(Trainer, trainer_id)
    if not trainer or not trainer.is_active:
        raise NotFoundError("Trainer not found")
    return get_packages(trainer, config)


@app.get("/api/trainers/{trainer_id}/open-dates")
def api_trainer_open_dates(
    trainer_id: int,
    session: Session = Depends(get_session),
    config: Settings = Depends(get_settings),
):
    return [
        {
            "id": o.id,
            "date": o.date,
            "start": minute_to_hm(o.start_minute),
            "end": minute_to_hm(o.end_minute),
            "location": o.location,
        }
        for o in availability.get_open_dates(session, trainer_id, config=config)
    ]


@app.get("/api/camps")
def api_list_camps(session: Session = Depends(get_session)):
    return [camps.camp_to_dict(c) for c in camps.list_camps(session)]


# Trainer self-service


@app.get("/api/trainer/schedule")
def api_get_schedule(
    user: User = Depends(require_roles([UserRole.trainer])),
    session: Session = Depends(get_session),
):
    trainer = _trainer_profile(session, user)
    return [availability.schedule_to_dict(r) for r in availability.get_weekly(session, trainer.id)]


@app.put("/api/trainer/schedule/{day}")
def api_save_day(
    day: int,
    payload: DaySchedule,
    user: User = Depends(require_roles([UserRole.trainer])),
    session: Session = Depends(get_session),
    config: Settings = Depends(get_settings),
):
    trainer = _trainer_profile(session, user)
    rule = availability.save_day(
        session,
        trainer.id,
        day,
        enabled=payload.enabled,
        start=payload.start,
        end=payload.end,
        slot_minutes=payload.slot_minutes,
        config=config,
    )
    return availability.schedule_to_dict(rule)


@app.post("/api/trainer/schedule")
def api_save_weekly(
    payload: WeeklySchedule,
    user: User = Depends(require_roles([UserRole.trainer])),
    session: Session = Depends(get_session),
    config: Settings = Depends(get_settings),
):
    trainer = _trainer_profile(session, user)
    errors = availability.save_weekly(
        session, trainer.id, {day: data.model_dump() for day, data in payload.days.items()}, config
    )
    return {
        "errors": errors,
        "schedule": [availability.schedule_to_dict(r) for r in availability.get_weekly(session, trainer.id)],
    }


@app.get("/api/trainer/blocked-dates")
def api_blocked_dates(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    user: User = Depends(require_roles([UserRole.trainer])),
    session: Session = Depends(get_session),
):
    trainer = _trainer_profile(session, user)
    return [
        {"date": e.date, "reason": e.reason}
        for e in availability.get_blocked_dates(session, trainer.id, start_date, end_date)
    ]


@app.post("/api/trainer/exceptions")
def api_set_exception(
    payload: ExceptionIn,
    user: User = Depends(require_roles([UserRole.trainer])),
    session: Session = Depends(get_session),
    config: Settings = Depends(get_settings),
):
    trainer = _trainer_profile(session, user)
    try:
        exception_type = ExceptionType(payload.exception_type)
    except ValueError:
        raise availability.ScheduleError("Invalid exception type", code="invalid_exception_type")
    exception = availability.set_exception(
        session,
        trainer.id,
        payload.date,
        exception_type,
        start=payload.start,
        end=payload.end,
        reason=payload.reason,
        config=config,
    )
    return {"id": exception.id, "date": exception.date, "exception_type": exception.exception_type}


@app.delete("/api/trainer/exceptions/{date}")
def api_unblock_date(
    date: str,
    user: User = Depends(require_roles([UserRole.trainer])),
    session: Session = Depends(get_session),
):
    trainer = _trainer_profile(session, user)
    if not availability.unblock_date(session, trainer.id, date):
        raise NotFoundError("No exception on this date")
    return {"ok": True}


@app.post("/api/trainer/open-dates")
def api_add_open_date(
    payload: OpenDateIn,
    user: User = Depends(require_roles([UserRole.trainer])),
    session: Session = Depends(get_session),
    config: Settings = Depends(get_settings),
):
    trainer = _trainer_profile(session, user)
    open_date = availability.add_open_date(
        session,
        trainer.id,
        payload.date,
        start=payload.start,
        end=payload.end,
        location=payload.location,
        config=config,
    )
    return {"id": open_date.id, "date": open_date.date}


@app.delete("/api/trainer/open-dates/{open_date_id}")
def api_remove_open_date(
    open_date_id: int,
    user: User = Depends(require_roles([UserRole.trainer])),
    session: Session = Depends(get_session),
):
    trainer = _trainer_profile(session, user)
    if not availability.remove_open_date(session, trainer.id, open_date_id):
        raise NotFoundError("Open date not found")
    return {"ok": True}


@app.get("/api/trainer/bookings")
def api_trainer_bookings(
    user: User = Depends(require_roles([UserRole.trainer])),
    session: Session = Depends(get_session),
):
    trainer = _trainer_profile(session, user)
    rows = session.exec(
        select(Booking)
        .where(Booking.trainer_id == trainer.id)
        .order_by(Booking.session_date.asc(), Booking.start_minute.asc())
    ).all()
    return [booking_to_dict(b) for b in rows]


@app.post("/api/trainer/bookings/{booking_id}/complete")
def api_complete_booking(
    booking_id: int,
    user: User = Depends(require_roles([UserRole.trainer])),
    session: Session = Depends(get_session),
):
    trainer = _trainer_profile(session, user)
    return booking_to_dict(complete_booking(session, booking_id, trainer.id))


@app.post("/api/trainer/bookings/{booking_id}/no-show")
def api_no_show(
    booking_id: int,
    user: User = Depends(require_roles([UserRole.trainer])),
    session: Session = Depends(get_session),
):
    trainer = _trainer_profile(session, user)
    return booking_to_dict(mark_no_show(session, booking_id, trainer.id))


@app.get("/api/trainer/payouts")
def api_trainer_payouts(
    user: User = Depends(require_roles([UserRole.trainer])),
    session: Session = Depends(get_session),
):
    trainer = _trainer_profile(session, user)
    return trainer_payout_summary(session, trainer.id)


# Parent


@app.get("/api/parent/bookings")
def api_parent_bookings(
    user: User = Depends(require_roles([UserRole.parent])),
    session: Session = Depends(get_session),
):
    parent = get_parent_by_user_id(session=session, user_id=user.id)
    if not parent:
        raise HTTPException(status_code=400, detail="Parent profile not found")
    rows = session.exec(
        select(Booking).where(Booking.parent_id == parent.id).order_by(Booking.session_date.desc())
    ).all()
    return [booking_to_dict(b) for b in rows]


@app.post("/api/parent/bookings/{booking_id}/cancel")
def api_cancel_booking(
    booking_id: int,
    user: User = Depends(require_roles([UserRole.parent])),
    session: Session = Depends(get_session),
):
    parent = get_parent_by_user_id(session=session, user_id=user.id)
    if not parent:
        raise HTTPException(status_code=400, detail="Parent profile not found")
    booking = cancel_booking(session=session, booking_id=booking_id, parent_id=parent.id)
    return {"id": booking.id, "status": booking.status}


# Cart and checkout


@app.post("/api/checkout/totals")
def api_checkout_totals(
    payload: TotalsRequest,
    session: Session = Depends(get_session),
    config: Settings = Depends(get_settings),
):
    totals = checkout.quote_totals(
        session,
        payload.items,
        referral_code=payload.referral_code,
        bundle_code=payload.bundle_code,
        config=config,
    )
    return totals.to_dict()


@app.get("/api/referrals/{code}")
def api_validate_referral(
    code: str,
    session: Session = Depends(get_session),
    config: Settings = Depends(get_settings),
):
    referral = validate_referral_code(session, code)
    return {"valid": True, "code": referral.code, "discount": config.referral_discount}


@app.post("/api/bundles")
def api_create_bundle(
    request: Request,
    payload: BundleCreate,
    user: Optional[User] = Depends(get_optional_user),
    session: Session = Depends(get_session),
    config: Settings = Depends(get_settings),
):
    bundle = bundles.create_bundle(
        session,
        trainer_id=payload.trainer_id,
        date=payload.date,
        time=payload.time,
        session_id=_bundle_session_id(request),
        user_id=user.id if user else None,
        package=payload.package,
        sessions=payload.sessions,
        location=payload.location,
        config=config,
    )
    return _bundle_response(session, bundle, config)


@app.get("/api/bundles/active")
def api_active_bundle(
    request: Request,
    user: Optional[User] = Depends(get_optional_user),
    session: Session = Depends(get_session),
    config: Settings = Depends(get_settings),
):
    bundle = bundles.get_active_bundle(
        session,
        session_id=request.session.get("bundle_session"),
        user_id=user.id if user else None,
    )
    return {"bundle": _bundle_response(session, bundle, config) if bundle else None}


@app.post("/api/bundles/{bundle_code}/camp")
def api_bundle_add_camp(
    bundle_code: str,
    payload: BundleCampIn,
    session: Session = Depends(get_session),
    config: Settings = Depends(get_settings),
):
    bundle = bundles.add_camp_to_bundle(session, bundle_code, payload.camp_id, quantity=payload.quantity)
    return _bundle_response(session, bundle, config)


@app.delete("/api/bundles/{bundle_code}")
def api_clear_bundle(bundle_code: str, session: Session = Depends(get_session)):
    return {"cleared": bundles.clear_bundle(session, bundle_code)}


def _can_view_order(request: Request, user: Optional[User], order) -> bool:
    if user is not None and (user.role == UserRole.admin or order.user_id == user.id):
        return True
    return order.id in request.session.get("order_ids", [])


@app.post("/api/orders")
def api_create_order(
    request: Request,
    payload: OrderCreate,
    user: Optional[User] = Depends(get_optional_user),
    session: Session = Depends(get_session),
    config: Settings = Depends(get_settings),
):
    parent = get_parent_by_user_id(session=session, user_id=user.id) if user else None
    order = checkout.create_order(
        session,
        payload.items,
        payload.customer,
        referral_code=payload.referral_code,
        bundle_code=payload.bundle_code,
        user_id=user.id if user else None,
        parent_id=parent.id if parent else None,
        config=config,
    )
    request.session["order_ids"] = request.session.get("order_ids", []) + [order.id]
    return checkout.order_to_dict(session, order)


@app.get("/api/orders/{order_id}")
def api_get_order(
    request: Request,
    order_id: int,
    user: Optional[User] = Depends(get_optional_user),
    session: Session = Depends(get_session),
):
    order = checkout.get_order(session, order_id)
    if not _can_view_order(request, user, order):
        raise NotFoundError("Order not found")
    return checkout.order_to_dict(session, order)


@app.post("/api/orders/{order_id}/payment")
def api_start_payment(
    request: Request,
    order_id: int,
    user: Optional[User] = Depends(get_optional_user),
    session: Session = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
    config: Settings = Depends(get_settings),
):
    order = checkout.get_order(session, order_id)
    if not _can_view_order(request, user, order):
        raise NotFoundError("Order not found")
    intent = checkout.start_payment(session, order_id, gateway, config=config)
    return {
        "order_id": order_id,
        "payment_intent_id": intent.id,
        "client_secret": intent.client_secret,
        "amount": intent.amount,
    }


@app.post("/api/checkout/confirm")
def api_confirm_payment(
    payload: PaymentConfirm,
    session: Session = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
    config: Settings = Depends(get_settings),
):
    order = checkout.confirm_payment(
        session,
        gateway,
        notifier,
        payment_intent_id=payload.payment_intent_id,
        order_id=payload.order_id,
        config=config,
    )
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "referral_code": order.referral_code_generated,
    }


async def _raw_body(request: Request) -> bytes:
    return await request.body()


@app.post("/api/webhooks/stripe")
def api_stripe_webhook(
    request: Request,
    payload: bytes = Depends(_raw_body),
    session: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
    config: Settings = Depends(get_settings),
):
    event = construct_webhook_event(payload, request.headers.get("stripe-signature"), config)
    outcome = checkout.handle_webhook_event(session, event, notifier, config)
    logger.info("webhook %s handled: %s", event.get("id"), outcome)
    return {"received": True, "outcome": outcome}


# Admin


@app.post("/api/admin/users")
def api_admin_create_user(
    payload: UserCreate,
    user: User = Depends(require_roles([UserRole.admin])),
    session: Session = Depends(get_session),
):
    new_user = create_user(
        session,
        username=payload.username,
        password=payload.password,
        role=payload.role,
        display_name=payload.display_name,
        email=payload.email,
        hourly_rate=payload.hourly_rate,
    )
    return {"id": new_user.id, "username": new_user.username, "role": new_user.role}


@app.post("/api/admin/users/{target_user_id}/toggle")
def api_admin_toggle_user(
    target_user_id: int,
    user: User = Depends(require_roles([UserRole.admin])),
    session: Session = Depends(get_session),
):
    target = session.get(User, target_user_id)
    if not target:
        raise NotFoundError("User not found")
    target.is_active = not target.is_active
    session.add(target)
    session.commit()
    return {"id": target.id, "is_active": target.is_active}


@app.post("/api/admin/camps")
def api_admin_create_camp(
    payload: CampCreate,
    user: User = Depends(require_roles([UserRole.admin])),
    session: Session = Depends(get_session),
):
    camp = camps.create_camp(session, **payload.model_dump())
    return camps.camp_to_dict(camp)


@app.get("/api/admin/reconciliation")
def api_admin_reconciliation(
    include_resolved: bool = False,
    user: User = Depends(require_roles([UserRole.admin])),
    session: Session = Depends(get_session),
):
    items = checkout.list_reconciliation(session, unresolved_only=not include_resolved)
    return [
        {
            "id": item.id,
            "order_id": item.order_id,
            "payment_intent_id": item.payment_intent_id,
            "stage": item.stage,
            "error": item.error,
            "attempts": item.attempts,
            "resolved": item.resolved,
        }
        for item in items
    ]


@app.post("/api/admin/reconciliation/{item_id}/retry")
def api_admin_retry_reconciliation(
    item_id: int,
    user: User = Depends(require_roles([UserRole.admin])),
    session: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
    config: Settings = Depends(get_settings),
):
    item = checkout.retry_reconciliation(session, item_id, notifier, config)
    return {"id": item.id, "resolved": item.resolved, "attempts": item.attempts}


@app.post("/api/admin/maintenance/cleanup")
def api_admin_cleanup(
    user: User = Depends(require_roles([UserRole.admin])),
    session: Session = Depends(get_session),
    config: Settings = Depends(get_settings),
):
    released = release_lapsed_reservations(session)
    result = bundles.cleanup_bundles(session, config=config)
    logger.info("maintenance: %d reservations released, bundles %s", released, result)
    return {"released_reservations": released, **result}
