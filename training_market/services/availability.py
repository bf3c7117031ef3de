from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date as date_type
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple, Union

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from training_market.errors import NotFoundError, ServiceError
from training_market.models import (
    AvailabilityException,
    Booking,
    BookingStatus,
    ExceptionType,
    OpenDate,
    PaymentStatus,
    Trainer,
    WeeklyAvailability,
)
from training_market.settings import Settings, settings as default_settings
from training_market.time_utils import (
    day_of_week,
    hm_to_minute,
    local_now,
    minute_to_display,
    minute_to_hm,
    parse_ymd,
    utcnow,
)

logger = logging.getLogger(__name__)


class ScheduleError(ServiceError):
    code = "invalid_schedule"
    status_code = 422


@dataclass(frozen=True)
class Slot:
    date: str
    start_minute: int
    end_minute: int
    available: bool
    is_peak: bool = False

    @property
    def time(self) -> str:
        return minute_to_hm(self.start_minute)

    @property
    def display(self) -> str:
        return minute_to_display(self.start_minute)

    def to_dict(self) -> dict:
        return {
            "time": self.time,
            "end_time": minute_to_hm(self.end_minute),
            "display": self.display,
            "available": self.available,
            "is_peak": self.is_peak,
        }


def _parse_time(value: str, field: str) -> int:
    try:
        return hm_to_minute(value)
    except ValueError:
        raise ScheduleError(f"Invalid {field} time format", code="invalid_time")


def _validate_date(value: str) -> date_type:
    try:
        return parse_ymd(value)
    except ValueError:
        raise ScheduleError("Invalid date format", code="invalid_date")


def _check_on_grid(minute: int, field: str, config: Settings) -> None:
    if minute % config.claim_block_minutes:
        raise ScheduleError(
            f"The {field} time must fall on a {config.claim_block_minutes}-minute boundary",
            code="off_grid",
        )


def _require_trainer(session: Session, trainer_id: int) -> Trainer:
    trainer = session.get(Trainer, trainer_id)
    if not trainer:
        raise NotFoundError("Trainer not found")
    return trainer


def effective_step(rule: Optional[WeeklyAvailability], config: Settings) -> int:
    step = rule.slot_duration_minutes if rule else config.default_slot_minutes
    if not step or step < config.min_slot_minutes:
        return config.default_slot_minutes
    return step


# ---------------------------------------------------------------------------
# Weekly schedule
# ---------------------------------------------------------------------------


def get_weekly(session: Session, trainer_id: int, active_only: bool = False) -> List[WeeklyAvailability]:
    stmt = select(WeeklyAvailability).where(WeeklyAvailability.trainer_id == trainer_id)
    if active_only:
        stmt = stmt.where(WeeklyAvailability.is_active == True)  # noqa: E712
    return list(session.exec(stmt.order_by(WeeklyAvailability.day_of_week.asc())).all())


def get_day(session: Session, trainer_id: int, weekday: int) -> Optional[WeeklyAvailability]:
    if weekday < 0 or weekday > 6:
        return None
    return session.exec(
        select(WeeklyAvailability).where(
            WeeklyAvailability.trainer_id == trainer_id,
            WeeklyAvailability.day_of_week == weekday,
        )
    ).first()


def save_day(
    session: Session,
    trainer_id: int,
    day: int,
    enabled: bool,
    start: str,
    end: str,
    slot_minutes: Optional[int] = None,
    commit: bool = True,
    config: Settings = default_settings,
) -> WeeklyAvailability:
    """Create or update the weekly rule for one weekday (0 = Sunday)."""
    _require_trainer(session, trainer_id)
    if day < 0 or day > 6:
        raise ScheduleError("Day must be 0-6", code="invalid_day")
    start_minute = _parse_time(start, "start")
    end_minute = _parse_time(end, "end")
    if end_minute <= start_minute:
        raise ScheduleError("End time must be after start time", code="invalid_range")
    _check_on_grid(start_minute, "start", config)
    if slot_minutes is not None and (slot_minutes <= 0 or slot_minutes % config.claim_block_minutes):
        raise ScheduleError(
            f"Slot duration must be a positive multiple of {config.claim_block_minutes} minutes",
            code="invalid_slot_duration",
        )

    rule = get_day(session, trainer_id, day)
    if rule is None:
        rule = WeeklyAvailability(
            trainer_id=trainer_id,
            day_of_week=day,
            start_minute=start_minute,
            end_minute=end_minute,
        )
    rule.start_minute = start_minute
    rule.end_minute = end_minute
    rule.is_active = bool(enabled)
    if slot_minutes is not None:
        rule.slot_duration_minutes = slot_minutes
    rule.updated_at = utcnow()
    session.add(rule)
    if commit:
        session.commit()
        session.refresh(rule)
    return rule


def save_weekly(
    session: Session,
    trainer_id: int,
    schedule: Dict[int, dict],
    config: Settings = default_settings,
) -> Dict[int, str]:
    """Save every day of ``schedule``; returns per-day error messages.

    Valid days are persisted even when other days fail validation.
    """
    errors: Dict[int, str] = {}
    for day, data in schedule.items():
        try:
            save_day(
                session,
                trainer_id,
                int(day),
                enabled=bool(data.get("enabled")),
                start=data.get("start") or "09:00",
                end=data.get("end") or "17:00",
                slot_minutes=data.get("slot_minutes"),
                commit=False,
                config=config,
            )
        except ScheduleError as e:
            errors[int(day)] = e.message
    session.commit()
    if errors:
        logger.info("trainer %s weekly schedule saved with errors: %s", trainer_id, errors)
    return errors


def has_availability(session: Session, trainer_id: int) -> bool:
    return bool(get_weekly(session, trainer_id, active_only=True))


# ---------------------------------------------------------------------------
# Date exceptions
# ---------------------------------------------------------------------------


def get_exception(session: Session, trainer_id: int, date: str) -> Optional[AvailabilityException]:
    return session.exec(
        select(AvailabilityException).where(
            AvailabilityException.trainer_id == trainer_id,
            AvailabilityException.date == date,
        )
    ).first()


def is_blocked_exception(exception: Optional[AvailabilityException]) -> bool:
    if exception is None:
        return False
    return exception.exception_type == ExceptionType.blocked or not exception.is_available


def is_date_blocked(session: Session, trainer_id: int, date: str) -> bool:
    return is_blocked_exception(get_exception(session, trainer_id, date))


def set_exception(
    session: Session,
    trainer_id: int,
    date: str,
    exception_type: ExceptionType,
    start: Optional[str] = None,
    end: Optional[str] = None,
    reason: str = "",
    config: Settings = default_settings,
) -> AvailabilityException:
    """Replace the date's exception. Only one exception exists per date."""
    _require_trainer(session, trainer_id)
    _validate_date(date)
    start_minute = end_minute = None
    if exception_type != ExceptionType.blocked:
        if not start or not end:
            raise ScheduleError("Start and end time are required", code="missing_time")
        start_minute = _parse_time(start, "start")
        end_minute = _parse_time(end, "end")
        if end_minute <= start_minute:
            raise ScheduleError("End time must be after start time", code="invalid_range")
        _check_on_grid(start_minute, "start", config)

    existing = get_exception(session, trainer_id, date)
    if existing:
        session.delete(existing)
        session.flush()

    exception = AvailabilityException(
        trainer_id=trainer_id,
        date=date,
        exception_type=exception_type,
        is_available=exception_type != ExceptionType.blocked,
        start_minute=start_minute,
        end_minute=end_minute,
        reason=(reason or "")[:255] or None,
    )
    session.add(exception)
    session.commit()
    session.refresh(exception)
    return exception


def block_date(session: Session, trainer_id: int, date: str, reason: str = "") -> AvailabilityException:
    return set_exception(session, trainer_id, date, ExceptionType.blocked, reason=reason)


def unblock_date(session: Session, trainer_id: int, date: str) -> bool:
    _validate_date(date)
    existing = get_exception(session, trainer_id, date)
    if not existing:
        return False
    session.delete(existing)
    session.commit()
    return True


def get_blocked_dates(
    session: Session,
    trainer_id: int,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> List[AvailabilityException]:
    stmt = select(AvailabilityException).where(
        AvailabilityException.trainer_id == trainer_id,
        or_(
            AvailabilityException.is_available == False,  # noqa: E712
            AvailabilityException.exception_type == ExceptionType.blocked,
        ),
    )
    if start_date:
        stmt = stmt.where(AvailabilityException.date >= start_date)
    if end_date:
        stmt = stmt.where(AvailabilityException.date <= end_date)
    return list(session.exec(stmt.order_by(AvailabilityException.date.asc())).all())


# ---------------------------------------------------------------------------
# Open dates
# ---------------------------------------------------------------------------


def add_open_date(
    session: Session,
    trainer_id: int,
    date: str,
    start: str = "09:00",
    end: str = "17:00",
    location: str = "",
    config: Settings = default_settings,
    now: Optional[datetime] = None,
) -> OpenDate:
    _require_trainer(session, trainer_id)
    day = _validate_date(date)
    if day < local_now(config.timezone, now).date():
        raise ScheduleError("Date must be in the future", code="past_date")
    start_minute = _parse_time(start, "start")
    end_minute = _parse_time(end, "end")
    if end_minute <= start_minute:
        raise ScheduleError("End time must be after start time", code="invalid_range")
    _check_on_grid(start_minute, "start", config)

    open_date = session.exec(
        select(OpenDate).where(OpenDate.trainer_id == trainer_id, OpenDate.date == date)
    ).first()
    if open_date is None:
        open_date = OpenDate(
            trainer_id=trainer_id, date=date, start_minute=start_minute, end_minute=end_minute
        )
    open_date.start_minute = start_minute
    open_date.end_minute = end_minute
    open_date.location = location
    session.add(open_date)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ScheduleError("Open date already exists", code="duplicate_open_date")
    session.refresh(open_date)
    return open_date


def remove_open_date(session: Session, trainer_id: int, open_date_id: int) -> bool:
    open_date = session.get(OpenDate, open_date_id)
    if not open_date or open_date.trainer_id != trainer_id:
        return False
    session.delete(open_date)
    session.commit()
    return True


def get_open_date(session: Session, trainer_id: int, date: str) -> Optional[OpenDate]:
    return session.exec(
        select(OpenDate).where(OpenDate.trainer_id == trainer_id, OpenDate.date == date)
    ).first()


def get_open_dates(
    session: Session,
    trainer_id: int,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    config: Settings = default_settings,
    now: Optional[datetime] = None,
) -> List[OpenDate]:
    start_date = start_date or local_now(config.timezone, now).date().isoformat()
    stmt = select(OpenDate).where(OpenDate.trainer_id == trainer_id, OpenDate.date >= start_date)
    if end_date:
        stmt = stmt.where(OpenDate.date <= end_date)
    return list(session.exec(stmt.order_by(OpenDate.date.asc())).all())


# ---------------------------------------------------------------------------
# Slot generation
# ---------------------------------------------------------------------------


def occupied_intervals(
    session: Session,
    trainer_id: int,
    date: str,
    exclude_booking_id: Optional[int] = None,
    now_utc: Optional[datetime] = None,
) -> List[Tuple[int, int]]:
    """Intervals held by non-cancelled bookings, lapsed reservations excluded."""
    now_utc = now_utc or utcnow()
    stmt = select(Booking).where(
        Booking.trainer_id == trainer_id,
        Booking.session_date == date,
        Booking.status != BookingStatus.cancelled,
    )
    intervals = []
    for booking in session.exec(stmt).all():
        if exclude_booking_id is not None and booking.id == exclude_booking_id:
            continue
        if reservation_lapsed(booking, now_utc):
            continue
        intervals.append((booking.start_minute, booking.end_minute))
    return intervals


def reservation_lapsed(booking: Booking, now_utc: datetime) -> bool:
    return (
        booking.status == BookingStatus.pending
        and booking.payment_status != PaymentStatus.paid
        and booking.reserved_until is not None
        and booking.reserved_until <= now_utc
    )


def availability_window(
    session: Session, trainer_id: int, day: date_type
) -> Optional[Tuple[int, int, Optional[WeeklyAvailability]]]:
    """Resolve the bookable window of one day, or ``None`` when closed."""
    date = day.isoformat()
    exception = get_exception(session, trainer_id, date)
    if is_blocked_exception(exception):
        return None

    weekday = day_of_week(day)
    rule = get_day(session, trainer_id, weekday)
    active_rule = rule if rule and rule.is_active else None

    if exception and exception.start_minute is not None and exception.end_minute is not None:
        return exception.start_minute, exception.end_minute, rule

    open_date = get_open_date(session, trainer_id, date)
    if open_date:
        return open_date.start_minute, open_date.end_minute, rule

    if active_rule:
        return active_rule.start_minute, active_rule.end_minute, active_rule
    return None


def _overlaps(start: int, end: int, intervals: List[Tuple[int, int]]) -> bool:
    return any(start < b_end and b_start < end for b_start, b_end in intervals)


def build_slots(
    session: Session,
    trainer_id: int,
    date: str,
    now: Optional[datetime] = None,
    include_unavailable: bool = False,
    config: Settings = default_settings,
    exclude_booking_id: Optional[int] = None,
) -> List[Slot]:
    """Free slots for ``trainer_id`` on ``date`` (``YYYY-MM-DD``).

    ``now`` is wall-clock time in the marketplace time zone and is only
    injected by callers that need a fixed clock.
    """
    try:
        day = parse_ymd(date)
    except ValueError:
        return []

    current = local_now(config.timezone, now)
    if day < current.date():
        return []
    trainer = session.get(Trainer, trainer_id)
    if trainer is None:
        return []

    window = availability_window(session, trainer_id, day)
    if window is None:
        return []
    window_start, window_end, rule = window
    if window_end <= window_start:
        return []

    step = effective_step(rule, config)
    lesson = max(step, trainer.lesson_minutes or config.default_lesson_minutes)
    taken = occupied_intervals(session, trainer_id, date, exclude_booking_id=exclude_booking_id)

    cutoff = None
    if day == current.date():
        cutoff = current.hour * 60 + current.minute + config.same_day_buffer_minutes

    peak_start = hm_to_minute(config.peak_start)
    peak_end = hm_to_minute(config.peak_end)

    slots: List[Slot] = []
    for start in range(window_start, window_end - step + 1, step):
        end = start + step
        if cutoff is not None and start <= cutoff:
            continue
        if _overlaps(start, end, taken) and not include_unavailable:
            continue
        # bookable only when a full lesson from here fits the window and is clear
        available = start + lesson <= window_end and not _overlaps(start, start + lesson, taken)
        slots.append(
            Slot(
                date=date,
                start_minute=start,
                end_minute=end,
                available=available,
                is_peak=peak_start <= start < peak_end,
            )
        )
    return slots


def is_slot_available(
    session: Session,
    trainer_id: int,
    date: str,
    start_minute: int,
    duration_minutes: int,
    now: Optional[datetime] = None,
    config: Settings = default_settings,
) -> bool:
    """Whether ``[start, start + duration)`` is open for a new booking.

    The interval must sit inside the day's window, start on the slot grid
    and be clear of existing bookings.
    """
    try:
        day = parse_ymd(date)
    except ValueError:
        return False
    current = local_now(config.timezone, now)
    if day < current.date():
        return False
    window = availability_window(session, trainer_id, day)
    if window is None:
        return False
    window_start, window_end, rule = window
    end_minute = start_minute + duration_minutes
    if start_minute < window_start or end_minute > window_end:
        return False
    step = effective_step(rule, config)
    if (start_minute - window_start) % step:
        return False
    if day == current.date():
        cutoff = current.hour * 60 + current.minute + config.same_day_buffer_minutes
        if start_minute <= cutoff:
            return False
    return not _overlaps(start_minute, end_minute, occupied_intervals(session, trainer_id, date))


def get_available_dates(
    session: Session,
    trainer_id: int,
    month: int,
    year: int,
    now: Optional[datetime] = None,
    config: Settings = default_settings,
) -> Dict[str, int]:
    if month < 1 or month > 12 or year < 2020 or year > 2100:
        raise ScheduleError("Invalid month or year", code="invalid_month")
    current = local_now(config.timezone, now)
    today = current.date()
    horizon = today + timedelta(days=config.max_future_days)
    dates: Dict[str, int] = {}
    for day_number in range(1, calendar.monthrange(year, month)[1] + 1):
        day = date_type(year, month, day_number)
        if day < today or day > horizon:
            continue
        slots = build_slots(session, trainer_id, day.isoformat(), now=current, config=config)
        open_count = sum(1 for s in slots if s.available)
        if open_count:
            dates[day.isoformat()] = open_count
    return dates


def schedule_to_dict(rule: WeeklyAvailability) -> Dict[str, Union[int, str, bool]]:
    return {
        "day_of_week": rule.day_of_week,
        "enabled": rule.is_active,
        "start": minute_to_hm(rule.start_minute),
        "end": minute_to_hm(rule.end_minute),
        "slot_minutes": rule.slot_duration_minutes,
    }
