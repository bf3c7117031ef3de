from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from training_market.time_utils import utcnow


class UserRole(str, Enum):
    parent = "parent"
    trainer = "trainer"
    admin = "admin"


class ExceptionType(str, Enum):
    blocked = "blocked"
    modified = "modified"
    extra = "extra"


class BookingStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    completed = "completed"
    cancelled = "cancelled"
    no_show = "no_show"


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"
    refunded = "refunded"


class OrderStatus(str, Enum):
    cart = "cart"
    intent_created = "intent_created"
    awaiting_confirmation = "awaiting_confirmation"
    paid = "paid"
    failed = "failed"
    expired = "expired"


class ItemType(str, Enum):
    camp = "camp"
    training = "training"


class BundleStatus(str, Enum):
    active = "active"
    partial = "partial"
    completed = "completed"
    abandoned = "abandoned"
    cancelled = "cancelled"


class User(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("username"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True)
    password_hash: str
    role: UserRole = Field(index=True)
    email: Optional[str] = None
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)


class Trainer(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    display_name: str = Field(index=True)
    hourly_rate: float = 80.0
    lesson_minutes: int = 60
    is_active: bool = Field(default=True, index=True)


class Parent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    display_name: str = Field(index=True)
    phone: Optional[str] = None


class Player(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    parent_id: int = Field(foreign_key="parent.id", index=True)
    first_name: str
    last_name: str = ""
    age: Optional[int] = None


class WeeklyAvailability(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("trainer_id", "day_of_week"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    trainer_id: int = Field(foreign_key="trainer.id", index=True)
    day_of_week: int = Field(index=True)
    start_minute: int
    end_minute: int
    slot_duration_minutes: int = 60
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class AvailabilityException(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("trainer_id", "date"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    trainer_id: int = Field(foreign_key="trainer.id", index=True)
    date: str = Field(index=True)
    exception_type: ExceptionType = Field(default=ExceptionType.blocked)
    is_available: bool = False
    start_minute: Optional[int] = None
    end_minute: Optional[int] = None
    reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class OpenDate(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("trainer_id", "date"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    trainer_id: int = Field(foreign_key="trainer.id", index=True)
    date: str = Field(index=True)
    start_minute: int
    end_minute: int
    location: str = ""


class Camp(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    week_label: str = ""
    start_date: Optional[str] = Field(default=None, index=True)
    end_date: Optional[str] = None
    location: str = ""
    price: float
    capacity: int = 0
    registered: int = 0
    is_active: bool = Field(default=True, index=True)


class Order(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    order_number: str = Field(index=True, unique=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    parent_id: Optional[int] = Field(default=None, foreign_key="parent.id", index=True)
    billing_first_name: str = ""
    billing_last_name: str = ""
    billing_email: str = Field(default="", index=True)
    billing_phone: str = ""

    subtotal: float = 0.0
    discount_amount: float = 0.0
    discount_breakdown: dict = Field(default_factory=dict, sa_column=Column(JSON))
    bundle_discount: float = 0.0
    care_bundle_total: float = 0.0
    jersey_total: float = 0.0
    processing_fee: float = 0.0
    total_amount: float = 0.0

    referral_code_used: Optional[str] = None
    referral_code_generated: Optional[str] = None
    bundle_code: Optional[str] = Field(default=None, index=True)

    status: OrderStatus = Field(default=OrderStatus.cart, index=True)
    payment_intent_id: Optional[str] = Field(default=None, index=True, unique=True)
    failure_reason: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)
    paid_at: Optional[datetime] = None
    notified_at: Optional[datetime] = None


class OrderItem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    item_type: ItemType = Field(index=True)
    label: str = ""
    camp_id: Optional[int] = Field(default=None, foreign_key="camp.id", index=True)
    booking_id: Optional[int] = Field(default=None, foreign_key="booking.id", index=True)
    participant_first_name: str = ""
    participant_last_name: str = ""
    base_price: float = 0.0
    discount_amount: float = 0.0
    final_price: float = 0.0
    is_sibling: bool = False
    care_bundle: bool = False
    jersey: bool = False


class Booking(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    booking_number: str = Field(index=True, unique=True)
    order_id: Optional[int] = Field(default=None, foreign_key="order.id", index=True)
    parent_id: Optional[int] = Field(default=None, foreign_key="parent.id", index=True)
    trainer_id: int = Field(foreign_key="trainer.id", index=True)
    player_id: Optional[int] = Field(default=None, foreign_key="player.id", index=True)
    session_date: str = Field(index=True)
    start_minute: int = Field(index=True)
    end_minute: int
    location: str = ""
    package: str = "single"
    sessions: int = 1
    amount: float = 0.0
    trainer_payout: float = 0.0
    platform_fee: float = 0.0
    status: BookingStatus = Field(default=BookingStatus.pending, index=True)
    payment_status: PaymentStatus = Field(default=PaymentStatus.pending, index=True)
    reserved_until: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow, index=True)
    paid_at: Optional[datetime] = None


class SlotClaim(SQLModel, table=True):
    """One row per claimed block of a trainer's day.

    The unique constraint is what actually prevents double booking: two
    bookings that overlap by even one block cannot both insert their claims.
    """

    __table_args__ = (UniqueConstraint("trainer_id", "session_date", "block_start"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    trainer_id: int = Field(foreign_key="trainer.id", index=True)
    session_date: str = Field(index=True)
    block_start: int
    booking_id: int = Field(foreign_key="booking.id", index=True)


class Bundle(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    bundle_code: str = Field(index=True, unique=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    session_id: Optional[str] = Field(default=None, index=True)

    trainer_id: Optional[int] = Field(default=None, foreign_key="trainer.id", index=True)
    training_date: Optional[str] = None
    training_start_minute: Optional[int] = None
    training_location: str = ""
    training_package: str = "single"
    training_sessions: int = 1

    camp_id: Optional[int] = Field(default=None, foreign_key="camp.id")
    camp_quantity: int = 1

    order_id: Optional[int] = Field(default=None, foreign_key="order.id", index=True)
    status: BundleStatus = Field(default=BundleStatus.active, index=True)
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)
    completed_at: Optional[datetime] = None


class ReferralCode(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(index=True, unique=True)
    order_id: Optional[int] = Field(default=None, foreign_key="order.id", unique=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    email: str = ""
    times_used: int = 0
    total_discount_given: float = 0.0
    max_uses: Optional[int] = None
    expires_at: Optional[datetime] = None
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utcnow)


class PaymentEvent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: str = Field(index=True, unique=True)
    event_type: str
    payment_intent_id: Optional[str] = Field(default=None, index=True)
    received_at: datetime = Field(default_factory=utcnow)


class ReconciliationItem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: Optional[int] = Field(default=None, foreign_key="order.id", index=True)
    payment_intent_id: str = Field(index=True)
    stage: str
    error: str
    attempts: int = 1
    resolved: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)
