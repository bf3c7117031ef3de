from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from training_market.models import ItemType


class CartItemIn(BaseModel):
    item_type: ItemType
    camp_id: Optional[int] = None
    trainer_id: Optional[int] = None
    date: Optional[str] = None
    time: Optional[str] = None
    package: str = "single"
    sessions: int = 1
    location: str = ""
    player_id: Optional[int] = None
    first_name: str = ""
    last_name: str = ""
    care_bundle: bool = False
    jersey: bool = False


class CustomerIn(BaseModel):
    first_name: str
    last_name: str = ""
    email: str
    phone: str = ""


class TotalsRequest(BaseModel):
    items: List[CartItemIn] = Field(default_factory=list)
    referral_code: Optional[str] = None
    bundle_code: Optional[str] = None


class OrderCreate(TotalsRequest):
    customer: CustomerIn


class PaymentConfirm(BaseModel):
    payment_intent_id: Optional[str] = None
    order_id: Optional[int] = None


class DaySchedule(BaseModel):
    enabled: bool = True
    start: str = "09:00"
    end: str = "17:00"
    slot_minutes: Optional[int] = None


class WeeklySchedule(BaseModel):
    days: Dict[int, DaySchedule]


class ExceptionIn(BaseModel):
    date: str
    exception_type: str = "blocked"
    start: Optional[str] = None
    end: Optional[str] = None
    reason: str = ""


class OpenDateIn(BaseModel):
    date: str
    start: str
    end: str
    location: str = ""


class BundleCreate(BaseModel):
    trainer_id: int
    date: str
    time: str
    package: str = "single"
    sessions: int = 1
    location: str = ""


class BundleCampIn(BaseModel):
    camp_id: int
    quantity: int = 1


class CampCreate(BaseModel):
    name: str
    price: float
    capacity: int
    week_label: str = ""
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    location: str = ""


class UserCreate(BaseModel):
    username: str
    password: str
    role: str
    display_name: str = ""
    email: Optional[str] = None
    hourly_rate: Optional[float] = None
