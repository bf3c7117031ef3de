from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from training_market.errors import NotFoundError, ServiceError
from training_market.models import Camp

logger = logging.getLogger(__name__)


class CampFullError(ServiceError):
    code = "camp_full"
    status_code = 409


def create_camp(
    session: Session,
    name: str,
    price: float,
    capacity: int,
    week_label: str = "",
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    location: str = "",
) -> Camp:
    if price < 0 or capacity < 0:
        raise ServiceError("Price and capacity must not be negative", code="invalid_camp")
    camp = Camp(
        name=name.strip(),
        price=price,
        capacity=capacity,
        week_label=week_label,
        start_date=start_date,
        end_date=end_date,
        location=location,
    )
    session.add(camp)
    session.commit()
    session.refresh(camp)
    return camp


def list_camps(session: Session, active_only: bool = True) -> List[Camp]:
    stmt = select(Camp)
    if active_only:
        stmt = stmt.where(Camp.is_active == True)  # noqa: E712
    return list(session.exec(stmt.order_by(Camp.start_date.asc(), Camp.name.asc())).all())


def get_camp(session: Session, camp_id: int) -> Camp:
    camp = session.get(Camp, camp_id)
    if not camp or not camp.is_active:
        raise NotFoundError("Camp not found")
    return camp


def seats_left(camp: Camp) -> int:
    return max(0, camp.capacity - camp.registered)


def take_seats(session: Session, camp_id: int, count: int) -> None:
    """Take ``count`` seats in one guarded UPDATE; raises when the camp is full."""
    result = session.exec(
        update(Camp)
        .where(Camp.id == camp_id, Camp.registered + count <= Camp.capacity)
        .values(registered=Camp.registered + count)
    )
    if result.rowcount != 1:
        raise CampFullError(f"Camp {camp_id} has fewer than {count} seats left")


def camp_to_dict(camp: Camp) -> dict:
    return {
        "id": camp.id,
        "name": camp.name,
        "week_label": camp.week_label,
        "start_date": camp.start_date,
        "end_date": camp.end_date,
        "location": camp.location,
        "price": camp.price,
        "capacity": camp.capacity,
        "seats_left": seats_left(camp),
    }
