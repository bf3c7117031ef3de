from __future__ import annotations

import logging
from typing import Iterable, Optional, Set

from fastapi import Depends, HTTPException, Request
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from training_market.db import get_session
from training_market.errors import ServiceError
from training_market.models import Parent, Trainer, User, UserRole

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def authenticate_user(session: Session, username: str, password: str) -> Optional[User]:
    user = session.exec(select(User).where(User.username == username)).first()
    if not user:
        return None
    if not user.is_active:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def ensure_bootstrap_admin(session: Session, username: str, password: str) -> None:
    existing = session.exec(
        select(User).where(User.username == username).where(User.role == UserRole.admin)
    ).first()
    if existing:
        return
    admin = User(username=username, password_hash=hash_password(password), role=UserRole.admin)
    session.add(admin)
    session.commit()
    logger.info("bootstrap admin %s created", username)


def create_user(
    session: Session,
    username: str,
    password: str,
    role: str,
    display_name: str = "",
    email: Optional[str] = None,
    hourly_rate: Optional[float] = None,
) -> User:
    """Create a login and, for parents and trainers, their profile row."""
    try:
        role_enum = UserRole(role)
    except ValueError:
        raise ServiceError("Invalid role", code="invalid_role")
    if not username.strip() or len(password) < 6:
        raise ServiceError("Username and a 6+ character password are required", code="invalid_user")

    new_user = User(
        username=username.strip(),
        password_hash=hash_password(password),
        role=role_enum,
        email=email,
        is_active=True,
    )
    session.add(new_user)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ServiceError("Username already exists", code="duplicate_username")
    session.refresh(new_user)

    name = display_name.strip() or username.strip()
    if role_enum == UserRole.parent:
        session.add(Parent(user_id=new_user.id, display_name=name))
        session.commit()
    if role_enum == UserRole.trainer:
        trainer = Trainer(user_id=new_user.id, display_name=name)
        if hourly_rate is not None and hourly_rate > 0:
            trainer.hourly_rate = hourly_rate
        session.add(trainer)
        session.commit()
    return new_user


def get_optional_user(
    request: Request,
    session: Session = Depends(get_session),
) -> Optional[User]:
    user_id = request.session.get("user_id")
    if not user_id:
        return None
    user = session.get(User, int(user_id))
    if not user or not user.is_active:
        return None
    return user


def get_current_user(user: Optional[User] = Depends(get_optional_user)) -> User:
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def require_roles(roles: Iterable[UserRole]):
    role_set: Set[UserRole] = set(roles)

    def dependency(user: User = Depends(get_current_user)) -> User:
        if user.role not in role_set:
            raise HTTPException(status_code=403, detail="Forbidden")
        return user

    return dependency
