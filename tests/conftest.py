from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine, select

from training_market.auth import create_user
from training_market.db import create_db_and_tables, get_session
from training_market.main import app, get_gateway, get_notifier, get_settings
from training_market.models import Camp, Trainer, WeeklyAvailability
from training_market.services.payments import PaymentIntent
from training_market.settings import Settings
from training_market.time_utils import day_of_week


class FakeGateway:
    """In-memory stand-in for the payment provider."""

    def __init__(self):
        self.statuses = {}
        self.created = []

    def create_intent(self, amount, metadata):
        intent_id = f"pi_test_{len(self.created) + 1}"
        self.created.append((intent_id, amount, dict(metadata)))
        self.statuses[intent_id] = "requires_payment_method"
        return PaymentIntent(
            id=intent_id,
            status="requires_payment_method",
            amount=amount,
            client_secret=f"{intent_id}_secret",
        )

    def get_intent_status(self, intent_id):
        return self.statuses[intent_id]

    def set_status(self, intent_id, status):
        self.statuses[intent_id] = status


class RecordingNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def order_paid(self, order):
        if self.fail:
            raise RuntimeError("mail server down")
        self.sent.append(order.id)


def future_date(days=10):
    return (date.today() + timedelta(days=days)).isoformat()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def config():
    return Settings(_env_file=None, timezone="UTC", stripe_secret_key="", stripe_webhook_secret="")


@pytest.fixture
def pricing(config):
    return config.pricing()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_trainer(session):
    def factory(name="Coach Sam", hourly_rate=80.0, lesson_minutes=60):
        user = create_user(session, name.lower().replace(" ", "_"), "secret123", "trainer", display_name=name)
        trainer = session.exec(select(Trainer).where(Trainer.user_id == user.id)).one()
        trainer.hourly_rate = hourly_rate
        trainer.lesson_minutes = lesson_minutes
        session.add(trainer)
        session.commit()
        session.refresh(trainer)
        return trainer

    return factory


@pytest.fixture
def trainer(make_trainer):
    return make_trainer()


@pytest.fixture
def open_weekday(session):
    """Give ``trainer`` a weekly rule on the weekday of ``day``."""

    def factory(trainer, day, start=540, end=1020, slot_minutes=60):
        rule = WeeklyAvailability(
            trainer_id=trainer.id,
            day_of_week=day_of_week(date.fromisoformat(day)),
            start_minute=start,
            end_minute=end,
            slot_duration_minutes=slot_minutes,
        )
        session.add(rule)
        session.commit()
        session.refresh(rule)
        return rule

    return factory


@pytest.fixture
def make_camp(session):
    def factory(name="Summer Week 1", price=100.0, capacity=20):
        camp = Camp(name=name, price=price, capacity=capacity, start_date=future_date(30))
        session.add(camp)
        session.commit()
        session.refresh(camp)
        return camp

    return factory


@pytest.fixture
def client(engine, config, gateway, notifier):
    def override_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_settings] = lambda: config
    yield TestClient(app)
    app.dependency_overrides.clear()
