import hashlib
import hmac
import json
import time

import pytest

from conftest import future_date
from training_market.auth import create_user


@pytest.fixture
def admin(session):
    return create_user(session, "root", "secret123", "admin")


def login(client, username, password="secret123"):
    response = client.post("/login", data={"username": username, "password": password})
    assert response.status_code == 200
    return response.json()


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_login_and_roles(client, admin):
    assert client.get("/me").status_code == 401
    bad = client.post("/login", data={"username": "root", "password": "nope"})
    assert bad.status_code == 400

    assert login(client, "root")["role"] == "admin"
    assert client.get("/me").json()["username"] == "root"
    assert client.get("/api/trainer/schedule").status_code == 403

    client.post("/logout")
    assert client.get("/me").status_code == 401


def test_slots_endpoint(client, trainer, open_weekday):
    day = future_date(10)
    open_weekday(trainer, day, start=540, end=720)
    body = client.get(f"/api/trainers/{trainer.id}/slots", params={"date": day}).json()
    assert body["date"] == day
    assert [s["time"] for s in body["slots"]] == ["09:00", "10:00", "11:00"]

    response = client.get(f"/api/trainers/{trainer.id}/slots", params={"date": "04/03/2031"})
    assert response.status_code == 400


def test_trainer_manages_own_schedule(client, trainer):
    login(client, "coach_sam")
    response = client.put("/api/trainer/schedule/1", json={"start": "8:00", "end": "12:00"})
    assert response.status_code == 200
    assert response.json()["start"] == "08:00"

    response = client.put("/api/trainer/schedule/1", json={"start": "12:00", "end": "08:00"})
    assert response.status_code == 422
    assert response.json() == {
        "detail": response.json()["detail"],
        "code": "invalid_range",
        "retryable": False,
    }

    weekly = client.post(
        "/api/trainer/schedule",
        json={"days": {"2": {"start": "09:00", "end": "10:00"}, "3": {"start": "x", "end": "y"}}},
    ).json()
    assert list(weekly["errors"]) == ["3"]
    assert [r["day_of_week"] for r in weekly["schedule"]] == [1, 2]


def test_totals_endpoint(client, make_camp):
    camp = make_camp()
    items = [
        {"item_type": "camp", "camp_id": camp.id, "first_name": "Ann", "last_name": "Lee"},
        {"item_type": "camp", "camp_id": camp.id, "first_name": "Ben", "last_name": "Lee"},
    ]
    body = client.post("/api/checkout/totals", json={"items": items}).json()
    assert body["subtotal"] == 200.0
    assert body["sibling_discount"] == 10.0


def test_training_price_ignores_client_amount(client, trainer, open_weekday):
    day = future_date(10)
    open_weekday(trainer, day)
    item = {"item_type": "training", "trainer_id": trainer.id, "date": day, "time": "10:00", "amount": 1.0}
    body = client.post("/api/checkout/totals", json={"items": [item]}).json()
    assert body["subtotal"] == 80.0

    order = client.post(
        "/api/orders", json={"items": [item], "customer": {"first_name": "Pat", "email": "pat@example.com"}}
    ).json()
    assert order["total_amount"] == body["total"]
    assert order["bookings"][0]["amount"] == 80.0


def test_referral_lookup_reports_error_code(client):
    response = client.get("/api/referrals/NOPE1234")
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_referral"


def test_checkout_flow(client, trainer, open_weekday, gateway, notifier):
    day = future_date(10)
    open_weekday(trainer, day, start=540, end=720)
    payload = {
        "items": [{"item_type": "training", "trainer_id": trainer.id, "date": day, "time": "10:00"}],
        "customer": {"first_name": "Pat", "last_name": "Lee", "email": "pat@example.com"},
    }
    order = client.post("/api/orders", json=payload).json()
    assert order["status"] == "cart"
    assert order["bookings"][0]["status"] == "pending"

    slots = client.get(f"/api/trainers/{trainer.id}/slots", params={"date": day}).json()["slots"]
    assert [s["time"] for s in slots] == ["09:00", "11:00"]

    taken = client.post("/api/orders", json=payload)
    assert taken.status_code == 409
    assert taken.json()["code"] == "slot_taken"
    assert taken.json()["retryable"] is True

    intent = client.post(f"/api/orders/{order['id']}/payment").json()
    assert intent["amount"] == order["total_amount"]

    declined = client.post("/api/checkout/confirm", json={"payment_intent_id": intent["payment_intent_id"]})
    assert declined.status_code == 402
    assert declined.json()["code"] == "payment_declined"

    gateway.set_status(intent["payment_intent_id"], "succeeded")
    confirmed = client.post("/api/checkout/confirm", json={"order_id": order["id"]}).json()
    assert confirmed["status"] == "paid"
    assert confirmed["referral_code"].startswith("PATX")

    again = client.post("/api/checkout/confirm", json={"order_id": order["id"]}).json()
    assert again["status"] == "paid"
    assert notifier.sent == [order["id"]]

    detail = client.get(f"/api/orders/{order['id']}").json()
    assert detail["bookings"][0]["status"] == "confirmed"


def test_order_hidden_from_other_visitors(client, make_camp):
    camp = make_camp()
    payload = {
        "items": [{"item_type": "camp", "camp_id": camp.id, "first_name": "Ann"}],
        "customer": {"first_name": "Pat", "email": "pat@example.com"},
    }
    order = client.post("/api/orders", json=payload).json()
    assert client.get(f"/api/orders/{order['id']}").status_code == 200
    client.cookies.clear()
    assert client.get(f"/api/orders/{order['id']}").status_code == 404


def test_webhook_requires_configured_secret(client):
    response = client.post("/api/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1,v1=x"})
    assert response.status_code == 402
    assert response.json()["code"] == "webhook_not_configured"


def test_admin_creates_users_and_camps(client, admin):
    login(client, "root")
    created = client.post(
        "/api/admin/users",
        json={"username": "coach_kim", "password": "secret123", "role": "trainer", "hourly_rate": 90},
    )
    assert created.status_code == 200
    duplicate = client.post(
        "/api/admin/users",
        json={"username": "coach_kim", "password": "secret123", "role": "trainer"},
    )
    assert duplicate.json()["code"] == "duplicate_username"

    trainers = client.get("/api/trainers").json()
    assert [(t["display_name"], t["hourly_rate"]) for t in trainers] == [("coach_kim", 90.0)]

    camp = client.post("/api/admin/camps", json={"name": "Week 1", "price": 250, "capacity": 12}).json()
    assert camp["seats_left"] == 12
    assert [c["id"] for c in client.get("/api/camps").json()] == [camp["id"]]

    assert client.get("/api/admin/reconciliation").json() == []
    cleanup = client.post("/api/admin/maintenance/cleanup").json()
    assert cleanup["released_reservations"] == 0


def signed(payload, secret):
    timestamp = int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return {"stripe-signature": f"t={timestamp},v1={digest}", "content-type": "application/json"}


def test_signed_webhook_marks_order_paid(client, config, make_camp, notifier):
    config.stripe_webhook_secret = "whsec_test"
    camp = make_camp()
    order = client.post(
        "/api/orders",
        json={
            "items": [{"item_type": "camp", "camp_id": camp.id, "first_name": "Ann"}],
            "customer": {"first_name": "Pat", "email": "pat@example.com"},
        },
    ).json()
    intent = client.post(f"/api/orders/{order['id']}/payment").json()

    payload = json.dumps(
        {
            "id": "evt_paid",
            "object": "event",
            "type": "payment_intent.succeeded",
            "data": {"object": {"object": "payment_intent", "id": intent["payment_intent_id"]}},
        }
    )
    first = client.post("/api/webhooks/stripe", content=payload, headers=signed(payload, "whsec_test"))
    assert first.json() == {"received": True, "outcome": "paid"}
    again = client.post("/api/webhooks/stripe", content=payload, headers=signed(payload, "whsec_test"))
    assert again.json()["outcome"] == "duplicate"
    assert notifier.sent == [order["id"]]

    forged = client.post("/api/webhooks/stripe", content=payload, headers=signed(payload, "whsec_other"))
    assert forged.status_code == 402
    assert forged.json()["code"] == "invalid_webhook"
