import json
import sys
from dataclasses import replace
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

sys.path.append(str(Path(__file__).resolve().parents[1]))

from checkout.main import create_app
from checkout.models import Booking, CourseInstance, GiftCard, NotificationJob
from checkout.services.gateway import SwishGateway
from conftest import CUSTOMER, INVOICE, FakeTransport, add_course, fetch

OPERATOR = {"X-Operator-Token": "s3cret"}


@pytest.fixture
def transport():
    return FakeTransport()


def make_client(settings, session_factory, swish, alerts, transport):
    client = httpx.AsyncClient(
        base_url=settings.swish_api_url, transport=httpx.MockTransport(swish.handler)
    )
    app = create_app(
        settings,
        session_factory=session_factory,
        gateway=SwishGateway(settings, client=client),
        transport=transport,
        alerts=alerts,
    )
    return TestClient(app)


@pytest.fixture
def api(settings, session_factory, swish, alerts, transport):
    settings = replace(settings, job_processor_token="s3cret")
    with make_client(settings, session_factory, swish, alerts, transport) as client:
        yield client


@pytest.fixture
def test_mode_api(settings, session_factory, swish, alerts, transport):
    settings = replace(settings, swish_test_mode=True)
    with make_client(settings, session_factory, swish, alerts, transport) as client:
        yield client


def invoice_body(course_id, **extra):
    body = {
        "amount": 500,
        "productType": "COURSE",
        "productId": course_id,
        "quantity": 2,
        "customerInfo": CUSTOMER,
        "paymentMethod": "INVOICE",
        "invoiceDetails": INVOICE,
    }
    body.update(extra)
    return body


def test_health(api):
    assert api.get("/health").json() == {"status": "ok"}


def test_submit_invoice_order_and_duplicate(api, session_factory):
    course_id = add_course(session_factory)
    body = invoice_body(course_id, reference="web-booking-0001")

    created = api.post("/api/payments", json=body)
    assert created.status_code == 201
    assert created.json() == {"reference": "web-booking-0001", "status": "PAID", "duplicate": False}

    again = api.post("/api/payments", json=body)
    assert again.status_code == 200
    assert again.json()["duplicate"] is True
    assert len(fetch(session_factory, Booking)) == 1

    payment = api.get("/api/payments/web-booking-0001").json()
    assert payment["status"] == "PAID"
    assert payment["productType"] == "COURSE"
    assert payment["fulfillmentId"] == fetch(session_factory, Booking)[0].id


def test_invalid_submissions_are_rejected(api, session_factory):
    course_id = add_course(session_factory)

    missing_invoice = invoice_body(course_id)
    del missing_invoice["invoiceDetails"]
    assert api.post("/api/payments", json=missing_invoice).status_code == 422
    assert api.post("/api/payments", json=invoice_body(course_id, amount=0)).status_code == 422
    assert api.post("/api/payments", json=invoice_body("no-such-course")).status_code == 422
    assert api.get("/api/payments/SC-19990101-ABCDEF").status_code == 404


def test_push_order_provider_outage_returns_502(api, swish):
    swish.fail_with = 503
    body = {
        "amount": 30000,
        "productType": "GIFT_CARD",
        "productId": "gift-card",
        "customerInfo": CUSTOMER,
        "paymentMethod": "PUSH",
        "giftCard": {"recipientName": "Erik"},
    }

    response = api.post("/api/payments", json=body)

    assert response.status_code == 502


def test_callback_in_test_mode_completes_payment(test_mode_api, session_factory):
    body = {
        "amount": 30000,
        "productType": "GIFT_CARD",
        "productId": "gift-card",
        "customerInfo": CUSTOMER,
        "paymentMethod": "PUSH",
        "giftCard": {"recipientName": "Erik"},
    }
    reference = test_mode_api.post("/api/payments", json=body).json()["reference"]

    callback = {"id": "CB1", "payeePaymentReference": reference, "status": "PAID", "amount": "300.00"}
    response = test_mode_api.post("/api/payments/swish/callback", content=json.dumps(callback))

    assert response.status_code == 200
    assert response.json()["received"] is True
    assert response.json()["status"] == "PAID"
    assert response.json()["applied"] is True
    assert response.json()["fulfillmentReference"].startswith("GC-")

    unknown = dict(callback, payeePaymentReference="SC-19990101-ABCDEF")
    response = test_mode_api.post("/api/payments/swish/callback", content=json.dumps(unknown))
    assert response.status_code == 200
    assert response.json()["status"] is None


def test_unsigned_callback_is_rejected_and_alerted(api, alerts):
    callback = {"payeePaymentReference": "SC-20300101-ABCDEF", "status": "PAID"}

    response = api.post(
        "/api/payments/swish/callback",
        content=json.dumps(callback),
        headers={"Swish-Signature": "bm90IGEgc2lnbmF0dXJl"},
    )

    assert response.status_code == 400
    assert any("Rejected Swish callback" in text for text in alerts.alerts)


def test_operator_endpoints_require_token(api):
    assert api.get("/api/jobs/status").status_code == 401
    assert api.get("/api/jobs/status", headers={"X-Operator-Token": "wrong"}).status_code == 401
    assert api.get("/api/jobs/status", params={"token": "s3cret"}).status_code == 200
    assert api.post("/api/payments/SC-19990101-ABCDEF/reconcile").status_code == 401
    assert api.post("/api/payments/SC-19990101-ABCDEF/cancel?force=true").status_code == 401


def test_process_jobs_sends_mail_and_stores_invoice(api, session_factory, transport):
    course_id = add_course(session_factory)
    reference = api.post("/api/payments", json=invoice_body(course_id)).json()["reference"]

    status = api.get("/api/jobs/status", headers=OPERATOR).json()
    assert status["counts"]["PENDING"] == 1
    assert status["recent"][0]["jobType"] == "booking_confirmation"

    report = api.post("/api/jobs/process", headers=OPERATOR).json()
    assert report["claimed"] == 1
    assert report["completed"] == 1

    [message] = transport.sent
    assert message.to == "anna@example.se"
    [job] = fetch(session_factory, NotificationJob)
    assert job.status.value == "COMPLETED"

    [document] = api.get("/api/documents", params={"paymentReference": reference}).json()
    assert document["kind"] == "invoice"
    content = api.get(f"/api/documents/{document['id']}")
    assert content.status_code == 200
    assert content.headers["content-type"].startswith("text/html")
    assert "inline" in content.headers["content-disposition"]
    assert "Storgatan 1" in content.text

    assert api.get("/api/documents/missing").status_code == 404


def test_requeue_rejects_unfailed_and_missing_jobs(api, session_factory):
    course_id = add_course(session_factory)
    api.post("/api/payments", json=invoice_body(course_id))
    [job] = fetch(session_factory, NotificationJob)

    assert api.post(f"/api/jobs/{job.id}/requeue", headers=OPERATOR).status_code == 422
    assert api.post("/api/jobs/missing/requeue", headers=OPERATOR).status_code == 404


def test_resend_receipt(api, session_factory):
    course_id = add_course(session_factory)
    reference = api.post("/api/payments", json=invoice_body(course_id)).json()["reference"]

    response = api.post(f"/api/payments/{reference}/resend", headers=OPERATOR)

    assert response.status_code == 200
    assert response.json()["jobType"] == "payment_confirmation"
    assert response.json()["status"] == "PENDING"


def test_cancel_booking_releases_seats(api, session_factory):
    course_id = add_course(session_factory, current=1)
    api.post("/api/payments", json=invoice_body(course_id))
    [booking] = fetch(session_factory, Booking)

    edited = api.patch(
        f"/api/bookings/{booking.id}",
        json={"customerPhone": "0701234567"},
        headers=OPERATOR,
    )
    assert edited.status_code == 200

    response = api.delete(f"/api/bookings/{booking.id}", headers=OPERATOR)

    assert response.status_code == 200
    assert response.json()["status"] == "CANCELLED"
    [course] = fetch(session_factory, CourseInstance)
    assert course.current_participants == 1
    assert api.delete("/api/bookings/missing", headers=OPERATOR).status_code == 404


def test_gift_card_balance_update(api, session_factory):
    body = invoice_body("gift-card", productType="GIFT_CARD", amount=30000, quantity=1)
    body["giftCard"] = {"recipientName": "Erik"}
    api.post("/api/payments", json=body)
    [card] = fetch(session_factory, GiftCard)
    url = f"/api/gift-cards/{card.id}"

    assert api.patch(url, json={"remainingBalance": 100}).status_code == 401
    assert api.patch(url, json={"remainingBalance": 30001}, headers=OPERATOR).status_code == 422
    assert api.patch(url, json={"remainingBalance": -5}, headers=OPERATOR).status_code == 422

    response = api.patch(url, json={"remainingBalance": 0}, headers=OPERATOR)

    assert response.status_code == 200
    assert response.json()["status"] == "used"
    assert response.json()["remainingBalance"] == 0
    assert api.patch(url, json={"remainingBalance": 10}, headers=OPERATOR).status_code == 422
    assert api.patch("/api/gift-cards/missing", json={"remainingBalance": 0}, headers=OPERATOR).status_code == 404
