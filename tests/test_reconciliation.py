import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from checkout.errors import FulfillmentError, GatewayError, ValidationError
from checkout.models import (
    ArtOrder,
    Booking,
    CourseInstance,
    GiftCard,
    JobStatus,
    JobType,
    NotificationJob,
    Payment,
    PaymentStatus,
    PendingOrder,
    Product,
    ProductType,
)
from checkout.services import fulfillment
from checkout.services.gateway import SwishGateway
from checkout.services.reconciliation import ReconciliationEngine, map_external_status
from conftest import add_course, add_product, callback, fetch, invoice_order, push_order


def test_invoice_course_booking(reconciler, session_factory):
    course_id = add_course(session_factory, max_participants=8, current=1)

    result = asyncio.run(reconciler.submit_order(invoice_order("COURSE", course_id, 500, quantity=2)))

    assert result.status is PaymentStatus.PAID
    assert not result.duplicate
    [payment] = fetch(session_factory, Payment)
    assert payment.status is PaymentStatus.PAID
    [booking] = fetch(session_factory, Booking)
    assert booking.number_of_participants == 2
    assert booking.reserved_participants == 2
    assert payment.fulfillment_id == booking.id
    [course] = fetch(session_factory, CourseInstance)
    assert course.current_participants == 3
    [job] = fetch(session_factory, NotificationJob)
    assert job.job_type is JobType.BOOKING_CONFIRMATION
    assert job.status is JobStatus.PENDING
    assert job.attempts == 0
    assert job.payload["participants"] == 2
    assert job.payload["customer"]["email"] == "anna@example.se"
    assert job.payload["invoice"]["invoice_number"].startswith("INV-")
    assert fetch(session_factory, PendingOrder) == []


def test_push_gift_card_callback_replay(reconciler, session_factory, swish):
    order = push_order(
        "GIFT_CARD",
        "gift-card",
        300,
        giftCard={"recipientName": "Erik", "message": "Grattis!"},
    )
    result = asyncio.run(reconciler.submit_order(order))

    assert result.status is PaymentStatus.CREATED
    assert len(fetch(session_factory, PendingOrder)) == 1
    [sent] = swish.requests
    body = json.loads(sent.content)
    assert body["payeePaymentReference"] == result.reference
    assert body["payerAlias"] == "46739000001"
    assert body["amount"] == "3.00"
    [payment] = fetch(session_factory, Payment)
    assert payment.meta["gateway_request_id"] == "REQ0001"

    first = asyncio.run(reconciler.handle_callback(callback(result.reference, "PAID")))
    assert first.applied
    assert first.status is PaymentStatus.PAID

    [card] = fetch(session_factory, GiftCard)
    assert card.amount == 300
    assert card.remaining_balance == 300
    assert card.recipient_name == "Erik"
    assert first.fulfillment_reference == card.code
    assert fetch(session_factory, PendingOrder) == []
    [job] = fetch(session_factory, NotificationJob)
    assert job.job_type is JobType.GIFT_CARD_DELIVERY
    assert first.job_id == job.id

    second = asyncio.run(reconciler.handle_callback(callback(result.reference, "PAID")))
    assert not second.applied
    assert second.status is PaymentStatus.PAID
    assert len(fetch(session_factory, GiftCard)) == 1
    assert len(fetch(session_factory, NotificationJob)) == 1


def test_declined_callback_discards_staging(reconciler, session_factory):
    result = asyncio.run(reconciler.submit_order(push_order("GIFT_CARD", "gift-card", 300)))

    outcome = asyncio.run(
        reconciler.handle_callback(callback(result.reference, "DECLINED", errorCode="RF07"))
    )

    assert outcome.applied
    [payment] = fetch(session_factory, Payment)
    assert payment.status is PaymentStatus.DECLINED
    assert payment.meta["gateway_error"]["code"] == "RF07"
    assert fetch(session_factory, PendingOrder) == []
    assert fetch(session_factory, GiftCard) == []
    assert fetch(session_factory, NotificationJob) == []

    # A late PAID for a declined payment changes nothing
    late = asyncio.run(reconciler.handle_callback(callback(result.reference, "PAID")))
    assert not late.applied
    assert late.status is PaymentStatus.DECLINED
    assert fetch(session_factory, GiftCard) == []


def test_unknown_reference_is_acknowledged(reconciler):
    outcome = asyncio.run(reconciler.handle_callback(callback("SC-19990101-ABCDEF", "PAID")))
    assert outcome.status is None
    assert not outcome.applied


def test_unrecognised_status_becomes_error(reconciler, session_factory):
    assert map_external_status("paid") is PaymentStatus.PAID
    assert map_external_status("CANCELLED") is PaymentStatus.DECLINED
    assert map_external_status("SOMETHING_NEW") is PaymentStatus.ERROR
    assert map_external_status(None) is PaymentStatus.ERROR

    result = asyncio.run(reconciler.submit_order(push_order("GIFT_CARD", "gift-card", 300)))
    asyncio.run(reconciler.handle_callback(callback(result.reference, "MAYBE_PAID")))

    [payment] = fetch(session_factory, Payment)
    assert payment.status is PaymentStatus.ERROR
    assert fetch(session_factory, GiftCard) == []


def test_duplicate_submission_returns_original(reconciler, session_factory, swish):
    order = push_order("GIFT_CARD", "gift-card", 300, reference="client-ref-0001")

    first = asyncio.run(reconciler.submit_order(order))
    again = asyncio.run(reconciler.submit_order(order))

    assert first.reference == again.reference == "client-ref-0001"
    assert again.duplicate
    assert again.status is PaymentStatus.CREATED
    assert len(fetch(session_factory, Payment)) == 1
    assert len(fetch(session_factory, PendingOrder)) == 1
    assert len(swish.requests) == 1


def test_invoice_duplicate_does_not_double_book(reconciler, session_factory):
    course_id = add_course(session_factory)
    order = invoice_order("COURSE", course_id, 500, quantity=2, reference="web-booking-42")

    asyncio.run(reconciler.submit_order(order))
    again = asyncio.run(reconciler.submit_order(order))

    assert again.duplicate
    assert again.status is PaymentStatus.PAID
    assert len(fetch(session_factory, Booking)) == 1
    [course] = fetch(session_factory, CourseInstance)
    assert course.current_participants == 2
    assert len(fetch(session_factory, NotificationJob)) == 1


def test_gateway_failure_keeps_payment_created(reconciler, session_factory, swish):
    order = push_order("GIFT_CARD", "gift-card", 300, reference="retry-me-0001")
    swish.fail_with = 503

    with pytest.raises(GatewayError) as info:
        asyncio.run(reconciler.submit_order(order))
    assert info.value.retryable
    [payment] = fetch(session_factory, Payment)
    assert payment.status is PaymentStatus.CREATED
    assert "gateway_request_id" not in payment.meta

    swish.fail_with = None
    again = asyncio.run(reconciler.submit_order(order))

    assert again.duplicate
    [payment] = fetch(session_factory, Payment)
    assert payment.meta["gateway_request_id"] == "REQ0002"


def test_concurrent_submissions_reach_provider_once(session_factory, settings, queue, swish, alerts):
    async def slow_handler(request):
        await asyncio.sleep(0.2)
        return swish.handler(request)

    client = httpx.AsyncClient(
        base_url=settings.swish_api_url, transport=httpx.MockTransport(slow_handler)
    )
    engine = ReconciliationEngine(
        session_factory, settings, queue, SwishGateway(settings, client=client), alerts
    )
    order = push_order("GIFT_CARD", "gift-card", 300, reference="client-key-0001")

    async def submit_twice():
        return await asyncio.gather(engine.submit_order(order), engine.submit_order(order))

    results = asyncio.run(submit_twice())

    assert sorted(result.duplicate for result in results) == [False, True]
    assert all(result.status is PaymentStatus.CREATED for result in results)
    [payment] = fetch(session_factory, Payment)
    posts = [request for request in swish.requests if request.method == "POST"]
    assert len(posts) == 1
    assert payment.meta["gateway_request_id"] == "REQ0001"


def test_concurrent_paid_callbacks_fulfill_once(reconciler, session_factory):
    course_id = add_course(session_factory, current=1)
    submitted = asyncio.run(reconciler.submit_order(push_order("COURSE", course_id, 500, quantity=2)))

    async def deliver_three():
        return await asyncio.gather(
            *(reconciler.handle_callback(callback(submitted.reference, "PAID")) for _ in range(3))
        )

    outcomes = asyncio.run(deliver_three())

    assert [outcome.applied for outcome in outcomes].count(True) == 1
    assert all(outcome.status is PaymentStatus.PAID for outcome in outcomes)
    [booking] = fetch(session_factory, Booking)
    assert booking.reserved_participants == 2
    assert len(fetch(session_factory, NotificationJob)) == 1
    [course] = fetch(session_factory, CourseInstance)
    assert course.current_participants == 3
    [payment] = fetch(session_factory, Payment)
    assert payment.fulfillment_id == booking.id


def test_validation_happens_before_any_write(reconciler, session_factory):
    with pytest.raises(ValidationError):
        asyncio.run(reconciler.submit_order(invoice_order("COURSE", "no-such-course", 500)))
    with pytest.raises(ValidationError):
        asyncio.run(
            reconciler.submit_order(push_order("GIFT_CARD", "gift-card", 300, payerPhone="12345"))
        )
    assert fetch(session_factory, Payment) == []


def test_overbooking_is_flagged_not_blocked(reconciler, session_factory, alerts):
    course_id = add_course(session_factory, max_participants=2, current=1)

    asyncio.run(reconciler.submit_order(invoice_order("COURSE", course_id, 500, quantity=2)))

    [course] = fetch(session_factory, CourseInstance)
    assert course.current_participants == 3
    assert len(fetch(session_factory, Booking)) == 1
    assert any("overbooked" in text for text in alerts.alerts)


def test_art_order_takes_stock(reconciler, session_factory):
    product_id = add_product(session_factory, stock=1)

    asyncio.run(reconciler.submit_order(invoice_order("ART_PRODUCT", product_id, 900, quantity=2)))

    [product] = fetch(session_factory, Product)
    assert product.stock_quantity == -1
    assert product.in_stock is False
    [order] = fetch(session_factory, ArtOrder)
    assert order.reserved_quantity == 2
    [job] = fetch(session_factory, NotificationJob)
    assert job.job_type is JobType.ORDER_CONFIRMATION


def test_fulfillment_failure_keeps_paid_and_can_be_reconciled(
    reconciler, session_factory, alerts, monkeypatch
):
    result = asyncio.run(reconciler.submit_order(push_order("GIFT_CARD", "gift-card", 300)))

    async def broken(db, settings, request):
        raise FulfillmentError("gift card table locked")

    with monkeypatch.context() as m:
        m.setitem(fulfillment.BUILDERS, ProductType.GIFT_CARD, broken)
        outcome = asyncio.run(reconciler.handle_callback(callback(result.reference, "PAID")))

    assert outcome.applied
    assert outcome.fulfillment_reference is None
    [payment] = fetch(session_factory, Payment)
    assert payment.status is PaymentStatus.PAID
    assert payment.fulfillment_id is None
    # The staged order survives so fulfillment can be re-run
    assert len(fetch(session_factory, PendingOrder)) == 1
    assert fetch(session_factory, NotificationJob) == []
    assert any(result.reference in text for text in alerts.alerts)

    fixed = asyncio.run(reconciler.reconcile_paid(result.reference))

    assert fixed.applied
    assert len(fetch(session_factory, GiftCard)) == 1
    assert len(fetch(session_factory, NotificationJob)) == 1
    assert fetch(session_factory, PendingOrder) == []
    assert not asyncio.run(reconciler.reconcile_paid(result.reference)).applied


def test_cancel_declines_after_upstream_cancel(reconciler, session_factory, swish):
    result = asyncio.run(reconciler.submit_order(push_order("GIFT_CARD", "gift-card", 300)))

    outcome = asyncio.run(reconciler.cancel_payment(result.reference))

    assert outcome.status is PaymentStatus.DECLINED
    patch = swish.requests[-1]
    assert patch.method == "PATCH"
    assert json.loads(patch.content) == [{"op": "replace", "path": "/status", "value": "cancelled"}]
    assert fetch(session_factory, PendingOrder) == []


def test_cancel_failure_requires_force(reconciler, session_factory, swish):
    result = asyncio.run(reconciler.submit_order(push_order("GIFT_CARD", "gift-card", 300)))
    swish.fail_with = 500

    with pytest.raises(GatewayError):
        asyncio.run(reconciler.cancel_payment(result.reference))
    [payment] = fetch(session_factory, Payment)
    assert payment.status is PaymentStatus.CREATED

    outcome = asyncio.run(reconciler.cancel_payment(result.reference, force=True))
    assert outcome.status is PaymentStatus.DECLINED


def test_refresh_applies_upstream_status(reconciler, session_factory, swish):
    result = asyncio.run(reconciler.submit_order(push_order("GIFT_CARD", "gift-card", 300)))

    still_open = asyncio.run(reconciler.refresh_from_gateway(result.reference))
    assert still_open.status is PaymentStatus.CREATED

    swish.statuses["REQ0001"] = "PAID"
    refreshed = asyncio.run(reconciler.refresh_from_gateway(result.reference))

    assert refreshed.status is PaymentStatus.PAID
    assert len(fetch(session_factory, GiftCard)) == 1


def test_resend_receipt_enqueues_payment_confirmation(reconciler, session_factory):
    course_id = add_course(session_factory)
    result = asyncio.run(reconciler.submit_order(invoice_order("COURSE", course_id, 500)))

    job = asyncio.run(reconciler.resend_receipt(result.reference))

    assert job.job_type is JobType.PAYMENT_CONFIRMATION
    assert job.payload["product_title"] == "Drejning för nybörjare"
    assert job.payload["fulfillment_reference"].startswith("BK-")
    assert job.payload["invoice"] is not None
    assert len(fetch(session_factory, NotificationJob)) == 2
