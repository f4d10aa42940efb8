import asyncio
import sys
from datetime import datetime
from pathlib import Path

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.pool import NullPool

sys.path.append(str(Path(__file__).resolve().parents[1]))

from checkout.config import Settings
from checkout.db.session import build_engine, build_session_factory, create_all
from checkout.errors import TransportError
from checkout.models import CourseInstance, Product
from checkout.schemas import OrderSubmission
from checkout.services.gateway import CallbackEvent, SwishGateway
from checkout.services.job_queue import JobQueue
from checkout.services.reconciliation import ReconciliationEngine


class FakeTransport:
    """Mail transport that records messages and can be told to fail."""

    def __init__(self, failures=0, error=None):
        self.sent = []
        self.failures = failures
        self.error = error

    async def send(self, message):
        if self.failures > 0:
            self.failures -= 1
            raise self.error or TransportError("SMTP 451 try again later")
        self.sent.append(message)


class FakeAlerter:
    def __init__(self):
        self.alerts = []

    async def alert(self, text):
        self.alerts.append(text)


class SwishStub:
    """Stands in for the provider API behind an httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.statuses = {}
        self.fail_with = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json=[{"errorCode": "ACMT03"}])
        if request.method == "POST":
            request_id = f"REQ{len(self.requests):04d}"
            return httpx.Response(
                201, headers={"Location": f"https://swish.test/paymentrequests/{request_id}"}
            )
        request_id = request.url.path.rsplit("/", 1)[-1]
        if request.method == "GET":
            return httpx.Response(
                200, json={"id": request_id, "status": self.statuses.get(request_id, "CREATED")}
            )
        return httpx.Response(200, json={"id": request_id, "status": "CANCELLED"})


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        swish_api_url="https://swish.test",
        run_job_worker=False,
        job_backoff_base=30.0,
        job_max_retries=3,
    )


@pytest.fixture
def session_factory(settings):
    engine = build_engine(settings.database_url, poolclass=NullPool)
    asyncio.run(create_all(engine))
    yield build_session_factory(engine)
    asyncio.run(engine.dispose())


@pytest.fixture
def swish():
    return SwishStub()


@pytest.fixture
def gateway(settings, swish):
    client = httpx.AsyncClient(
        base_url=settings.swish_api_url, transport=httpx.MockTransport(swish.handler)
    )
    return SwishGateway(settings, client=client)


@pytest.fixture
def alerts():
    return FakeAlerter()


@pytest.fixture
def queue(session_factory, settings):
    return JobQueue(session_factory, settings)


@pytest.fixture
def reconciler(session_factory, settings, queue, gateway, alerts):
    return ReconciliationEngine(session_factory, settings, queue, gateway, alerts)


def add_course(session_factory, max_participants=8, current=0, price=250):
    async def go():
        async with session_factory() as db:
            course = CourseInstance(
                title="Drejning för nybörjare",
                start_date=datetime(2030, 3, 1, 18, 0),
                location="Studio Clay",
                price=price,
                max_participants=max_participants,
                current_participants=current,
            )
            db.add(course)
            await db.commit()
            return course.id

    return asyncio.run(go())


def add_product(session_factory, stock=3, price=450):
    async def go():
        async with session_factory() as db:
            product = Product(title="Kopp", price=price, stock_quantity=stock, in_stock=stock > 0)
            db.add(product)
            await db.commit()
            return product.id

    return asyncio.run(go())


def fetch(session_factory, model, **filters):
    async def go():
        async with session_factory() as db:
            result = await db.execute(select(model).filter_by(**filters))
            return list(result.scalars().all())

    return asyncio.run(go())


CUSTOMER = {
    "firstName": "Anna",
    "lastName": "Svensson",
    "email": "anna@example.se",
    "phone": "0739000001",
}
INVOICE = {"address": "Storgatan 1", "postalCode": "11122", "city": "Stockholm"}


def invoice_order(product_type, product_id, amount, quantity=1, **extra):
    body = {
        "amount": amount,
        "productType": product_type,
        "productId": product_id,
        "quantity": quantity,
        "customerInfo": CUSTOMER,
        "paymentMethod": "INVOICE",
        "invoiceDetails": INVOICE,
    }
    body.update(extra)
    return OrderSubmission.model_validate(body)


def push_order(product_type, product_id, amount, quantity=1, **extra):
    body = {
        "amount": amount,
        "productType": product_type,
        "productId": product_id,
        "quantity": quantity,
        "customerInfo": CUSTOMER,
        "paymentMethod": "PUSH",
    }
    body.update(extra)
    return OrderSubmission.model_validate(body)


def callback(reference, status, **extra):
    payload = {"id": "CB123", "payeePaymentReference": reference, "status": status, "amount": "3.00"}
    payload.update(extra)
    return CallbackEvent.from_payload(payload)
