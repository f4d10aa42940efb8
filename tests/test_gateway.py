import asyncio
import base64
import json
import sys
from dataclasses import replace
from pathlib import Path

import httpx
import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

sys.path.append(str(Path(__file__).resolve().parents[1]))

from checkout.errors import GatewayError, SignatureError, ValidationError
from checkout.services.gateway import SwishGateway


def test_initiate_posts_payment_request(gateway, swish, settings):
    handle = asyncio.run(
        gateway.initiate("SC-20300101-ABCDEF", "46739000001", 25050, "Presentkort Studio Clay " * 4)
    )

    assert handle.request_id == "REQ0001"
    assert handle.location == "https://swish.test/paymentrequests/REQ0001"
    [request] = swish.requests
    assert request.method == "POST"
    assert request.url.path == "/paymentrequests"
    body = json.loads(request.content)
    assert body["amount"] == "250.50"
    assert body["currency"] == "SEK"
    assert body["payeeAlias"] == settings.swish_payee_alias
    assert body["callbackUrl"].endswith("/api/payments/swish/callback")
    assert len(body["message"]) == 50


@pytest.mark.parametrize("status_code, retryable", [(400, False), (422, False), (500, True), (503, True)])
def test_provider_errors_are_mapped(gateway, swish, status_code, retryable):
    swish.fail_with = status_code

    with pytest.raises(GatewayError) as info:
        asyncio.run(gateway.initiate("SC-20300101-ABCDEF", "46739000001", 1000, "Kopp"))

    assert info.value.status_code == status_code
    assert info.value.retryable is retryable
    assert info.value.details == [{"errorCode": "ACMT03"}]


def test_connection_failure_is_retryable(settings):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.AsyncClient(base_url=settings.swish_api_url, transport=httpx.MockTransport(refuse))
    gateway = SwishGateway(settings, client=client)

    with pytest.raises(GatewayError) as info:
        asyncio.run(gateway.fetch_status("REQ0001"))
    assert info.value.retryable


def test_missing_location_header_is_an_error(settings):
    client = httpx.AsyncClient(
        base_url=settings.swish_api_url,
        transport=httpx.MockTransport(lambda request: httpx.Response(201)),
    )
    gateway = SwishGateway(settings, client=client)

    with pytest.raises(GatewayError):
        asyncio.run(gateway.initiate("SC-20300101-ABCDEF", "46739000001", 1000, "Kopp"))


def test_fetch_status_and_cancel(gateway, swish):
    swish.statuses["REQ0042"] = "PAID"

    assert asyncio.run(gateway.fetch_status("REQ0042"))["status"] == "PAID"
    asyncio.run(gateway.cancel("REQ0042"))

    patch = swish.requests[-1]
    assert patch.method == "PATCH"
    assert patch.headers["content-type"] == "application/json-patch+json"


@pytest.fixture
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def verifying_gateway(settings, signing_key, tmp_path):
    pem = signing_key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    path = tmp_path / "swish_callback.pem"
    path.write_bytes(pem)
    return SwishGateway(replace(settings, swish_callback_cert_path=str(path)))


def sign(key, body):
    return base64.b64encode(key.sign(body, padding.PKCS1v15(), hashes.SHA256())).decode()


BODY = json.dumps(
    {"id": "CB1", "payeePaymentReference": "SC-20300101-ABCDEF", "status": "PAID", "amount": "300.00"}
).encode()


def test_valid_signature_is_accepted(verifying_gateway, signing_key):
    event = verifying_gateway.verify_callback(BODY, sign(signing_key, BODY))

    assert event.reference == "SC-20300101-ABCDEF"
    assert event.status == "PAID"
    assert event.gateway_payment_id == "CB1"
    assert event.amount == "300.00"


def test_tampered_body_is_rejected(verifying_gateway, signing_key):
    signature = sign(signing_key, BODY)
    tampered = BODY.replace(b"PAID", b"DECLINED")

    with pytest.raises(SignatureError):
        verifying_gateway.verify_callback(tampered, signature)


@pytest.mark.parametrize("signature", [None, "", "not base64!!"])
def test_missing_or_garbled_signature_is_rejected(verifying_gateway, signature):
    with pytest.raises(SignatureError):
        verifying_gateway.verify_callback(BODY, signature)


def test_missing_certificate_rejects_callbacks(settings):
    gateway = SwishGateway(replace(settings, swish_callback_cert_path="/nonexistent/cert.pem"))

    with pytest.raises(SignatureError):
        gateway.verify_callback(BODY, base64.b64encode(b"x").decode())


def test_test_mode_skips_signature_but_not_parsing(settings):
    gateway = SwishGateway(replace(settings, swish_test_mode=True))

    assert gateway.verify_callback(BODY, None).status == "PAID"
    with pytest.raises(ValidationError):
        gateway.verify_callback(b"[1, 2, 3]", None)
    with pytest.raises(ValidationError):
        gateway.verify_callback(json.dumps({"status": "PAID"}).encode(), None)
