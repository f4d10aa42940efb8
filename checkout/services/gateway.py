"""Client for the Swish push-payment provider.

The adapter never touches local payment state: it starts, polls and cancels
payment requests upstream and turns signed callbacks into
:class:`CallbackEvent` objects for the reconciliation engine.
"""

import base64
import json
import logging
import ssl
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from checkout.config import Settings
from checkout.errors import GatewayError, SignatureError, ValidationError


@dataclass(frozen=True)
class GatewayHandle:
    request_id: str
    location: Optional[str] = None


@dataclass(frozen=True)
class CallbackEvent:
    reference: str
    status: str
    gateway_payment_id: Optional[str] = None
    amount: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "CallbackEvent":
        reference = data.get("payeePaymentReference")
        if not reference:
            raise ValidationError("Callback is missing payeePaymentReference")
        return cls(
            reference=str(reference),
            status=str(data.get("status") or ""),
            gateway_payment_id=data.get("id"),
            amount=None if data.get("amount") is None else str(data.get("amount")),
            error_code=data.get("errorCode"),
            error_message=data.get("errorMessage"),
            raw=dict(data),
        )


def format_amount(amount: int) -> str:
    """Minor units to the provider's decimal string: 50050 -> "500.50"."""
    return f"{amount // 100}.{amount % 100:02d}"


class SwishGateway:
    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = client
        self._owns_client = client is None
        self._callback_key = None

    def _ssl_context(self):
        if not (self.settings.swish_cert_path and self.settings.swish_key_path):
            return True
        context = ssl.create_default_context(cafile=self.settings.swish_ca_path)
        context.load_cert_chain(self.settings.swish_cert_path, self.settings.swish_key_path)
        return context

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.swish_api_url,
                timeout=self.settings.gateway_timeout,
                verify=self._ssl_context(),
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise GatewayError(f"Swish {method} {url} timed out", retryable=True) from exc
        except httpx.HTTPError as exc:
            raise GatewayError(f"Swish {method} {url} failed: {exc}", retryable=True) from exc

        if response.status_code >= 400:
            try:
                details = response.json()
            except ValueError:
                details = response.text
            logging.error("Swish %s %s returned %s: %s", method, url, response.status_code, details)
            raise GatewayError(
                f"Swish API error: {response.status_code}",
                status_code=response.status_code,
                retryable=response.status_code >= 500,
                details=details,
            )
        return response

    async def initiate(
        self,
        reference: str,
        payer_alias: str,
        amount: int,
        message: str,
        callback_url: Optional[str] = None,
    ) -> GatewayHandle:
        body = {
            "payeePaymentReference": reference,
            "callbackUrl": callback_url or self.settings.callback_url,
            "payeeAlias": self.settings.swish_payee_alias,
            "payerAlias": payer_alias,
            "amount": format_amount(amount),
            "currency": self.settings.currency,
            "message": message[:50],
        }
        response = await self._request("POST", "/paymentrequests", json=body)
        location = response.headers.get("location")
        if not location:
            raise GatewayError("Swish accepted the request without a Location header")
        request_id = location.rstrip("/").split("/")[-1]
        logging.info("Swish payment request %s created for %s", request_id, reference)
        return GatewayHandle(request_id=request_id, location=location)

    async def fetch_status(self, request_id: str) -> Dict[str, Any]:
        response = await self._request("GET", f"/paymentrequests/{request_id}")
        return response.json()

    async def cancel(self, request_id: str) -> None:
        await self._request(
            "PATCH",
            f"/paymentrequests/{request_id}",
            content=json.dumps([{"op": "replace", "path": "/status", "value": "cancelled"}]),
            headers={"Content-Type": "application/json-patch+json"},
        )
        logging.info("Swish payment request %s cancelled", request_id)

    # ---------- callbacks ----------

    def _load_callback_key(self):
        if self._callback_key is None:
            path = self.settings.swish_callback_cert_path
            if not path:
                raise SignatureError("No callback certificate configured")
            try:
                with open(path, "rb") as f:
                    pem = f.read()
                if b"BEGIN CERTIFICATE" in pem:
                    self._callback_key = x509.load_pem_x509_certificate(pem).public_key()
                else:
                    self._callback_key = serialization.load_pem_public_key(pem)
            except (OSError, ValueError) as exc:
                logging.exception("Could not load Swish callback certificate %s", path)
                raise SignatureError("Callback certificate unavailable") from exc
        return self._callback_key

    def verify_callback(self, raw_body: bytes, signature: Optional[str]) -> CallbackEvent:
        if self.settings.swish_test_mode:
            logging.warning("SWISH_TEST_MODE is on: callback signature not checked")
        else:
            if not signature:
                raise SignatureError("Callback has no signature header")
            try:
                decoded = base64.b64decode(signature, validate=True)
            except ValueError as exc:
                raise SignatureError("Callback signature is not valid base64") from exc
            try:
                self._load_callback_key().verify(
                    decoded, raw_body, padding.PKCS1v15(), hashes.SHA256()
                )
            except InvalidSignature as exc:
                raise SignatureError("Callback signature does not match") from exc

        try:
            data = json.loads(raw_body)
        except ValueError as exc:
            raise ValidationError("Callback body is not JSON") from exc
        if not isinstance(data, dict):
            raise ValidationError("Callback body must be a JSON object")
        return CallbackEvent.from_payload(data)
