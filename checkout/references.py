"""Generators for the human-facing references used across the checkout.

Formats are shared with the storefront and accounting exports, so they must
not drift:

* payment   ``SC-YYYYMMDD-XXXXXX``
* invoice   ``INV-YYMM-XXXX``
* booking   ``BK-YYYYMMDD-XXXXXX``
* order     ``ORD-YYYYMMDD-XXXXXX``
* gift card ``GC-XXXX-XXXX-XXXX``
"""

import re
import uuid
from datetime import datetime
from typing import Optional

from checkout.errors import ValidationError

_REFERENCE_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{5,63}$")


def _random(length: int) -> str:
    return uuid.uuid4().hex[:length].upper()


def _today(now: Optional[datetime]) -> datetime:
    return now or datetime.utcnow()


def generate_payment_reference(now: Optional[datetime] = None) -> str:
    return f"SC-{_today(now):%Y%m%d}-{_random(6)}"


def generate_invoice_number(now: Optional[datetime] = None) -> str:
    return f"INV-{_today(now):%y%m}-{_random(4)}"


def generate_booking_reference(now: Optional[datetime] = None) -> str:
    return f"BK-{_today(now):%Y%m%d}-{_random(6)}"


def generate_order_reference(now: Optional[datetime] = None) -> str:
    return f"ORD-{_today(now):%Y%m%d}-{_random(6)}"


def generate_gift_card_code() -> str:
    return "GC-" + "-".join(_random(4) for _ in range(3))


def validate_client_reference(reference: str) -> str:
    """Accept a caller-chosen idempotency key if it is safe to echo back."""
    reference = reference.strip()
    if not _REFERENCE_PATTERN.match(reference):
        raise ValidationError(
            "reference must be 6-64 characters of letters, digits, '-' or '_'"
        )
    return reference


def format_payer_alias(phone: str) -> str:
    """Normalise a Swedish mobile number to the provider's alias format.

    ``0739000001`` and ``+46 73 900 00 01`` both become ``46739000001``.
    """
    digits = re.sub(r"[^0-9]", "", phone or "")
    if not digits.startswith("0") and not digits.startswith("46"):
        raise ValidationError("Invalid phone number format. Must start with 0 or 46")

    formatted = "46" + digits[1:] if digits.startswith("0") else digits
    if len(formatted) < 11 or len(formatted) > 12:
        raise ValidationError(
            "Invalid phone number length. Must be 11-12 digits including country code"
        )
    return formatted


def mask_phone(phone: Optional[str]) -> str:
    if not phone:
        return "-"
    return f"{phone[:4]}****{phone[-2:]}"
