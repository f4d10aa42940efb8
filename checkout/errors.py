"""Error taxonomy for the payment lifecycle.

Only ``ValidationError``, ``NotFoundError``, ``GatewayError``,
``SignatureError`` and the 409 conflicts ever reach an HTTP client. Duplicate
references and invalid transitions are absorbed by the callers that raise them, and
``TransportError`` is consumed by the job queue retry policy.
"""

from typing import Any, Optional


class CheckoutError(Exception):
    """Base class for every domain error raised by the checkout service."""


class ValidationError(CheckoutError):
    """Malformed submission; rejected before any state is written."""


class NotFoundError(CheckoutError):
    pass


class DuplicateReferenceError(CheckoutError):
    """A payment with this reference already exists.

    Callers treat this as "already accepted" and continue with ``existing``.
    """

    def __init__(self, reference: str, existing: Any = None):
        super().__init__(f"Payment reference {reference!r} already exists")
        self.reference = reference
        self.existing = existing


class InvalidTransitionError(CheckoutError):
    def __init__(self, payment_id: str, current: Any, requested: Any):
        super().__init__(
            f"Payment {payment_id}: transition {current} -> {requested} is not allowed"
        )
        self.payment_id = payment_id
        self.current = current
        self.requested = requested


class GatewayError(CheckoutError):
    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retryable: bool = False,
        details: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable
        self.details = details


class AlreadyStagedError(CheckoutError):
    """A push payment already has its order details staged."""


class SignatureError(CheckoutError):
    """Callback signature missing or invalid."""


class FulfillmentError(CheckoutError):
    """Side effects failed after a payment became PAID.

    The payment keeps its PAID status; an operator re-runs fulfillment.
    """


class TransportError(CheckoutError):
    """Mail transport refused or timed out; retried by the job queue."""


class UnknownJobTypeError(CheckoutError):
    pass
