import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from checkout.api.deps import get_services, require_operator
from checkout.container import Services
from checkout.errors import SignatureError
from checkout.schemas import JobRead, OrderSubmission, PaymentRead, SubmissionResponse

router = APIRouter(prefix="/api/payments", tags=["payments"])


def _outcome_body(outcome) -> dict:
    return {
        "reference": outcome.reference,
        "status": outcome.status.value if outcome.status else None,
        "applied": outcome.applied,
        "fulfillmentReference": outcome.fulfillment_reference,
        "jobId": outcome.job_id,
    }


# ---------- order submission ----------
@router.post("", response_model=SubmissionResponse, status_code=201)
async def submit_order(
    order: OrderSubmission,
    response: Response,
    services: Services = Depends(get_services),
):
    """Create a payment for a course, gift card or art product.

    A repeated ``reference`` returns the original payment's current status
    with ``duplicate: true`` and HTTP 200 instead of creating a second one.
    """
    result = await services.reconciler.submit_order(order)
    if result.duplicate:
        response.status_code = 200
    return SubmissionResponse(
        reference=result.reference, status=result.status, duplicate=result.duplicate
    )


# ---------- provider callback ----------
@router.post("/swish/callback")
async def swish_callback(
    request: Request,
    services: Services = Depends(get_services),
    swish_signature: Optional[str] = Header(None),
    signature: Optional[str] = Header(None),
):
    """Answers 200 for every verified callback, whatever the payment outcome.

    Only a bad signature is rejected; the provider would otherwise keep
    retrying callbacks we can never accept.
    """
    raw = await request.body()
    try:
        event = services.gateway.verify_callback(raw, swish_signature or signature)
    except SignatureError as exc:
        client = request.client.host if request.client else "unknown"
        logging.warning("SECURITY: rejected Swish callback from %s: %s", client, exc)
        await services.alerts.alert(f"Rejected Swish callback from {client}: {exc}")
        raise

    logging.info("Swish callback for %s: %s", event.reference, event.status)
    outcome = await services.reconciler.handle_callback(event)
    return {"received": True, **_outcome_body(outcome)}


# ---------- status / cancel ----------
@router.get("/{reference}", response_model=PaymentRead)
async def get_payment(
    reference: str,
    refresh: bool = Query(False, description="Poll the provider if still CREATED"),
    services: Services = Depends(get_services),
):
    if refresh:
        return await services.reconciler.refresh_from_gateway(reference)
    return await services.reconciler.get_payment(reference)


@router.post("/{reference}/cancel")
async def cancel_payment(
    reference: str,
    force: bool = Query(False),
    services: Services = Depends(get_services),
    x_operator_token: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
):
    if force:
        # Forcing a local decline is an operator decision
        require_operator(services, x_operator_token, token)
    outcome = await services.reconciler.cancel_payment(reference, force=force)
    return _outcome_body(outcome)


# ---------- operator actions ----------
@router.post("/{reference}/reconcile", dependencies=[Depends(require_operator)])
async def reconcile_payment(reference: str, services: Services = Depends(get_services)):
    outcome = await services.reconciler.reconcile_paid(reference)
    return _outcome_body(outcome)


@router.post("/{reference}/resend", response_model=JobRead, dependencies=[Depends(require_operator)])
async def resend_receipt(reference: str, services: Services = Depends(get_services)):
    return await services.reconciler.resend_receipt(reference)
