"""Payment state machine and its side effects.

A payment leaves CREATED exactly once. The transition itself is committed
on its own; fulfillment (entity, counters, notification job) runs in a
second transaction so that a failure there can never undo a PAID status.
Such failures are logged, sent to operators, and can be retried with
:meth:`ReconciliationEngine.reconcile_paid`.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkout.config import Settings
from checkout.errors import (
    CheckoutError,
    DuplicateReferenceError,
    FulfillmentError,
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from checkout.models.course import CourseInstance
from checkout.models.job import JobType, NotificationJob
from checkout.models.payment import Payment, PaymentMethod, PaymentStatus, ProductType
from checkout.models.product import Product
from checkout.references import (
    format_payer_alias,
    generate_invoice_number,
    generate_payment_reference,
    mask_phone,
    validate_client_reference,
)
from checkout.schemas import (
    CustomerSnapshot,
    InvoiceSnapshot,
    OrderSubmission,
    PaymentConfirmationPayload,
)
from checkout.services import fulfillment, payment_store, staging
from checkout.services.fulfillment import FulfillmentCreated, FulfillmentRequest
from checkout.services.gateway import CallbackEvent
from checkout.services.job_queue import JobQueue

_STATUS_MAP = {
    "PAID": PaymentStatus.PAID,
    "DECLINED": PaymentStatus.DECLINED,
    "CANCELLED": PaymentStatus.DECLINED,
    "ERROR": PaymentStatus.ERROR,
}
# Upstream statuses that mean "not settled yet" when polling
_OPEN_STATUSES = {"CREATED"}


def map_external_status(external: Optional[str]) -> PaymentStatus:
    """Translate a provider status; anything unrecognised becomes ERROR."""
    status = _STATUS_MAP.get((external or "").strip().upper())
    if status is None:
        logging.warning("Unrecognised gateway status %r mapped to ERROR", external)
        return PaymentStatus.ERROR
    return status


@dataclass(frozen=True)
class SubmissionResult:
    reference: str
    status: PaymentStatus
    duplicate: bool = False


@dataclass(frozen=True)
class ReconcileOutcome:
    reference: str
    status: Optional[PaymentStatus]
    applied: bool
    fulfillment_reference: Optional[str] = None
    job_id: Optional[str] = None


class ReconciliationEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        settings: Settings,
        queue: JobQueue,
        gateway=None,
        alerts=None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.queue = queue
        self.gateway = gateway
        self.alerts = alerts

    async def _alert(self, text: str) -> None:
        if self.alerts is not None:
            await self.alerts.alert(text)

    # ---------- order submission ----------

    async def _check_product(self, db: AsyncSession, order: OrderSubmission) -> None:
        if order.product_type is ProductType.COURSE:
            if await db.get(CourseInstance, order.product_id) is None:
                raise ValidationError(f"Course {order.product_id} does not exist")
        elif order.product_type is ProductType.ART_PRODUCT:
            if await db.get(Product, order.product_id) is None:
                raise ValidationError(f"Product {order.product_id} does not exist")

    def _customer(self, order: OrderSubmission) -> CustomerSnapshot:
        info = order.customer_info
        return CustomerSnapshot(name=info.full_name, email=info.email, phone=info.phone)

    def _details(self, order: OrderSubmission) -> Dict[str, Any]:
        if order.gift_card is None:
            return {}
        return order.gift_card.model_dump(exclude_none=True)

    async def submit_order(self, order: OrderSubmission) -> SubmissionResult:
        if order.reference:
            reference = validate_client_reference(order.reference)
        else:
            reference = generate_payment_reference()

        if order.payment_method is PaymentMethod.INVOICE:
            return await self._submit_invoice(reference, order)
        return await self._submit_push(reference, order)

    async def _submit_push(self, reference: str, order: OrderSubmission) -> SubmissionResult:
        if self.gateway is None:
            raise GatewayError("Push payments are not configured")
        payer_alias = format_payer_alias(order.payer_phone or order.customer_info.phone)
        customer = self._customer(order)

        async with self.session_factory() as db:
            await self._check_product(db, order)
            try:
                payment = await payment_store.create_payment(
                    db,
                    reference=reference,
                    method=PaymentMethod.PUSH,
                    product_type=order.product_type,
                    product_id=order.product_id,
                    amount=order.amount,
                    metadata={
                        "payer_alias": payer_alias,
                        "gateway_initiating_at": datetime.utcnow().isoformat(),
                    },
                )
            except DuplicateReferenceError as dup:
                return await self._duplicate(dup.existing)
            await staging.stage(
                db,
                payment.id,
                staging.StagedOrder(
                    customer_name=customer.name,
                    customer_email=customer.email,
                    customer_phone=customer.phone,
                    quantity=order.quantity,
                    note=order.customer_info.note,
                    details=self._details(order),
                ),
            )
            await db.commit()

        logging.info(
            "Push payment %s created: %s %s, payer %s",
            reference,
            order.product_type.value,
            order.product_id,
            mask_phone(payer_alias),
        )
        await self._initiate(payment)
        return SubmissionResult(reference, PaymentStatus.CREATED)

    async def _initiate(self, payment: Payment) -> None:
        """Ask the provider to start the payment; local status is untouched."""
        try:
            handle = await self.gateway.initiate(
                payment.reference,
                payment.meta["payer_alias"],
                payment.amount,
                f"Studio Clay {payment.reference}",
            )
        except GatewayError:
            async with self.session_factory() as db:
                await payment_store.merge_metadata(db, payment.id, {"gateway_initiating_at": None})
                await db.commit()
            raise
        async with self.session_factory() as db:
            await payment_store.merge_metadata(
                db,
                payment.id,
                {"gateway_request_id": handle.request_id, "gateway_location": handle.location},
            )
            await db.commit()

    async def _duplicate(self, existing: Payment) -> SubmissionResult:
        logging.info(
            "Duplicate submission for %s, current status %s",
            existing.reference,
            existing.status.value,
        )
        if (
            existing.method is PaymentMethod.PUSH
            and existing.status is PaymentStatus.CREATED
            and not (existing.meta or {}).get("gateway_request_id")
        ):
            # The first attempt never reached the provider, or is still in flight
            stale_before = datetime.utcnow() - timedelta(seconds=self.settings.gateway_timeout)
            async with self.session_factory() as db:
                claimed = await payment_store.claim_initiation(db, existing.id, stale_before)
                await db.commit()
            if claimed:
                await self._initiate(existing)
            else:
                logging.info("Push request for %s is already in flight", existing.reference)
        return SubmissionResult(existing.reference, existing.status, duplicate=True)

    async def _submit_invoice(self, reference: str, order: OrderSubmission) -> SubmissionResult:
        details = order.invoice_details
        invoice = InvoiceSnapshot(
            invoice_number=generate_invoice_number(),
            due_date=(datetime.utcnow() + timedelta(days=self.settings.invoice_due_days)).date(),
            address=details.address,
            postal_code=details.postal_code,
            city=details.city,
            reference=details.reference,
        )
        customer = self._customer(order)
        metadata = {
            "customer": customer.model_dump(),
            "quantity": order.quantity,
            "note": order.customer_info.note,
            "details": self._details(order),
            "invoice": invoice.model_dump(mode="json"),
        }

        async with self.session_factory() as db:
            await self._check_product(db, order)
            try:
                payment = await payment_store.create_payment(
                    db,
                    reference=reference,
                    method=PaymentMethod.INVOICE,
                    product_type=order.product_type,
                    product_id=order.product_id,
                    amount=order.amount,
                    metadata=metadata,
                    status=PaymentStatus.PAID,
                )
            except DuplicateReferenceError as dup:
                return await self._duplicate(dup.existing)
            await db.commit()

        logging.info("Invoice payment %s created as PAID, invoice %s", reference, invoice.invoice_number)
        await self._fulfill(payment)
        return SubmissionResult(reference, PaymentStatus.PAID)

    # ---------- status transitions ----------

    async def handle_callback(self, event: CallbackEvent) -> ReconcileOutcome:
        async with self.session_factory() as db:
            payment = await payment_store.find_by_reference(db, event.reference)
        if payment is None:
            logging.warning("Callback for unknown payment reference %s acknowledged", event.reference)
            return ReconcileOutcome(event.reference, None, applied=False)

        extra = {
            "gateway_status": event.status,
            "gateway_payment_id": event.gateway_payment_id,
        }
        if event.error_code:
            extra["gateway_error"] = {"code": event.error_code, "message": event.error_message}
        return await self.apply_status(event.reference, map_external_status(event.status), extra)

    async def apply_status(
        self,
        reference: str,
        new_status: PaymentStatus,
        extra_metadata: Optional[Dict[str, Any]] = None,
    ) -> ReconcileOutcome:
        """Move a CREATED payment to ``new_status``; a no-op once terminal."""
        async with self.session_factory() as db:
            payment = await payment_store.get_by_reference(db, reference)
            if payment.is_terminal:
                logging.info(
                    "Payment %s already %s; %s ignored",
                    reference,
                    payment.status.value,
                    new_status.value,
                )
                return ReconcileOutcome(reference, payment.status, applied=False)

            metadata = dict(payment.meta or {})
            metadata.update({k: v for k, v in (extra_metadata or {}).items() if v is not None})
            try:
                payment = await payment_store.update_status(
                    db, payment.id, new_status, metadata=metadata
                )
            except InvalidTransitionError as exc:
                await db.rollback()
                logging.info("Concurrent update on %s: %s", reference, exc)
                return ReconcileOutcome(reference, exc.current, applied=False)

            if new_status is not PaymentStatus.PAID:
                await staging.discard(db, payment.id)
            await db.commit()

        logging.info("Payment %s -> %s", reference, new_status.value)
        if new_status is not PaymentStatus.PAID:
            return ReconcileOutcome(reference, new_status, applied=True)

        created = await self._fulfill(payment)
        return self._outcome(payment, created)

    def _outcome(self, payment: Payment, created: Optional[FulfillmentCreated]) -> ReconcileOutcome:
        return ReconcileOutcome(
            payment.reference,
            PaymentStatus.PAID,
            applied=True,
            fulfillment_reference=created.reference if created else None,
            job_id=created.job_id if created else None,
        )

    # ---------- fulfillment ----------

    async def _request_for(self, db: AsyncSession, payment: Payment) -> FulfillmentRequest:
        if payment.method is PaymentMethod.INVOICE:
            meta = payment.meta or {}
            try:
                return FulfillmentRequest(
                    payment=payment,
                    customer=CustomerSnapshot.model_validate(meta["customer"]),
                    quantity=int(meta.get("quantity") or 1),
                    note=meta.get("note"),
                    details=dict(meta.get("details") or {}),
                    invoice=InvoiceSnapshot.model_validate(meta["invoice"]) if meta.get("invoice") else None,
                )
            except (KeyError, ValueError) as exc:
                raise FulfillmentError(f"Invoice payment {payment.reference} has no order snapshot") from exc

        try:
            staged = await staging.consume(db, payment.id)
        except NotFoundError as exc:
            raise FulfillmentError(f"No staged order for payment {payment.reference}") from exc
        return FulfillmentRequest(
            payment=payment,
            customer=CustomerSnapshot(
                name=staged.customer_name,
                email=staged.customer_email,
                phone=staged.customer_phone,
            ),
            quantity=staged.quantity,
            note=staged.note,
            details=staged.details,
        )

    async def _fulfill(self, payment: Payment) -> Optional[FulfillmentCreated]:
        """Create the fulfillment entity and its notification job, once.

        Returns ``None`` if fulfillment already exists or failed; a failure
        leaves the payment PAID and the staged order in place.
        """
        try:
            async with self.session_factory() as db:
                payment = await payment_store.get_by_reference(db, payment.reference)
                if payment.fulfillment_id is not None:
                    return None
                request = await self._request_for(db, payment)
                created = await fulfillment.create_fulfillment(db, self.settings, request)
                if not await payment_store.link_fulfillment(db, payment.id, created.entity_id):
                    raise FulfillmentError(f"Payment {payment.reference} was fulfilled concurrently")
                job = await self.queue.enqueue(
                    db, created.job_type, created.payload, payment_reference=payment.reference
                )
                await staging.discard(db, payment.id)
                await db.commit()
        except (CheckoutError, SQLAlchemyError) as exc:
            logging.exception("Fulfillment failed for PAID payment %s", payment.reference)
            await self._alert(
                f"Payment {payment.reference} is PAID but fulfillment failed: {exc}. "
                "Run reconcile once the cause is fixed."
            )
            return None

        logging.info(
            "Payment %s fulfilled: %s %s, job %s",
            payment.reference,
            created.product_type.value,
            created.reference,
            job.id,
        )
        created = replace(created, job_id=job.id)
        for warning in created.warnings:
            await self._alert(warning)
        return created

    async def reconcile_paid(self, reference: str) -> ReconcileOutcome:
        """Operator action: re-run fulfillment for a PAID payment that has none."""
        async with self.session_factory() as db:
            payment = await payment_store.get_by_reference(db, reference)
        if payment.status is not PaymentStatus.PAID:
            raise ValidationError(f"Payment {reference} is {payment.status.value}, not PAID")
        if payment.fulfillment_id is not None:
            return ReconcileOutcome(reference, payment.status, applied=False)

        created = await self._fulfill(payment)
        if created is None:
            raise FulfillmentError(f"Fulfillment for {reference} failed again; see logs")
        return self._outcome(payment, created)

    # ---------- gateway driven operations ----------

    async def get_payment(self, reference: str) -> Payment:
        async with self.session_factory() as db:
            return await payment_store.get_by_reference(db, reference)

    async def refresh_from_gateway(self, reference: str) -> Payment:
        """Poll the provider for a payment whose callback may have been lost."""
        async with self.session_factory() as db:
            payment = await payment_store.get_by_reference(db, reference)
        request_id = (payment.meta or {}).get("gateway_request_id")
        if payment.is_terminal or not request_id or self.gateway is None:
            return payment

        data = await self.gateway.fetch_status(request_id)
        upstream = str(data.get("status") or "").upper()
        if upstream in _OPEN_STATUSES:
            return payment

        await self.apply_status(
            reference,
            map_external_status(upstream),
            {"gateway_status": upstream, "gateway_payment_id": data.get("paymentReference")},
        )
        async with self.session_factory() as db:
            return await payment_store.get_by_reference(db, reference)

    async def cancel_payment(self, reference: str, force: bool = False) -> ReconcileOutcome:
        """Cancel upstream, then decline locally.

        If the upstream cancel fails the local status is kept unless
        ``force`` is set by an operator who knows the payment is dead.
        """
        async with self.session_factory() as db:
            payment = await payment_store.get_by_reference(db, reference)
        if payment.is_terminal:
            return ReconcileOutcome(reference, payment.status, applied=False)

        request_id = (payment.meta or {}).get("gateway_request_id")
        if request_id and self.gateway is not None:
            try:
                await self.gateway.cancel(request_id)
            except GatewayError:
                if not force:
                    raise
                logging.warning("Upstream cancel of %s failed; declining locally (forced)", reference)

        return await self.apply_status(
            reference, PaymentStatus.DECLINED, {"cancelled_at": datetime.utcnow().isoformat()}
        )

    # ---------- receipts ----------

    async def resend_receipt(self, reference: str) -> NotificationJob:
        """Enqueue a payment_confirmation for an already fulfilled payment."""
        async with self.session_factory() as db:
            payment = await payment_store.get_by_reference(db, reference)
            if payment.status is not PaymentStatus.PAID or payment.fulfillment_id is None:
                raise ValidationError(f"Payment {reference} has no completed fulfillment")
            entity = await fulfillment.load_fulfillment(db, payment)
            if entity is None:
                raise NotFoundError(f"Fulfillment for payment {reference} not found")

            if payment.product_type is ProductType.COURSE:
                course = await db.get(CourseInstance, entity.course_id)
                title = course.title if course else "Course"
                customer = CustomerSnapshot(
                    name=entity.customer_name, email=entity.customer_email, phone=entity.customer_phone
                )
                fulfillment_reference = entity.reference
            elif payment.product_type is ProductType.GIFT_CARD:
                title = "Gift card"
                customer = CustomerSnapshot(
                    name=entity.sender_name, email=entity.sender_email, phone=entity.sender_phone
                )
                fulfillment_reference = entity.code
            else:
                product = await db.get(Product, entity.product_id)
                title = product.title if product else "Product"
                customer = CustomerSnapshot(
                    name=entity.customer_name, email=entity.customer_email, phone=entity.customer_phone
                )
                fulfillment_reference = entity.order_reference

            invoice = (payment.meta or {}).get("invoice")
            payload = PaymentConfirmationPayload(
                payment_reference=payment.reference,
                payment_method=payment.method,
                amount=payment.amount,
                currency=self.settings.currency,
                customer=customer,
                invoice=InvoiceSnapshot.model_validate(invoice) if invoice else None,
                product_type=payment.product_type,
                product_title=title,
                fulfillment_reference=fulfillment_reference,
            )
            job = await self.queue.enqueue(
                db, JobType.PAYMENT_CONFIRMATION, payload, payment_reference=reference
            )
            await db.commit()
        logging.info("Receipt for %s queued as job %s", reference, job.id)
        return job
