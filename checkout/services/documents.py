"""Generated attachments (invoices, gift cards), stored once and served later."""

import logging
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from checkout.errors import NotFoundError
from checkout.models.document import StoredDocument
from checkout.models.job import JobType
from checkout.schemas import NotificationPayload
from checkout.services.dispatcher import Attachment, MessageRenderer

HTML = "text/html"


class DocumentService:
    def __init__(self, session_factory: async_sessionmaker, renderer: MessageRenderer):
        self.session_factory = session_factory
        self.renderer = renderer

    async def _by_key(self, db, key: str):
        result = await db.execute(select(StoredDocument).filter_by(key=key))
        return result.scalars().first()

    async def ensure(
        self,
        key: str,
        kind: str,
        filename: str,
        build: Callable[[], bytes],
        payment_reference: Optional[str] = None,
    ) -> StoredDocument:
        """Return the document stored under ``key``, creating it on first use.

        A retried job therefore attaches the same invoice it generated the
        first time instead of a fresh copy.
        """
        async with self.session_factory() as db:
            existing = await self._by_key(db, key)
            if existing is not None:
                return existing

            document = StoredDocument(
                key=key,
                kind=kind,
                filename=filename,
                content_type=HTML,
                content=build(),
                payment_reference=payment_reference,
            )
            db.add(document)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                existing = await self._by_key(db, key)
                if existing is None:
                    raise
                return existing
        logging.info("Stored %s document %s (%s)", kind, key, document.id)
        return document

    async def attachments_for(
        self, job_type: JobType, payload: NotificationPayload
    ) -> List[Attachment]:
        documents: List[StoredDocument] = []
        if payload.invoice is not None:
            number = payload.invoice.invoice_number
            documents.append(
                await self.ensure(
                    f"invoice:{payload.payment_reference}",
                    "invoice",
                    f"faktura-{number}.html",
                    lambda: self.renderer.render_document("invoice", payload),
                    payload.payment_reference,
                )
            )
        if JobType(job_type) is JobType.GIFT_CARD_DELIVERY:
            code = payload.gift_card_code
            documents.append(
                await self.ensure(
                    f"gift_card:{code}",
                    "gift_card",
                    f"presentkort-{code}.html",
                    lambda: self.renderer.render_document("gift_card", payload),
                    payload.payment_reference,
                )
            )
        return [Attachment(d.filename, d.content, d.content_type) for d in documents]

    async def get(self, document_id: str) -> StoredDocument:
        async with self.session_factory() as db:
            document = await db.get(StoredDocument, document_id)
        if document is None:
            raise NotFoundError(f"Document {document_id} not found")
        return document

    async def list_for_payment(self, payment_reference: str) -> List[StoredDocument]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(StoredDocument)
                .filter_by(payment_reference=payment_reference)
                .order_by(StoredDocument.created_at)
            )
            return list(result.scalars().all())
