"""Turns a notification job into an email and hands it to the transport."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Sequence

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from checkout.errors import UnknownJobTypeError
from checkout.models.job import JobType
from checkout.schemas import NotificationPayload, parse_payload

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"

SUBJECTS = {
    JobType.PAYMENT_CONFIRMATION: "Betalningsbekräftelse {payment_reference}",
    JobType.BOOKING_CONFIRMATION: "Bokningsbekräftelse - {course_title}",
    JobType.GIFT_CARD_DELIVERY: "Ditt presentkort från Studio Clay",
    JobType.ORDER_CONFIRMATION: "Orderbekräftelse {order_reference}",
}


@dataclass(frozen=True)
class Attachment:
    filename: str
    content: bytes
    content_type: str = "text/html"


@dataclass(frozen=True)
class Message:
    to: str
    subject: str
    html: str
    text: str
    attachments: List[Attachment] = field(default_factory=list)


def format_money(amount: int, currency: str = "SEK") -> str:
    return f"{amount // 100}.{amount % 100:02d} {currency}"


def format_date(value: Any) -> str:
    if value is None:
        return ""
    return value.strftime("%Y-%m-%d %H:%M") if hasattr(value, "hour") else value.strftime("%Y-%m-%d")


class MessageRenderer:
    def __init__(self, templates_dir: Path = TEMPLATES_DIR):
        self.env = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            autoescape=select_autoescape(["html"]),
            undefined=StrictUndefined,
        )
        self.env.filters["money"] = format_money
        self.env.filters["date"] = format_date

    def _context(self, payload: NotificationPayload) -> Dict[str, Any]:
        return payload.model_dump()

    def render(
        self,
        job_type: JobType,
        payload: Any,
        attachments: Sequence[Attachment] = (),
    ) -> Message:
        """Build the message for ``job_type``; no I/O besides template loading."""
        try:
            job_type = JobType(job_type)
        except ValueError:
            raise UnknownJobTypeError(f"No template for job type {job_type!r}") from None
        if job_type not in SUBJECTS:
            raise UnknownJobTypeError(f"No template for job type {job_type.value!r}")

        model = parse_payload(job_type, payload)
        context = self._context(model)
        return Message(
            to=model.customer.email,
            subject=SUBJECTS[job_type].format(**context),
            html=self.env.get_template(f"email/{job_type.value}.html").render(**context),
            text=self.env.get_template(f"email/{job_type.value}.txt").render(**context),
            attachments=list(attachments),
        )

    def render_document(self, kind: str, payload: NotificationPayload) -> bytes:
        template = self.env.get_template(f"documents/{kind}.html")
        return template.render(**self._context(payload)).encode("utf-8")


class NotificationDispatcher:
    def __init__(self, renderer: MessageRenderer, transport, documents=None):
        self.renderer = renderer
        self.transport = transport
        self.documents = documents

    async def deliver(self, job_type: JobType, payload: Any) -> Message:
        """Render and send; transport errors propagate to the job queue."""
        model = parse_payload(job_type, payload)
        attachments: List[Attachment] = []
        if self.documents is not None:
            attachments = await self.documents.attachments_for(job_type, model)
        message = self.renderer.render(job_type, model, attachments)
        await self.transport.send(message)
        logging.info(
            "Sent %s for %s to %s (%s attachments)",
            JobType(job_type).value,
            model.payment_reference,
            message.to,
            len(message.attachments),
        )
        return message
