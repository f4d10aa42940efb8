"""Wiring shared by the web app and the standalone worker process."""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from checkout.config import Settings
from checkout.db.session import build_engine, build_session_factory
from checkout.services.dispatcher import MessageRenderer, NotificationDispatcher
from checkout.services.documents import DocumentService
from checkout.services.gateway import SwishGateway
from checkout.services.job_queue import JobQueue
from checkout.services.mailer import SmtpTransport
from checkout.services.reconciliation import ReconciliationEngine
from checkout.worker import JobWorker
from telegram_bot.notify import build_alerter


@dataclass
class Services:
    settings: Settings
    session_factory: async_sessionmaker
    engine: Optional[AsyncEngine]
    queue: JobQueue
    gateway: SwishGateway
    documents: DocumentService
    dispatcher: NotificationDispatcher
    reconciler: ReconciliationEngine
    worker: JobWorker
    alerts: object

    async def aclose(self) -> None:
        await self.gateway.aclose()
        # Only dispose an engine this container created
        if self.engine is not None:
            await self.engine.dispose()


def build_services(
    settings: Settings,
    *,
    session_factory: Optional[async_sessionmaker] = None,
    gateway=None,
    transport=None,
    alerts=None,
) -> Services:
    engine = None
    if session_factory is None:
        engine = build_engine(settings.database_url)
        session_factory = build_session_factory(engine)

    alerts = alerts or build_alerter(settings)
    gateway = gateway or SwishGateway(settings)
    renderer = MessageRenderer()
    documents = DocumentService(session_factory, renderer)
    dispatcher = NotificationDispatcher(renderer, transport or SmtpTransport(settings), documents)
    queue = JobQueue(session_factory, settings)
    reconciler = ReconciliationEngine(session_factory, settings, queue, gateway, alerts)
    worker = JobWorker(queue, dispatcher, settings, alerts)
    return Services(
        settings=settings,
        session_factory=session_factory,
        engine=engine,
        queue=queue,
        gateway=gateway,
        documents=documents,
        dispatcher=dispatcher,
        reconciler=reconciler,
        worker=worker,
        alerts=alerts,
    )
