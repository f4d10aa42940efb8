"""Put FAILED notification jobs back in the queue, optionally for one payment.

    python requeue_failed_jobs.py                 # every FAILED job
    python requeue_failed_jobs.py SC-20250101-AB12CD
"""

import asyncio
import logging
import sys

from sqlalchemy import select

from checkout.config import Settings, configure_logging
from checkout.db.session import build_engine, build_session_factory
from checkout.models.job import JobStatus, NotificationJob
from checkout.services.job_queue import JobQueue


async def main(payment_reference=None) -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    engine = build_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    queue = JobQueue(session_factory, settings)
    try:
        async with session_factory() as db:
            query = select(NotificationJob.id).where(NotificationJob.status == JobStatus.FAILED)
            if payment_reference:
                query = query.where(NotificationJob.payment_reference == payment_reference)
            job_ids = (await db.execute(query)).scalars().all()

        for job_id in job_ids:
            await queue.requeue(job_id)
        logging.info("Requeued %s failed jobs", len(job_ids))
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None))
