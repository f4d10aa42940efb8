"""Background delivery of notification jobs.

Run standalone with ``python -m checkout.worker``; the web app also starts
one in-process unless ``RUN_JOB_WORKER=false``. Any number of workers may
share one database.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from checkout.config import Settings
from checkout.errors import TransportError, UnknownJobTypeError, ValidationError
from checkout.models.job import JobStatus, NotificationJob
from checkout.services.dispatcher import NotificationDispatcher
from checkout.services.job_queue import JobQueue


@dataclass
class BatchReport:
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    recovered: int = 0


class JobWorker:
    def __init__(
        self,
        queue: JobQueue,
        dispatcher: NotificationDispatcher,
        settings: Settings,
        alerts=None,
    ):
        self.queue = queue
        self.dispatcher = dispatcher
        self.settings = settings
        self.alerts = alerts

    async def _alert_failed(self, job: NotificationJob) -> None:
        if self.alerts is not None:
            await self.alerts.alert(
                f"Notification job {job.id} ({job.job_type.value}) for payment "
                f"{job.payment_reference} FAILED: {job.last_error}"
            )

    async def _process(self, job: NotificationJob, now: Optional[datetime], report: BatchReport) -> None:
        retryable = True
        try:
            await asyncio.wait_for(
                self.dispatcher.deliver(job.job_type, job.payload),
                timeout=self.settings.job_delivery_timeout,
            )
        except (UnknownJobTypeError, ValidationError) as exc:
            error, retryable = f"{type(exc).__name__}: {exc}", False
        except asyncio.TimeoutError:
            error = f"delivery timed out after {self.settings.job_delivery_timeout}s"
        except TransportError as exc:
            error = str(exc)
        except Exception as exc:
            logging.exception("Unexpected error delivering job %s", job.id)
            error = f"{type(exc).__name__}: {exc}"
        else:
            if await self.queue.complete(job, now):
                report.completed += 1
            return

        outcome = await self.queue.record_failure(job, error, retryable=retryable, now=now)
        if outcome is None:
            return
        if outcome.status is JobStatus.FAILED:
            report.failed += 1
            await self._alert_failed(job)
        else:
            report.retried += 1

    async def run_once(self, now: Optional[datetime] = None) -> BatchReport:
        report = BatchReport()
        for job in await self.queue.recover_stale(now):
            report.recovered += 1
            if job.status is JobStatus.FAILED:
                await self._alert_failed(job)

        jobs = await self.queue.claim_batch(now=now)
        report.claimed = len(jobs)
        for job in jobs:
            await self._process(job, now, report)

        if report.claimed or report.recovered:
            logging.info(
                "Job batch: claimed=%s completed=%s retried=%s failed=%s recovered=%s",
                report.claimed,
                report.completed,
                report.retried,
                report.failed,
                report.recovered,
            )
        return report

    async def run(self, stop: asyncio.Event) -> None:
        logging.info("Job worker started, polling every %ss", self.settings.job_poll_interval)
        while not stop.is_set():
            try:
                await self.run_once()
            except Exception:
                logging.exception("Job worker batch failed; retrying next poll")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.settings.job_poll_interval)
            except asyncio.TimeoutError:
                pass
        logging.info("Job worker stopped")


async def main() -> None:
    from checkout.container import build_services
    from checkout.config import configure_logging

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    services = build_services(settings)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    try:
        await services.worker.run(stop)
    finally:
        await services.aclose()


if __name__ == "__main__":
    asyncio.run(main())
