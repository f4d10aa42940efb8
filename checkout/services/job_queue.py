"""Durable notification job queue.

A job moves PENDING -> PROCESSING -> COMPLETED, or back to PENDING with one
more attempt and a later ``next_attempt_at``, or to FAILED once its retry
budget is spent. Every transition is a conditional UPDATE; PROCESSING rows
additionally carry a ``claim_token`` so that only the worker holding the
current claim can retire them.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkout.config import Settings
from checkout.errors import NotFoundError, ValidationError
from checkout.models.job import JobStatus, JobType, NotificationJob
from checkout.schemas import parse_payload

LEASE_EXPIRED = "worker lease expired"


@dataclass(frozen=True)
class FailureResult:
    status: JobStatus
    attempts: int
    next_attempt_at: Optional[datetime] = None


class JobQueue:
    def __init__(self, session_factory: async_sessionmaker, settings: Settings):
        self.session_factory = session_factory
        self.settings = settings

    def backoff(self, attempts: int) -> timedelta:
        return timedelta(seconds=self.settings.job_backoff_base * (2 ** attempts))

    async def enqueue(
        self,
        db: AsyncSession,
        job_type: JobType,
        payload: Any,
        *,
        payment_reference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> NotificationJob:
        """Add a job inside the caller's transaction.

        The payload is validated here so a worker never meets a message it
        cannot render because of a missing field.
        """
        now = now or datetime.utcnow()
        model = parse_payload(job_type, payload)
        job = NotificationJob(
            job_type=JobType(job_type),
            payload=model.model_dump(mode="json"),
            status=JobStatus.PENDING,
            attempts=0,
            max_retries=self.settings.job_max_retries,
            next_attempt_at=now,
            payment_reference=payment_reference or model.payment_reference,
            created_at=now,
            updated_at=now,
        )
        db.add(job)
        await db.flush()
        logging.info(
            "Enqueued %s job %s for payment %s",
            job.job_type.value,
            job.id,
            job.payment_reference,
        )
        return job

    async def claim_batch(
        self, limit: Optional[int] = None, now: Optional[datetime] = None
    ) -> List[NotificationJob]:
        """Claim up to ``limit`` due jobs, oldest first.

        Each row is taken with its own ``UPDATE ... WHERE status = PENDING``;
        a row another worker already took simply updates nothing.
        """
        now = now or datetime.utcnow()
        limit = limit or self.settings.job_batch_size

        async with self.session_factory() as db:
            candidates = (
                await db.execute(
                    select(NotificationJob.id)
                    .where(
                        NotificationJob.status == JobStatus.PENDING,
                        NotificationJob.next_attempt_at <= now,
                    )
                    .order_by(NotificationJob.created_at, NotificationJob.id)
                    .limit(limit)
                )
            ).scalars().all()

            claimed: List[str] = []
            for job_id in candidates:
                result = await db.execute(
                    update(NotificationJob)
                    .where(
                        NotificationJob.id == job_id,
                        NotificationJob.status == JobStatus.PENDING,
                    )
                    .values(
                        status=JobStatus.PROCESSING,
                        claim_token=str(uuid.uuid4()),
                        claimed_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed.append(job_id)
            await db.commit()

            if not claimed:
                return []
            jobs = (
                await db.execute(
                    select(NotificationJob)
                    .where(NotificationJob.id.in_(claimed))
                    .order_by(NotificationJob.created_at, NotificationJob.id)
                )
            ).scalars().all()
            return list(jobs)

    def _owned(self, job: NotificationJob):
        return (
            NotificationJob.id == job.id,
            NotificationJob.status == JobStatus.PROCESSING,
            NotificationJob.claim_token == job.claim_token,
        )

    async def complete(self, job: NotificationJob, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                update(NotificationJob)
                .where(*self._owned(job))
                .values(
                    status=JobStatus.COMPLETED,
                    claim_token=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount != 1:
            logging.warning("Job %s was no longer ours when it completed", job.id)
            return False
        job.status = JobStatus.COMPLETED
        return True

    async def record_failure(
        self,
        job: NotificationJob,
        error: str,
        *,
        retryable: bool = True,
        now: Optional[datetime] = None,
    ) -> Optional[FailureResult]:
        """Schedule a retry, or fail the job once ``max_retries`` is reached.

        Returns ``None`` when the claim was lost to another worker.
        """
        now = now or datetime.utcnow()
        async with self.session_factory() as db:
            outcome = await self._fail_owned(db, job, error, retryable, now)
            await db.commit()
        return outcome

    async def _fail_owned(
        self,
        db: AsyncSession,
        job: NotificationJob,
        error: str,
        retryable: bool,
        now: datetime,
    ) -> Optional[FailureResult]:
        if retryable and job.attempts < job.max_retries:
            attempts = job.attempts + 1
            delay = self.backoff(attempts)
            next_attempt_at = now + delay
            if next_attempt_at <= job.next_attempt_at:
                next_attempt_at = job.next_attempt_at + delay
            values: Dict[str, Any] = {
                "status": JobStatus.PENDING,
                "attempts": attempts,
                "next_attempt_at": next_attempt_at,
            }
            outcome = FailureResult(JobStatus.PENDING, attempts, next_attempt_at)
        else:
            values = {"status": JobStatus.FAILED}
            outcome = FailureResult(JobStatus.FAILED, job.attempts)

        values.update(last_error=error[:2000], claim_token=None, claimed_at=None, updated_at=now)
        result = await db.execute(
            update(NotificationJob)
            .where(*self._owned(job))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logging.warning("Job %s was no longer ours when it failed: %s", job.id, error)
            return None

        if outcome.status is JobStatus.PENDING:
            logging.info(
                "Job %s attempt %s failed, retrying at %s: %s",
                job.id,
                outcome.attempts,
                outcome.next_attempt_at,
                error,
            )
        else:
            logging.error("Job %s failed permanently after %s retries: %s", job.id, job.attempts, error)
        job.status = outcome.status
        job.attempts = outcome.attempts
        job.last_error = values["last_error"]
        if outcome.next_attempt_at is not None:
            job.next_attempt_at = outcome.next_attempt_at
        return outcome

    async def recover_stale(self, now: Optional[datetime] = None) -> List[NotificationJob]:
        """Treat jobs stuck in PROCESSING past the lease as failed attempts."""
        now = now or datetime.utcnow()
        deadline = now - timedelta(seconds=self.settings.job_stale_after)
        recovered: List[NotificationJob] = []
        async with self.session_factory() as db:
            stale = (
                await db.execute(
                    select(NotificationJob).where(
                        NotificationJob.status == JobStatus.PROCESSING,
                        NotificationJob.claimed_at < deadline,
                    )
                )
            ).scalars().all()
            for job in stale:
                logging.warning("Job %s has been PROCESSING since %s", job.id, job.claimed_at)
                if await self._fail_owned(db, job, LEASE_EXPIRED, True, now) is not None:
                    recovered.append(job)
            await db.commit()
        return recovered

    async def requeue(self, job_id: str, now: Optional[datetime] = None) -> NotificationJob:
        """Operator action: give a FAILED job a fresh retry budget.

        ``attempts`` keeps counting; the budget grows instead.
        """
        now = now or datetime.utcnow()
        async with self.session_factory() as db:
            job = await db.get(NotificationJob, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            result = await db.execute(
                update(NotificationJob)
                .where(
                    NotificationJob.id == job_id,
                    NotificationJob.status == JobStatus.FAILED,
                )
                .values(
                    status=JobStatus.PENDING,
                    max_retries=NotificationJob.attempts + self.settings.job_max_retries,
                    next_attempt_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ValidationError(f"Job {job_id} is {job.status.value}; only FAILED jobs can be requeued")
            await db.commit()
            await db.refresh(job)
        logging.info("Job %s requeued by operator", job_id)
        return job

    async def get(self, job_id: str) -> NotificationJob:
        async with self.session_factory() as db:
            job = await db.get(NotificationJob, job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    async def stats(self, limit: int = 20) -> Tuple[Dict[str, int], List[NotificationJob]]:
        async with self.session_factory() as db:
            rows = (
                await db.execute(
                    select(NotificationJob.status, func.count()).group_by(NotificationJob.status)
                )
            ).all()
            recent = (
                await db.execute(
                    select(NotificationJob)
                    .order_by(NotificationJob.created_at.desc(), NotificationJob.id)
                    .limit(limit)
                )
            ).scalars().all()

        counts = {status.value: 0 for status in JobStatus}
        for status, count in rows:
            counts[JobStatus(status).value] = count
        return counts, list(recent)
