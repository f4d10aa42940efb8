from fastapi import APIRouter, Depends, Query

from checkout.api.deps import get_services, require_operator
from checkout.container import Services
from checkout.schemas import JobRead, JobStatusReport

router = APIRouter(prefix="/api/jobs", tags=["jobs"], dependencies=[Depends(require_operator)])


@router.get("/status", response_model=JobStatusReport)
async def job_status(
    limit: int = Query(20, ge=1, le=200),
    services: Services = Depends(get_services),
):
    """Counts per status and the most recent jobs, for manual triage."""
    counts, recent = await services.queue.stats(limit)
    return JobStatusReport(counts=counts, recent=[JobRead.model_validate(j) for j in recent])


@router.post("/process")
async def process_jobs(services: Services = Depends(get_services)):
    """Run one worker batch now; for cron-driven deployments."""
    report = await services.worker.run_once()
    return {
        "claimed": report.claimed,
        "completed": report.completed,
        "retried": report.retried,
        "failed": report.failed,
        "recovered": report.recovered,
    }


@router.post("/{job_id}/requeue", response_model=JobRead)
async def requeue_job(job_id: str, services: Services = Depends(get_services)):
    return await services.queue.requeue(job_id)
