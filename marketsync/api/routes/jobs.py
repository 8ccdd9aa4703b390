import logging
from typing import Literal

from fastapi import APIRouter, Depends, Query

from marketsync.api import envelope
from marketsync.api.deps import enforce_http_rate_limit, get_job_tracker, get_orchestrator
from marketsync.core.json import MarketSyncJSONResponse
from marketsync.jobs.tracker import JobTracker
from marketsync.services.registration import RegistrationOrchestrator

router = APIRouter(dependencies=[Depends(enforce_http_rate_limit)])
logger = logging.getLogger("marketsync.api.routes.jobs")


@router.get("")
async def list_jobs(  # noqa: B008
  status: Literal["pending", "in_progress", "completed", "failed"] | None = None,
  kind: Literal["registration", "order_sync", "inventory_sync"] | None = None,
  page: int = Query(default=1, ge=1),
  limit: int = Query(default=20, ge=1, le=100),
  job_tracker: JobTracker = Depends(get_job_tracker),  # noqa: B008
) -> MarketSyncJSONResponse:
  """Page through jobs, newest first."""
  jobs, total = await job_tracker.list_jobs(status=status, kind=kind, page=page, limit=limit)
  data = {"jobs": [job.to_dict() for job in jobs], "pagination": {"page": page, "limit": limit, "total": total, "totalPages": (total + limit - 1) // limit}}
  return MarketSyncJSONResponse(content=envelope.success(data))


@router.get("/{job_id}")
async def get_job(job_id: str, job_tracker: JobTracker = Depends(get_job_tracker)) -> MarketSyncJSONResponse:  # noqa: B008
  """Fetch a job and its per-platform results."""
  job = await job_tracker.require_job(job_id)
  return MarketSyncJSONResponse(content=envelope.success(job.to_dict()))


@router.post("/{job_id}/retry")
async def retry_job(job_id: str, orchestrator: RegistrationOrchestrator = Depends(get_orchestrator)) -> MarketSyncJSONResponse:  # noqa: B008
  """Re-run the retryable platforms of a finished registration job as a new job."""
  result = await orchestrator.retry_failed_registrations(job_id)
  return MarketSyncJSONResponse(status_code=201, content=envelope.success(result.to_dict(), message=f"Retried {result.success_count + result.failure_count} platforms.", status_code=201))


@router.post("/{job_id}/cancel")
async def cancel_job(  # noqa: B008
  job_id: str,
  orchestrator: RegistrationOrchestrator = Depends(get_orchestrator),  # noqa: B008
  job_tracker: JobTracker = Depends(get_job_tracker),  # noqa: B008
) -> MarketSyncJSONResponse:
  """Cancel a background registration."""
  cancelled = await orchestrator.cancel_job(job_id)
  job = await job_tracker.require_job(job_id)
  return MarketSyncJSONResponse(content=envelope.success(job.to_dict(), message="Job cancelled." if cancelled else "Job had already finished."))
