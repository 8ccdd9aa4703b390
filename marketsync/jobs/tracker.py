"""Job registry: creation, status transitions, result attachment and retention sweeps."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from marketsync.core.errors import ErrorInfo, JobNotFoundError, JobStateError
from marketsync.jobs.models import ACTIVE_STATUSES, TERMINAL_STATUSES, Job, JobKind, JobStatus, TargetResult, can_transition
from marketsync.jobs.store import InMemoryJobStore, JobStore, reference_time
from marketsync.utils.ids import generate_job_id

logger = logging.getLogger(__name__)

_JOB_ID_PREFIX: dict[str, str] = {"registration": "register", "order_sync": "orders", "inventory_sync": "inventory"}


def _utcnow() -> datetime:
  return datetime.now(UTC)


class JobTracker:
  """Owns job state; terminal jobs are write-once."""

  def __init__(self, store: JobStore | None = None, *, clock: Callable[[], datetime] = _utcnow) -> None:
    self._store = store or InMemoryJobStore()
    self._clock = clock
    self._sweeper: asyncio.Task[None] | None = None

  @property
  def store(self) -> JobStore:
    return self._store

  async def create_job(self, kind: JobKind, targets: list[str], *, request: dict[str, Any] | None = None, parent_job_id: str | None = None) -> str:
    """Register a pending job for `targets` and return its id."""
    now = self._clock()
    job = Job(id=generate_job_id(_JOB_ID_PREFIX.get(kind, kind)), kind=kind, target_identifiers=list(targets), status="pending", started_at=now, updated_at=now, request=request, parent_job_id=parent_job_id)
    await self._store.put(job)
    logger.info("Job created job_id=%s kind=%s targets=%s parent_job_id=%s", job.id, kind, ",".join(targets), parent_job_id)
    return job.id

  async def update_job(
    self,
    job_id: str,
    *,
    status: JobStatus | None = None,
    per_target_results: dict[str, TargetResult] | None = None,
    error: ErrorInfo | None = None,
    warnings: list[str] | None = None,
    summary: dict[str, Any] | None = None,
  ) -> Job:
    """Apply a partial update; raises JobStateError once the job is terminal."""
    job = await self.require_job(job_id)

    if job.is_terminal:
      raise JobStateError(f"Job {job_id} is {job.status} and can no longer change.")

    if status is not None and not can_transition(job.status, status):
      raise JobStateError(f"Job {job_id} cannot move from {job.status} to {status}.")

    now = self._clock()
    if per_target_results is not None:
      job.per_target_results.update(per_target_results)
    if error is not None:
      job.error = error
    if warnings:
      job.warnings.extend(warnings)
    if summary is not None:
      job.summary = summary
    if status is not None and status != job.status:
      logger.info("Job transition job_id=%s %s -> %s", job_id, job.status, status)
      job.status = status
      if status in TERMINAL_STATUSES:
        job.completed_at = now
    job.updated_at = now

    await self._store.put(job)
    return job

  async def attach_result(self, job_id: str, result: TargetResult) -> Job:
    """Record the outcome for a single target."""
    return await self.update_job(job_id, per_target_results={result.target: result})

  async def get_job(self, job_id: str) -> Job | None:
    return await self._store.get(job_id)

  async def require_job(self, job_id: str) -> Job:
    job = await self._store.get(job_id)
    if job is None:
      raise JobNotFoundError(f"Job {job_id} not found.")
    return job

  async def list_active(self, kind: JobKind | None = None) -> list[Job]:
    """Return pending and in-progress jobs, oldest first."""
    jobs = [job for job in await self._store.list() if job.status in ACTIVE_STATUSES and (kind is None or job.kind == kind)]
    return sorted(jobs, key=lambda job: job.started_at)

  async def list_jobs(self, *, status: JobStatus | None = None, kind: JobKind | None = None, page: int = 1, limit: int = 20) -> tuple[list[Job], int]:
    """Return one page of jobs, newest first, with the unpaged total."""
    if page < 1 or limit < 1:
      raise ValueError("page and limit must be positive.")
    jobs = [job for job in await self._store.list() if (status is None or job.status == status) and (kind is None or job.kind == kind)]
    jobs.sort(key=lambda job: job.started_at, reverse=True)
    offset = (page - 1) * limit
    return jobs[offset : offset + limit], len(jobs)

  async def sweep(self, older_than: timedelta) -> int:
    """Delete terminal jobs that finished more than `older_than` ago."""
    cutoff = self._clock() - older_than
    expired = [job.id for job in await self._store.list() if job.is_terminal and reference_time(job) < cutoff]
    if not expired:
      return 0
    removed = await self._store.delete_many(expired)
    logger.info("Swept %d finished jobs older than %s", removed, older_than)
    return removed

  def start_sweeper(self, *, interval_seconds: float, retention: timedelta) -> asyncio.Task[None]:
    """Run sweep() every `interval_seconds` on a background task."""
    if self._sweeper is not None and not self._sweeper.done():
      return self._sweeper
    self._sweeper = asyncio.create_task(self._sweep_loop(interval_seconds, retention), name="marketsync-job-sweeper")
    return self._sweeper

  async def stop_sweeper(self) -> None:
    if self._sweeper is None:
      return
    self._sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
      await self._sweeper
    self._sweeper = None

  async def _sweep_loop(self, interval_seconds: float, retention: timedelta) -> None:
    while True:
      await asyncio.sleep(interval_seconds)
      try:
        await self.sweep(retention)
      except Exception:  # noqa: BLE001
        # Keep the sweeper alive; the next tick retries.
        logger.exception("Job sweep failed")
