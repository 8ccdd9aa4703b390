"""Storage interfaces for orchestration jobs."""

from __future__ import annotations

import copy
import threading
from collections.abc import Iterable
from datetime import datetime
from typing import Protocol

from marketsync.jobs.models import Job


class JobStore(Protocol):
  """Storage contract for job records; implementations must return independent copies."""

  async def put(self, job: Job) -> None:
    """Insert or replace a job."""

  async def get(self, job_id: str) -> Job | None:
    """Fetch a job by identifier."""

  async def list(self) -> list[Job]:
    """Return all stored jobs."""

  async def delete_many(self, job_ids: Iterable[str]) -> int:
    """Remove jobs and return how many existed."""


class InMemoryJobStore:
  """Mutex-guarded map of jobs; readers get deep copies so they never see partial updates."""

  def __init__(self) -> None:
    self._jobs: dict[str, Job] = {}
    self._lock = threading.Lock()

  def __len__(self) -> int:
    with self._lock:
      return len(self._jobs)

  async def put(self, job: Job) -> None:
    snapshot = copy.deepcopy(job)
    with self._lock:
      self._jobs[job.id] = snapshot

  async def get(self, job_id: str) -> Job | None:
    with self._lock:
      job = self._jobs.get(job_id)
      return copy.deepcopy(job) if job is not None else None

  async def list(self) -> list[Job]:
    with self._lock:
      return [copy.deepcopy(job) for job in self._jobs.values()]

  async def delete_many(self, job_ids: Iterable[str]) -> int:
    removed = 0
    with self._lock:
      for job_id in job_ids:
        if self._jobs.pop(job_id, None) is not None:
          removed += 1
    return removed


def reference_time(job: Job) -> datetime:
  """Timestamp used for retention: completion time for finished jobs, last update otherwise."""
  return job.completed_at or job.updated_at
