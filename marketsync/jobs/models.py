"""Domain models for marketplace orchestration jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from marketsync.core.errors import ErrorInfo

JobStatus = Literal["pending", "in_progress", "completed", "failed"]
JobKind = Literal["registration", "order_sync", "inventory_sync"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})
ACTIVE_STATUSES: frozenset[str] = frozenset({"pending", "in_progress"})

_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
  "pending": frozenset({"pending", "in_progress", "completed", "failed"}),
  "in_progress": frozenset({"in_progress", "completed", "failed"}),
  "completed": frozenset(),
  "failed": frozenset(),
}


def can_transition(current: str, target: str) -> bool:
  """Return True when a job may move from `current` to `target`."""
  return target in _ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass
class TargetResult:
  """Outcome of one platform inside a job."""

  target: str
  success: bool
  external_id: str | None = None
  error: ErrorInfo | None = None
  needs_retry: bool = False
  needs_manual_mapping: bool = False
  attempts: int = 0
  data: dict[str, Any] | None = None

  def to_dict(self) -> dict[str, Any]:
    payload: dict[str, Any] = {"target": self.target, "success": self.success, "externalId": self.external_id, "needsRetry": self.needs_retry, "needsManualMapping": self.needs_manual_mapping, "attempts": self.attempts}
    if self.error is not None:
      payload["error"] = self.error.to_dict()
    if self.data is not None:
      payload["data"] = self.data
    return payload


@dataclass
class Job:
  """A long-running orchestration job and its per-target results."""

  id: str
  kind: JobKind
  target_identifiers: list[str]
  status: JobStatus
  started_at: datetime
  updated_at: datetime
  completed_at: datetime | None = None
  per_target_results: dict[str, TargetResult] = field(default_factory=dict)
  error: ErrorInfo | None = None
  request: dict[str, Any] | None = None
  parent_job_id: str | None = None
  warnings: list[str] = field(default_factory=list)
  summary: dict[str, Any] | None = None

  @property
  def is_terminal(self) -> bool:
    return self.status in TERMINAL_STATUSES

  def to_dict(self, *, include_request: bool = False) -> dict[str, Any]:
    payload: dict[str, Any] = {
      "id": self.id,
      "kind": self.kind,
      "targets": list(self.target_identifiers),
      "status": self.status,
      "startedAt": self.started_at.isoformat(),
      "updatedAt": self.updated_at.isoformat(),
      "completedAt": self.completed_at.isoformat() if self.completed_at else None,
      "results": {target: result.to_dict() for target, result in self.per_target_results.items()},
      "error": self.error.to_dict() if self.error else None,
      "parentJobId": self.parent_job_id,
      "warnings": list(self.warnings),
      "summary": self.summary,
    }
    if include_request:
      payload["request"] = self.request
    return payload
