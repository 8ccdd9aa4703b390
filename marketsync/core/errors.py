"""Error taxonomy shared by the limiter, retry client, adapters and orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

RETRYABLE_ERROR_CODES = frozenset({"NETWORK_ERROR", "TIMEOUT", "RATE_LIMIT_EXCEEDED", "SERVER_ERROR", "ECONNRESET", "ETIMEDOUT", "ECONNREFUSED"})

REMEDIATION_HINTS: dict[str, str] = {
  "PROHIBITED_KEYWORD": "Remove prohibited keywords from the product name and description, then register again.",
  "CATEGORY_MAPPING_MISSING": "Map the product to a platform category or pass skip_category_validation.",
  "INVALID_CATEGORY": "The platform rejected the category id; refresh the category mapping for this platform.",
  "INVALID_PRICE": "Check the sale price against the platform's minimum price and price-unit rules.",
  "AUTHENTICATION_FAILED": "Verify the platform credentials configured for this service.",
  "DUPLICATE_PRODUCT": "The product already exists on the platform; update it instead of registering.",
}


@dataclass(frozen=True)
class ErrorInfo:
  """Serializable description of a failure attached to job results."""

  code: str
  message: str
  http_status: int | None = None
  details: dict[str, Any] = field(default_factory=dict)
  remediation: str | None = None

  def to_dict(self) -> dict[str, Any]:
    payload: dict[str, Any] = {"code": self.code, "message": self.message}
    if self.http_status is not None:
      payload["httpStatus"] = self.http_status
    if self.details:
      payload["details"] = self.details
    if self.remediation:
      payload["remediation"] = self.remediation
    return payload


class MarketSyncError(Exception):
  """Base class for all service failures."""

  code = "INTERNAL_ERROR"

  def to_info(self) -> ErrorInfo:
    return ErrorInfo(code=self.code, message=str(self) or type(self).__name__)


class ValidationError(MarketSyncError):
  """Caller input is malformed; never retried."""

  code = "VALIDATION_ERROR"

  def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
    super().__init__(message)
    self.errors = errors or []

  def to_info(self) -> ErrorInfo:
    return ErrorInfo(code=self.code, message=str(self), details={"errors": self.errors} if self.errors else {})


class RateLimitExceededError(MarketSyncError):
  """Admission was refused; callers must wait `retry_after` seconds."""

  code = "RATE_LIMIT_EXCEEDED"

  def __init__(self, message: str = "Rate limit exceeded", *, retry_after: int = 60, platform: str | None = None) -> None:
    super().__init__(message)
    self.retry_after = retry_after
    self.platform = platform

  def to_info(self) -> ErrorInfo:
    return ErrorInfo(code=self.code, message=str(self), http_status=429, details={"retryAfter": self.retry_after})


class NetworkError(MarketSyncError):
  """Connection reset, refused or timed out."""

  code = "NETWORK_ERROR"

  def __init__(self, message: str, *, code: str | None = None) -> None:
    super().__init__(message)
    if code:
      self.code = code


class PlatformError(MarketSyncError):
  """A marketplace rejected or failed a request; classified exactly once by the adapter."""

  def __init__(self, message: str, *, platform: str, code: str, http_status: int | None = None, details: dict[str, Any] | None = None, retryable: bool = False, retry_after: int | None = None, attempts: int = 1) -> None:
    super().__init__(message)
    self.platform = platform
    self.code = code
    self.http_status = http_status
    self.details = details or {}
    self.retryable = retryable
    self.retry_after = retry_after
    self.attempts = attempts

  @property
  def remediation(self) -> str | None:
    return REMEDIATION_HINTS.get(self.code)

  def to_info(self) -> ErrorInfo:
    return ErrorInfo(code=self.code, message=str(self), http_status=self.http_status, details=self.details, remediation=self.remediation)


class MaxRetriesExceededError(MarketSyncError):
  """Retries were exhausted; the last error is preserved on `last_error`."""

  code = "MAX_RETRIES_EXCEEDED"

  def __init__(self, last_error: BaseException, attempts: int) -> None:
    super().__init__(f"Operation failed after {attempts} attempts: {last_error}")
    self.last_error = last_error
    self.attempts = attempts


class JobNotFoundError(MarketSyncError):
  """No job exists for the requested id."""

  code = "JOB_NOT_FOUND"


class JobStateError(MarketSyncError):
  """The job is in a state that does not allow the requested transition."""

  code = "JOB_STATE_CONFLICT"


def error_info_from_exception(exc: BaseException) -> ErrorInfo:
  """Describe any exception as an ErrorInfo without reclassifying known errors."""
  if isinstance(exc, MaxRetriesExceededError):
    return error_info_from_exception(exc.last_error)
  if isinstance(exc, MarketSyncError):
    return exc.to_info()
  return ErrorInfo(code="INTERNAL_ERROR", message=str(exc) or type(exc).__name__)
