import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError

from marketsync.api import envelope
from marketsync.core.errors import JobNotFoundError, JobStateError, MarketSyncError, PlatformError, RateLimitExceededError, ValidationError
from marketsync.core.json import MarketSyncJSONResponse

logger = logging.getLogger("marketsync.core.exceptions")

_STATUS_BY_ERROR: tuple[tuple[type[MarketSyncError], int], ...] = (
  (ValidationError, status.HTTP_400_BAD_REQUEST),
  (JobNotFoundError, status.HTTP_404_NOT_FOUND),
  (JobStateError, status.HTTP_409_CONFLICT),
  (RateLimitExceededError, status.HTTP_429_TOO_MANY_REQUESTS),
  (PlatformError, status.HTTP_502_BAD_GATEWAY),
)


def _coerce_json_safe(value: Any) -> Any:
  """Convert unsupported values into JSON-safe primitives for error responses."""
  # Keep native JSON primitives unchanged.
  if value is None or isinstance(value, bool | int | float | str):
    return value
  # Recursively sanitize mapping values so nested contexts remain serializable.
  if isinstance(value, dict):
    return {str(key): _coerce_json_safe(item) for key, item in value.items()}
  if isinstance(value, list | tuple | set):
    return [_coerce_json_safe(item) for item in value]
  # Serialize exception instances explicitly.
  if isinstance(value, BaseException):
    error_message = str(value)
    if error_message:
      return f"{type(value).__name__}: {error_message}"
    return type(value).__name__
  return str(value)


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key != "input"}
    # Remove nested input values from context payloads as well.
    if "ctx" in scrubbed and isinstance(scrubbed["ctx"], dict):
      scrubbed_ctx = dict(scrubbed["ctx"])
      scrubbed_ctx.pop("input", None)
      scrubbed["ctx"] = scrubbed_ctx

    sanitized.append(_coerce_json_safe(scrubbed))

  return sanitized


def _request_id(request: Request) -> str | None:
  return getattr(request.state, "request_id", None)


def status_for_error(exc: MarketSyncError) -> int:
  for error_type, status_code in _STATUS_BY_ERROR:
    if isinstance(exc, error_type):
      return status_code
  return status.HTTP_500_INTERNAL_SERVER_ERROR


async def global_exception_handler(request: Request, exc: Exception) -> MarketSyncJSONResponse:
  """Global exception handler to catch unhandled errors."""
  request_id = _request_id(request)
  logger.error("Global exception request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=True)
  return MarketSyncJSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=envelope.error("Internal Server Error", code="INTERNAL_ERROR", request_id=request_id))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> MarketSyncJSONResponse:
  """Log request validation errors for debugging without leaking payloads."""
  request_id = _request_id(request)
  sanitized_errors = _sanitize_validation_errors(exc.errors())
  # 422s are client-correctable and expected; keep the log concise.
  logger.warning("Request validation failed request_id=%s path=%s method=%s errors=%s", request_id, request.url.path, request.method, sanitized_errors)
  return MarketSyncJSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=envelope.fail("Request validation failed", status_code=422, errors=sanitized_errors, request_id=request_id))


async def http_exception_handler(request: Request, exc: HTTPException) -> MarketSyncJSONResponse:
  """Handle FastAPI HTTPExceptions while avoiding leaking internal diagnostics."""
  from marketsync.config import get_settings

  settings = get_settings()
  request_id = _request_id(request)
  # Log 5xx HTTPExceptions with a traceback; do not expose `exc.detail` to callers.
  if exc.status_code >= 500:
    logger.error("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail, exc_info=True)
    return MarketSyncJSONResponse(status_code=exc.status_code, content=envelope.error("Internal Server Error", status_code=exc.status_code, request_id=request_id))

  if settings.log_http_4xx:
    logger.warning("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, _coerce_json_safe(exc.detail))

  return MarketSyncJSONResponse(status_code=exc.status_code, content=envelope.fail(str(exc.detail), status_code=exc.status_code, request_id=request_id), headers=exc.headers)


async def marketsync_exception_handler(request: Request, exc: MarketSyncError) -> MarketSyncJSONResponse:
  """Map service errors onto HTTP status codes and the response envelope."""
  request_id = _request_id(request)
  status_code = status_for_error(exc)
  info = exc.to_info()
  headers: dict[str, str] | None = None
  if isinstance(exc, RateLimitExceededError):
    headers = {"Retry-After": str(exc.retry_after)}

  if status_code >= 500:
    logger.error("Service error request_id=%s path=%s code=%s", request_id, request.url.path, info.code, exc_info=exc)
    return MarketSyncJSONResponse(status_code=status_code, content=envelope.error(info.message, status_code=status_code, code=info.code, details=info.details, request_id=request_id), headers=headers)

  logger.info("Request rejected request_id=%s path=%s code=%s status=%s", request_id, request.url.path, info.code, status_code)
  errors = _coerce_json_safe(info.details.get("errors")) if info.details.get("errors") else [info.to_dict()]
  return MarketSyncJSONResponse(status_code=status_code, content=envelope.fail(info.message, status_code=status_code, errors=errors, request_id=request_id), headers=headers)
