"""Single place where marketplace failures are classified into PlatformError."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from marketsync.core.errors import REMEDIATION_HINTS, MarketSyncError, NetworkError, PlatformError
from marketsync.utils.retry import is_retryable_status

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 60
MAX_RETRY_AFTER_SECONDS = 300

_STATUS_CODES: dict[int, str] = {
  400: "VALIDATION_ERROR",
  401: "AUTHENTICATION_FAILED",
  403: "AUTHENTICATION_FAILED",
  404: "NOT_FOUND",
  408: "TIMEOUT",
  409: "DUPLICATE_PRODUCT",
  422: "VALIDATION_ERROR",
  429: "RATE_LIMIT_EXCEEDED",
}

# Platform-specific spellings of the business codes we surface with remediation hints.
_BUSINESS_CODE_ALIASES: dict[str, str] = {
  "PROHIBITED_WORD": "PROHIBITED_KEYWORD",
  "FORBIDDEN_KEYWORD": "PROHIBITED_KEYWORD",
  "BANNED_WORD": "PROHIBITED_KEYWORD",
  "INVALID_CATEGORY_CODE": "INVALID_CATEGORY",
  "CATEGORY_NOT_FOUND": "INVALID_CATEGORY",
  "INVALID_SALE_PRICE": "INVALID_PRICE",
  "DUPLICATED_PRODUCT": "DUPLICATE_PRODUCT",
  "UNAUTHORIZED": "AUTHENTICATION_FAILED",
}


def extract_retry_after(headers: Mapping[str, str], *, default: int = DEFAULT_RETRY_AFTER_SECONDS, maximum: int = MAX_RETRY_AFTER_SECONDS) -> int:
  """Read Retry-After (seconds) from response headers, clamped to `maximum`."""
  raw = headers.get("retry-after") or headers.get("x-ratelimit-reset-after")
  if raw is None:
    return default
  try:
    seconds = int(float(raw))
  except ValueError:
    return default
  if seconds <= 0:
    return default
  return min(seconds, maximum)


def _response_body(response: httpx.Response) -> dict[str, Any]:
  try:
    body = response.json()
  except ValueError:
    text = response.text.strip()
    return {"message": text[:500]} if text else {}
  return body if isinstance(body, dict) else {"data": body}


def _business_code(body: dict[str, Any]) -> str | None:
  for field_name in ("code", "errorCode", "resultCode", "error_code"):
    value = body.get(field_name)
    if isinstance(value, str) and value.strip():
      normalized = value.strip().upper()
      return _BUSINESS_CODE_ALIASES.get(normalized, normalized)
  return None


def classify_response(platform: str, response: httpx.Response) -> PlatformError:
  """Map an error response to a PlatformError, deciding retryability exactly once."""
  status = response.status_code
  body = _response_body(response)
  business_code = _business_code(body)

  if business_code in REMEDIATION_HINTS:
    code = business_code
    # Known business rejections are terminal whatever status the platform picked.
    retryable = False
  else:
    code = business_code or _STATUS_CODES.get(status) or ("SERVER_ERROR" if status >= 500 else "PLATFORM_ERROR")
    retryable = is_retryable_status(status)

  message = body.get("message") or body.get("errorMessage") or body.get("resultMessage") or f"{platform} responded with HTTP {status}"
  retry_after = extract_retry_after(response.headers) if status == 429 else None
  details = {key: value for key, value in body.items() if key not in {"message", "errorMessage", "resultMessage"}}
  return PlatformError(str(message), platform=platform, code=code, http_status=status, details=details, retryable=retryable, retry_after=retry_after)


def classify_exception(platform: str, exc: BaseException, *, attempts: int) -> PlatformError:
  """Wrap whatever the retry loop ended with into a PlatformError carrying the attempt count."""
  if isinstance(exc, PlatformError):
    exc.attempts = attempts
    return exc

  if isinstance(exc, httpx.TimeoutException) or (isinstance(exc, NetworkError) and exc.code == "TIMEOUT"):
    error = PlatformError(f"{platform} request timed out", platform=platform, code="TIMEOUT", retryable=True, attempts=attempts)
  elif isinstance(exc, (httpx.TransportError, NetworkError, ConnectionError)):
    error = PlatformError(f"{platform} network error: {exc}", platform=platform, code="NETWORK_ERROR", retryable=True, attempts=attempts)
  elif isinstance(exc, MarketSyncError):
    error = PlatformError(str(exc), platform=platform, code=exc.code, retryable=False, attempts=attempts)
  else:
    logger.error("Unexpected %s failure error_type=%s", platform, type(exc).__name__, exc_info=exc)
    error = PlatformError(f"{platform} request failed: {exc}", platform=platform, code="UNKNOWN_ERROR", retryable=False, attempts=attempts)
  error.__cause__ = exc
  return error
