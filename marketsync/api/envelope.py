"""Uniform response envelope: `{status, statusCode, message, data|errors|error, timestamp}`."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

EnvelopeStatus = Literal["success", "fail", "error"]


def _timestamp() -> str:
  return datetime.now(UTC).isoformat()


def success(data: Any = None, *, message: str = "OK", status_code: int = 200) -> dict[str, Any]:
  return {"status": "success", "statusCode": status_code, "message": message, "data": data, "timestamp": _timestamp()}


def fail(message: str, *, status_code: int = 400, errors: Any = None, data: Any = None, request_id: str | None = None) -> dict[str, Any]:
  """Client-correctable failure (4xx) or a partial result that needs attention."""
  payload: dict[str, Any] = {"status": "fail", "statusCode": status_code, "message": message, "timestamp": _timestamp()}
  if errors is not None:
    payload["errors"] = errors
  if data is not None:
    payload["data"] = data
  if request_id:
    payload["requestId"] = request_id
  return payload


def error(message: str, *, status_code: int = 500, code: str | None = None, details: Any = None, data: Any = None, request_id: str | None = None) -> dict[str, Any]:
  """Server-side or upstream failure (5xx)."""
  body: dict[str, Any] = {"message": message}
  if code:
    body["code"] = code
  if details:
    body["details"] = details
  payload: dict[str, Any] = {"status": "error", "statusCode": status_code, "message": message, "error": body, "timestamp": _timestamp()}
  if data is not None:
    payload["data"] = data
  if request_id:
    payload["requestId"] = request_id
  return payload
