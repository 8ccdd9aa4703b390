"""Shared FastAPI dependencies: service lookups on app.state and inbound rate limiting."""

from __future__ import annotations

import hashlib
import logging

from fastapi import Request, Response

from marketsync.core.errors import RateLimitExceededError
from marketsync.jobs.tracker import JobTracker
from marketsync.ratelimit.limiter import RateLimiter
from marketsync.services.registration import RegistrationOrchestrator
from marketsync.services.sync import MarketplaceSync

logger = logging.getLogger(__name__)

HTTP_SCOPE = "http"


def get_orchestrator(request: Request) -> RegistrationOrchestrator:
  return request.app.state.orchestrator


def get_job_tracker(request: Request) -> JobTracker:
  return request.app.state.job_tracker


def get_marketplace_sync(request: Request) -> MarketplaceSync:
  return request.app.state.marketplace_sync


def client_identifier(request: Request) -> str:
  """Identify the caller by x-client-id, then bearer token, then remote address."""
  client_id = (request.headers.get("x-client-id") or "").strip()
  if client_id:
    return f"client:{client_id[:64]}"
  authorization = request.headers.get("authorization") or ""
  if authorization.lower().startswith("bearer "):
    # Never put raw tokens into store keys.
    return f"token:{hashlib.sha256(authorization[7:].strip().encode('utf-8')).hexdigest()[:16]}"
  host = request.client.host if request.client else "unknown"
  return f"ip:{host}"


async def enforce_http_rate_limit(request: Request, response: Response) -> None:
  """Admit the request or raise RateLimitExceededError; always sets X-RateLimit-* headers."""
  limiter: RateLimiter | None = getattr(request.app.state, "http_rate_limiter", None)
  if limiter is None:
    return
  decision = await limiter.allow(HTTP_SCOPE, client_identifier(request))
  rule = limiter.rule_for(HTTP_SCOPE)
  response.headers.update(decision.as_headers(rule.max_requests))
  if not decision.allowed:
    logger.warning("Inbound rate limit reached path=%s retry_after=%s", request.url.path, decision.retry_after)
    raise RateLimitExceededError("Too many requests; slow down.", retry_after=decision.retry_after)
