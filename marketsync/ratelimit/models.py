"""Value objects shared by the rate limiter variants."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitRule:
  """Admission budget for a single platform."""

  max_requests: int
  window_ms: int


@dataclass(frozen=True)
class RateLimitDecision:
  """Outcome of a single admission check."""

  allowed: bool
  remaining: int
  reset_at: int
  retry_after: int
  total_hits: int
  degraded: bool = False

  def as_headers(self, limit: int) -> dict[str, str]:
    """Render the decision as standard rate-limit response headers."""
    headers = {"X-RateLimit-Limit": str(limit), "X-RateLimit-Remaining": str(self.remaining), "X-RateLimit-Reset": str(self.reset_at // 1000)}
    if not self.allowed:
      headers["Retry-After"] = str(self.retry_after)
    return headers


DEFAULT_PLATFORM_RULES: dict[str, RateLimitRule] = {
  "elevenst": RateLimitRule(max_requests=50, window_ms=60_000),
  "esm": RateLimitRule(max_requests=30, window_ms=60_000),
  "coupang": RateLimitRule(max_requests=40, window_ms=60_000),
  "naver": RateLimitRule(max_requests=60, window_ms=60_000),
}
DEFAULT_RULE = RateLimitRule(max_requests=30, window_ms=60_000)
