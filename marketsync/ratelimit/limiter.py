"""Fixed-window and sliding-log rate limiters with fail-open fallback to process memory."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Protocol, TypeVar

from redis.exceptions import RedisError

from marketsync.config import Settings
from marketsync.ratelimit.models import DEFAULT_RULE, RateLimitDecision, RateLimitRule
from marketsync.ratelimit.stores import CounterStore, InMemoryCounterStore

R = TypeVar("R")
logger = logging.getLogger(__name__)

STORE_ERRORS: tuple[type[BaseException], ...] = (RedisError, OSError, asyncio.TimeoutError)
SLIDING_TTL_SLACK_MS = 60_000


class RateLimiter(Protocol):
  """Admission control keyed by (scope, identifier)."""

  def rule_for(self, scope: str) -> RateLimitRule:
    """Return the rule applied to `scope`."""

  async def allow(self, scope: str, identifier: str = "default") -> RateLimitDecision:
    """Count this request and report whether it is admitted."""


class _StoreBackedLimiter:
  """Shared plumbing: rule lookup, clock and shared-store failover."""

  def __init__(self, store: CounterStore | None = None, *, rules: Mapping[str, RateLimitRule] | None = None, default_rule: RateLimitRule = DEFAULT_RULE, fallback: InMemoryCounterStore | None = None, clock: Callable[[], float] = time.time, key_prefix: str = "ratelimit") -> None:
    self._store = store
    self._fallback = fallback or InMemoryCounterStore()
    self._rules = dict(rules or {})
    self._default_rule = default_rule
    self._clock = clock
    self._key_prefix = key_prefix
    self._degraded = False

  @property
  def degraded(self) -> bool:
    """True while the shared store is failing and counters live in process memory."""
    return self._degraded

  def rule_for(self, scope: str) -> RateLimitRule:
    return self._rules.get(scope, self._default_rule)

  def _now_ms(self) -> int:
    return int(self._clock() * 1000)

  async def _with_fallback(self, call: Callable[[CounterStore], Awaitable[R]]) -> tuple[R, bool]:
    """Run `call` on the shared store, falling back to memory when the store errors."""
    if self._store is None:
      return await call(self._fallback), False

    try:
      result = await call(self._store)
    except STORE_ERRORS as exc:
      # Availability over strictness: keep admitting on per-process counters.
      if not self._degraded:
        logger.warning("Rate limit store unavailable; falling back to in-memory counters error_type=%s error=%s", type(exc).__name__, exc)
      self._degraded = True
      return await call(self._fallback), True

    if self._degraded:
      logger.info("Rate limit store recovered; shared counters back in use.")
      self._degraded = False
    return result, False


class FixedWindowRateLimiter(_StoreBackedLimiter):
  """Counts requests per `{prefix}:{platform}:{identifier}:{window_start}` bucket."""

  def window_key(self, scope: str, identifier: str, window_start: int) -> str:
    return f"{self._key_prefix}:{scope}:{identifier}:{window_start}"

  async def allow(self, scope: str, identifier: str = "default") -> RateLimitDecision:
    rule = self.rule_for(scope)
    now_ms = self._now_ms()
    window_start = (now_ms // rule.window_ms) * rule.window_ms
    key = self.window_key(scope, identifier, window_start)

    count, degraded = await self._with_fallback(lambda store: store.increment(key, rule.window_ms, now_ms))

    reset_at = window_start + rule.window_ms
    allowed = count <= rule.max_requests
    retry_after = 0 if allowed else max(1, math.ceil((reset_at - now_ms) / 1000))
    if not allowed:
      logger.debug("Rate limit exceeded scope=%s identifier=%s count=%d max=%d retry_after=%d", scope, identifier, count, rule.max_requests, retry_after)
    return RateLimitDecision(allowed=allowed, remaining=max(0, rule.max_requests - count), reset_at=reset_at, retry_after=retry_after, total_hits=count, degraded=degraded)

  async def reset(self, scope: str, identifier: str = "default") -> None:
    """Clear the current window for a key."""
    rule = self.rule_for(scope)
    now_ms = self._now_ms()
    key = self.window_key(scope, identifier, (now_ms // rule.window_ms) * rule.window_ms)
    await self._with_fallback(lambda store: store.delete(key))


class SlidingWindowRateLimiter(_StoreBackedLimiter):
  """Keeps a timestamp log per key and admits while the log holds at most `max_requests` entries."""

  def log_key(self, scope: str, identifier: str) -> str:
    return f"{self._key_prefix}:{scope}:{identifier}"

  async def allow(self, scope: str, identifier: str = "default") -> RateLimitDecision:
    rule = self.rule_for(scope)
    now_ms = self._now_ms()
    key = self.log_key(scope, identifier)
    ttl_ms = rule.window_ms + SLIDING_TTL_SLACK_MS

    (size, oldest), degraded = await self._with_fallback(lambda store: store.record_timestamp(key, now_ms, rule.window_ms, ttl_ms))

    reset_at = (oldest if oldest is not None else now_ms) + rule.window_ms
    allowed = size <= rule.max_requests
    retry_after = 0 if allowed else max(1, math.ceil((reset_at - now_ms) / 1000))
    return RateLimitDecision(allowed=allowed, remaining=max(0, rule.max_requests - size), reset_at=reset_at, retry_after=retry_after, total_hits=size, degraded=degraded)

  async def reset(self, scope: str, identifier: str = "default") -> None:
    key = self.log_key(scope, identifier)
    await self._with_fallback(lambda store: store.delete(key))


def build_platform_rate_limiter(settings: Settings, store: CounterStore | None) -> FixedWindowRateLimiter:
  """Outbound limiter with one rule per marketplace."""
  return FixedWindowRateLimiter(store, rules=settings.rate_limits, default_rule=settings.default_rate_limit)


def build_http_rate_limiter(settings: Settings, store: CounterStore | None) -> SlidingWindowRateLimiter:
  """Inbound limiter applied to API callers."""
  rule = RateLimitRule(max_requests=settings.http_rate_limit_max_requests, window_ms=settings.http_rate_limit_window_ms)
  return SlidingWindowRateLimiter(store, rules={"http": rule}, default_rule=rule)
