"""Retrying executor with timeout, retryable vs non-retryable classification and backoff with jitter."""

from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Generic, Protocol, TypeVar

import httpx

from marketsync.core.errors import RETRYABLE_ERROR_CODES, MaxRetriesExceededError, NetworkError, PlatformError, RateLimitExceededError

T = TypeVar("T")
logger = logging.getLogger(__name__)

RETRYABLE_HTTP_STATUSES = frozenset({408, 429})
ShouldRetry = Callable[[BaseException], bool]


class BackoffStrategy(str, Enum):
  """How the delay between attempts grows."""

  EXPONENTIAL = "exponential"
  LINEAR = "linear"
  FIXED = "fixed"
  RANDOM_JITTER = "random_jitter"


@dataclass(frozen=True)
class RetryOptions:
  """Per-call retry policy; all durations are milliseconds."""

  max_retries: int = 3
  initial_delay_ms: int = 1000
  backoff_multiplier: float = 2.0
  max_delay_ms: int = 30_000
  timeout_ms: int | None = 10_000
  strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
  jitter_ratio: float = 0.1
  max_retry_after_ms: int = 300_000
  should_retry: ShouldRetry | None = None

  @classmethod
  def from_settings(cls, settings: Any) -> RetryOptions:
    """Build the service-wide default policy from Settings."""
    return cls(max_retries=settings.retry_max_retries, initial_delay_ms=settings.retry_initial_delay_ms, backoff_multiplier=settings.retry_backoff_multiplier, max_delay_ms=settings.retry_max_delay_ms, timeout_ms=settings.retry_timeout_ms)


@dataclass
class RetryAttempt:
  """One failed attempt inside a single execute() call."""

  attempt_number: int
  error: BaseException | None = None
  delay_before_next_ms: float | None = None


@dataclass
class RetryResult(Generic[T]):
  """Outcome of execute(); failures carry the last error and the attempt count."""

  success: bool
  attempts: int
  total_time_ms: float
  data: T | None = None
  error: BaseException | None = None
  history: list[RetryAttempt] = field(default_factory=list)


@dataclass
class RetryStats:
  """Cumulative counters for the lifetime of a RetryingClient."""

  total_calls: int = 0
  successful_calls: int = 0
  failed_calls: int = 0
  total_retries: int = 0
  total_attempts: int = 0

  @property
  def average_attempts(self) -> float:
    if self.total_calls == 0:
      return 0.0
    return self.total_attempts / self.total_calls

  def to_dict(self) -> dict[str, float]:
    return {"totalCalls": self.total_calls, "successfulCalls": self.successful_calls, "failedCalls": self.failed_calls, "totalRetries": self.total_retries, "averageAttempts": round(self.average_attempts, 3)}


class RetryObserver(Protocol):
  """Subscriber notified before each retry sleep."""

  def on_retry(self, error: BaseException, attempt: int, delay_ms: float) -> None:
    """Called with the failed attempt number and the delay before the next attempt."""


class LoggingRetryObserver:
  """Observer that records every scheduled retry in the service log."""

  def __init__(self, name: str, *, log: logging.Logger | None = None) -> None:
    self._name = name
    self._logger = log or logger

  def on_retry(self, error: BaseException, attempt: int, delay_ms: float) -> None:
    self._logger.warning("Retry scheduled client=%s attempt=%d delay_ms=%.1f error_type=%s error=%s", self._name, attempt, delay_ms, type(error).__name__, error)


def is_retryable_status(status_code: int) -> bool:
  return status_code >= 500 or status_code in RETRYABLE_HTTP_STATUSES


def default_should_retry(error: BaseException) -> bool:
  """
  Classify a failure as transient.

  Retryable:
    - network failures (connection refused/reset, timeouts)
    - HTTP 5xx, 408 and 429
    - local admission rejections

  Not retryable:
    - 4xx validation and business errors
    - programming errors
  """
  if isinstance(error, (NetworkError, RateLimitExceededError)):
    return True

  # Adapters classify platform failures once; honour that decision.
  if isinstance(error, PlatformError):
    return error.retryable

  if isinstance(error, httpx.HTTPStatusError):
    return is_retryable_status(error.response.status_code)

  if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
    return True

  if isinstance(error, (ConnectionError, TimeoutError)):
    return True

  code = getattr(error, "code", None)
  return isinstance(code, str) and code in RETRYABLE_ERROR_CODES


def compute_backoff_delay(attempt: int, options: RetryOptions, *, jitter: bool = True, rng: random.Random | None = None) -> float:
  """Return the delay in ms before retrying after failed attempt number `attempt` (1-based)."""
  if attempt < 1:
    raise ValueError("attempt must be >= 1")

  source = rng or random
  exponential = options.initial_delay_ms * (options.backoff_multiplier ** (attempt - 1))
  if options.strategy is BackoffStrategy.LINEAR:
    delay = float(options.initial_delay_ms * attempt)
  elif options.strategy is BackoffStrategy.FIXED:
    delay = float(options.initial_delay_ms)
  elif options.strategy is BackoffStrategy.RANDOM_JITTER:
    delay = source.uniform(options.initial_delay_ms, max(exponential, options.initial_delay_ms))
  else:
    delay = float(exponential)

  delay = min(delay, float(options.max_delay_ms))
  # Random jitter already spreads retries out.
  if jitter and options.strategy is not BackoffStrategy.RANDOM_JITTER and options.jitter_ratio > 0:
    delay += source.uniform(0, delay * options.jitter_ratio)
  return delay


def server_retry_after_ms(error: BaseException, options: RetryOptions) -> float | None:
  """Return the server-supplied Retry-After in ms, clamped to the configured maximum."""
  retry_after = getattr(error, "retry_after", None)
  if retry_after is None:
    return None
  try:
    seconds = float(retry_after)
  except (TypeError, ValueError):
    return None
  if seconds <= 0:
    return None
  return min(seconds * 1000.0, float(options.max_retry_after_ms))


class RetryingClient:
  """Single chokepoint for outbound calls: timeout, classification, backoff and statistics."""

  def __init__(self, options: RetryOptions | None = None, *, name: str = "default", observers: Iterable[RetryObserver] = (), sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep, rng: random.Random | None = None) -> None:
    self._options = options or RetryOptions()
    self._name = name
    self._observers: list[RetryObserver] = list(observers)
    self._sleep = sleep
    self._rng = rng
    self._stats = RetryStats()
    self._stats_lock = threading.Lock()

  @property
  def name(self) -> str:
    return self._name

  @property
  def options(self) -> RetryOptions:
    return self._options

  async def execute(self, operation: Callable[[], Awaitable[T]], options: RetryOptions | None = None) -> RetryResult[T]:
    """Run `operation` until it succeeds, fails permanently or exhausts `max_retries`."""
    opts = options or self._options
    should_retry = opts.should_retry or default_should_retry
    started = time.monotonic()
    history: list[RetryAttempt] = []
    attempt = 0

    while True:
      attempt += 1
      try:
        data = await self._run_with_timeout(operation, opts)
      except Exception as exc:  # noqa: BLE001
        retryable = should_retry(exc)

        # Non-retryable error or out of attempts - fail with the last error.
        if not retryable or attempt > opts.max_retries:
          history.append(RetryAttempt(attempt_number=attempt, error=exc))
          self._record(success=False, attempts=attempt)
          if retryable:
            logger.error("Operation failed after %d attempts client=%s error_type=%s error=%s", attempt, self._name, type(exc).__name__, exc)
          else:
            logger.info("Operation failed with non-retryable error client=%s attempt=%d error_type=%s error=%s", self._name, attempt, type(exc).__name__, exc)
          return RetryResult(success=False, attempts=attempt, total_time_ms=_elapsed_ms(started), error=exc, history=history)

        delay_ms = server_retry_after_ms(exc, opts)
        if delay_ms is None:
          delay_ms = compute_backoff_delay(attempt, opts, rng=self._rng)
        history.append(RetryAttempt(attempt_number=attempt, error=exc, delay_before_next_ms=delay_ms))
        self._notify(exc, attempt, delay_ms)
        # Cancellation of the calling task interrupts the sleep and stops further attempts.
        await self._sleep(delay_ms / 1000.0)
        continue

      if attempt > 1:
        logger.info("Operation succeeded after retry client=%s attempt=%d", self._name, attempt)
      self._record(success=True, attempts=attempt)
      return RetryResult(success=True, attempts=attempt, total_time_ms=_elapsed_ms(started), data=data, history=history)

  async def execute_or_raise(self, operation: Callable[[], Awaitable[T]], options: RetryOptions | None = None) -> T:
    """Like execute() but raise on failure; exhausted retries raise MaxRetriesExceededError."""
    opts = options or self._options
    result = await self.execute(operation, opts)
    if result.success:
      return result.data  # type: ignore[return-value]

    error = result.error
    assert error is not None
    should_retry = opts.should_retry or default_should_retry
    if should_retry(error):
      raise MaxRetriesExceededError(error, result.attempts) from error
    raise error

  def get_stats(self) -> RetryStats:
    with self._stats_lock:
      return replace(self._stats)

  def reset_stats(self) -> None:
    with self._stats_lock:
      self._stats = RetryStats()

  async def _run_with_timeout(self, operation: Callable[[], Awaitable[T]], opts: RetryOptions) -> T:
    if not opts.timeout_ms:
      return await operation()
    try:
      return await asyncio.wait_for(operation(), timeout=opts.timeout_ms / 1000.0)
    except asyncio.TimeoutError as exc:
      raise NetworkError(f"Operation timed out after {opts.timeout_ms}ms", code="TIMEOUT") from exc

  def _notify(self, error: BaseException, attempt: int, delay_ms: float) -> None:
    for observer in list(self._observers):
      try:
        observer.on_retry(error, attempt, delay_ms)
      except Exception:  # noqa: BLE001
        # A broken subscriber must not change the retry outcome.
        logger.warning("Retry observer failed client=%s observer=%s", self._name, type(observer).__name__, exc_info=True)

  def _record(self, *, success: bool, attempts: int) -> None:
    with self._stats_lock:
      self._stats.total_calls += 1
      self._stats.total_attempts += attempts
      self._stats.total_retries += attempts - 1
      if success:
        self._stats.successful_calls += 1
      else:
        self._stats.failed_calls += 1


def _elapsed_ms(started: float) -> float:
  return (time.monotonic() - started) * 1000.0
