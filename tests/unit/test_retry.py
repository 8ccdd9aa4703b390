"""RetryingClient termination, classification, backoff and statistics."""

from __future__ import annotations

import asyncio
import random

import httpx
import pytest

from marketsync.core.errors import MaxRetriesExceededError, NetworkError, PlatformError, ValidationError
from marketsync.utils.retry import BackoffStrategy, RetryingClient, RetryOptions, compute_backoff_delay, default_should_retry


class RecordingSleep:
  def __init__(self) -> None:
    self.delays: list[float] = []

  async def __call__(self, seconds: float) -> None:
    self.delays.append(seconds)


class RecordingObserver:
  def __init__(self) -> None:
    self.events: list[tuple[str, int, float]] = []

  def on_retry(self, error: BaseException, attempt: int, delay_ms: float) -> None:
    self.events.append((type(error).__name__, attempt, delay_ms))


def _failing(error: BaseException, calls: list[int], *, succeed_after: int | None = None):
  async def _operation() -> str:
    calls.append(1)
    if succeed_after is not None and len(calls) > succeed_after:
      return "ok"
    raise error

  return _operation


def test_backoff_sequence_without_jitter() -> None:
  options = RetryOptions(initial_delay_ms=100, backoff_multiplier=2, max_delay_ms=3000)
  delays = [compute_backoff_delay(attempt, options, jitter=False) for attempt in range(1, 8)]
  assert delays == [100, 200, 400, 800, 1600, 3000, 3000]


def test_backoff_jitter_stays_within_ten_percent() -> None:
  options = RetryOptions(initial_delay_ms=100, backoff_multiplier=2, max_delay_ms=3000)
  rng = random.Random(7)
  for attempt, base in zip(range(1, 7), [100, 200, 400, 800, 1600, 3000], strict=True):
    delay = compute_backoff_delay(attempt, options, rng=rng)
    assert base <= delay <= base * 1.1


def test_linear_and_fixed_strategies() -> None:
  linear = RetryOptions(initial_delay_ms=100, strategy=BackoffStrategy.LINEAR)
  fixed = RetryOptions(initial_delay_ms=100, strategy=BackoffStrategy.FIXED)
  assert [compute_backoff_delay(n, linear, jitter=False) for n in (1, 2, 3)] == [100, 200, 300]
  assert [compute_backoff_delay(n, fixed, jitter=False) for n in (1, 2, 3)] == [100, 100, 100]


def test_compute_backoff_rejects_attempt_zero() -> None:
  with pytest.raises(ValueError):
    compute_backoff_delay(0, RetryOptions())


@pytest.mark.anyio
async def test_retryable_failure_runs_max_retries_plus_one_times() -> None:
  sleep = RecordingSleep()
  client = RetryingClient(RetryOptions(max_retries=3, initial_delay_ms=100, timeout_ms=None), sleep=sleep)
  calls: list[int] = []

  result = await client.execute(_failing(NetworkError("reset"), calls))

  assert result.success is False
  assert result.attempts == 4
  assert len(calls) == 4
  assert isinstance(result.error, NetworkError)
  assert len(sleep.delays) == 3
  assert [attempt.attempt_number for attempt in result.history] == [1, 2, 3, 4]


@pytest.mark.anyio
async def test_non_retryable_failure_short_circuits() -> None:
  sleep = RecordingSleep()
  client = RetryingClient(RetryOptions(max_retries=5, timeout_ms=None), sleep=sleep)
  calls: list[int] = []

  result = await client.execute(_failing(ValidationError("bad payload"), calls))

  assert result.success is False
  assert result.attempts == 1
  assert len(calls) == 1
  assert sleep.delays == []


@pytest.mark.anyio
async def test_platform_error_retryability_is_honoured() -> None:
  client = RetryingClient(RetryOptions(max_retries=2, timeout_ms=None), sleep=RecordingSleep())
  terminal_calls: list[int] = []
  transient_calls: list[int] = []

  await client.execute(_failing(PlatformError("banned word", platform="naver", code="PROHIBITED_KEYWORD", http_status=400, retryable=False), terminal_calls))
  await client.execute(_failing(PlatformError("busy", platform="naver", code="SERVER_ERROR", http_status=503, retryable=True), transient_calls))

  assert len(terminal_calls) == 1
  assert len(transient_calls) == 3


@pytest.mark.anyio
async def test_success_after_retry_reports_attempts_and_notifies_observers() -> None:
  observer = RecordingObserver()
  client = RetryingClient(RetryOptions(max_retries=3, initial_delay_ms=100, timeout_ms=None), sleep=RecordingSleep(), observers=[observer], rng=random.Random(1))
  calls: list[int] = []

  result = await client.execute(_failing(NetworkError("reset"), calls, succeed_after=1))

  assert result.success is True
  assert result.data == "ok"
  assert result.attempts == 2
  assert len(observer.events) == 1
  name, attempt, delay_ms = observer.events[0]
  assert (name, attempt) == ("NetworkError", 1)
  assert 100 <= delay_ms <= 110


@pytest.mark.anyio
async def test_server_retry_after_overrides_backoff() -> None:
  sleep = RecordingSleep()
  client = RetryingClient(RetryOptions(max_retries=1, initial_delay_ms=100, timeout_ms=None, max_retry_after_ms=5000), sleep=sleep)
  error = PlatformError("slow down", platform="coupang", code="RATE_LIMIT_EXCEEDED", http_status=429, retryable=True, retry_after=30)

  await client.execute(_failing(error, []))

  # 30s is clamped to the configured 5s ceiling.
  assert sleep.delays == [5.0]


@pytest.mark.anyio
async def test_timeout_becomes_retryable_network_error() -> None:
  client = RetryingClient(RetryOptions(max_retries=1, initial_delay_ms=1, timeout_ms=10), sleep=RecordingSleep())
  calls: list[int] = []

  async def _slow() -> None:
    calls.append(1)
    await asyncio.sleep(1)

  result = await client.execute(_slow)

  assert result.success is False
  assert isinstance(result.error, NetworkError)
  assert result.error.code == "TIMEOUT"
  assert len(calls) == 2


@pytest.mark.anyio
async def test_execute_or_raise_wraps_exhausted_retries() -> None:
  client = RetryingClient(RetryOptions(max_retries=1, timeout_ms=None), sleep=RecordingSleep())

  with pytest.raises(MaxRetriesExceededError) as exc_info:
    await client.execute_or_raise(_failing(NetworkError("down"), []))
  assert exc_info.value.attempts == 2
  assert isinstance(exc_info.value.last_error, NetworkError)

  with pytest.raises(ValidationError):
    await client.execute_or_raise(_failing(ValidationError("nope"), []))


@pytest.mark.anyio
async def test_stats_accumulate_and_reset() -> None:
  client = RetryingClient(RetryOptions(max_retries=2, timeout_ms=None), sleep=RecordingSleep())
  await client.execute(_failing(NetworkError("x"), [], succeed_after=2))
  await client.execute(_failing(ValidationError("y"), []))

  stats = client.get_stats()
  assert stats.total_calls == 2
  assert stats.successful_calls == 1
  assert stats.failed_calls == 1
  assert stats.total_retries == 2
  assert stats.average_attempts == 2.0

  client.reset_stats()
  assert client.get_stats().total_calls == 0


@pytest.mark.anyio
async def test_broken_observer_does_not_change_outcome() -> None:
  class Exploding:
    def on_retry(self, error: BaseException, attempt: int, delay_ms: float) -> None:
      raise RuntimeError("observer bug")

  client = RetryingClient(RetryOptions(max_retries=1, timeout_ms=None), sleep=RecordingSleep(), observers=[Exploding()])
  result = await client.execute(_failing(NetworkError("x"), [], succeed_after=1))
  assert result.success is True


def test_default_classification_of_transport_errors() -> None:
  request = httpx.Request("GET", "https://example.test")
  assert default_should_retry(httpx.ConnectError("refused", request=request)) is True
  assert default_should_retry(httpx.ReadTimeout("slow", request=request)) is True
  assert default_should_retry(httpx.HTTPStatusError("boom", request=request, response=httpx.Response(502, request=request))) is True
  assert default_should_retry(httpx.HTTPStatusError("bad", request=request, response=httpx.Response(404, request=request))) is False
  assert default_should_retry(KeyError("bug")) is False
