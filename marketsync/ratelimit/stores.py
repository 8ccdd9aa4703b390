"""Counter stores backing the rate limiters: Redis for shared state, in-memory per process."""

from __future__ import annotations

import logging
import threading
from typing import Protocol

import redis.asyncio as redis_asyncio

from marketsync.config import Settings
from marketsync.utils.ids import generate_nanoid

logger = logging.getLogger(__name__)


class CounterStore(Protocol):
  """Atomic counter primitives used by the limiters."""

  async def increment(self, key: str, ttl_ms: int, now_ms: int) -> int:
    """Increment the counter at `key`, refresh its expiry and return the new value."""

  async def record_timestamp(self, key: str, now_ms: int, window_ms: int, ttl_ms: int) -> tuple[int, int | None]:
    """Trim entries older than the window, record `now_ms` and return (size, oldest timestamp)."""

  async def delete(self, key: str) -> None:
    """Remove all state for `key`."""


class RedisCounterStore:
  """Shared counter store on Redis; INCR/PEXPIRE for windows and sorted sets for logs."""

  def __init__(self, client: redis_asyncio.Redis) -> None:
    self._client = client

  @property
  def client(self) -> redis_asyncio.Redis:
    return self._client

  async def increment(self, key: str, ttl_ms: int, now_ms: int) -> int:
    async with self._client.pipeline(transaction=True) as pipe:
      pipe.incr(key)
      pipe.pexpire(key, ttl_ms)
      count, _ = await pipe.execute()
    return int(count)

  async def record_timestamp(self, key: str, now_ms: int, window_ms: int, ttl_ms: int) -> tuple[int, int | None]:
    # Members must be unique even when two requests land in the same millisecond.
    member = f"{now_ms}-{generate_nanoid(8)}"
    async with self._client.pipeline(transaction=True) as pipe:
      pipe.zremrangebyscore(key, 0, now_ms - window_ms)
      pipe.zadd(key, {member: now_ms})
      pipe.zcard(key)
      pipe.zrange(key, 0, 0, withscores=True)
      pipe.pexpire(key, ttl_ms)
      _, _, size, oldest, _ = await pipe.execute()
    oldest_ts = int(oldest[0][1]) if oldest else None
    return int(size), oldest_ts

  async def delete(self, key: str) -> None:
    await self._client.delete(key)

  async def ping(self) -> bool:
    return bool(await self._client.ping())

  async def aclose(self) -> None:
    await self._client.aclose()


class InMemoryCounterStore:
  """Per-process equivalent of RedisCounterStore, safe across threads."""

  MAX_KEYS = 1000

  def __init__(self) -> None:
    self._counters: dict[str, tuple[int, int]] = {}
    self._logs: dict[str, tuple[list[int], int]] = {}
    self._lock = threading.Lock()

  def __len__(self) -> int:
    with self._lock:
      return len(self._counters) + len(self._logs)

  async def increment(self, key: str, ttl_ms: int, now_ms: int) -> int:
    with self._lock:
      self._prune(now_ms)
      count, expires_at = self._counters.get(key, (0, 0))
      if expires_at <= now_ms:
        count = 0
      count += 1
      self._counters[key] = (count, now_ms + ttl_ms)
      return count

  async def record_timestamp(self, key: str, now_ms: int, window_ms: int, ttl_ms: int) -> tuple[int, int | None]:
    with self._lock:
      self._prune(now_ms)
      stamps, expires_at = self._logs.get(key, ([], 0))
      if expires_at <= now_ms:
        stamps = []
      cutoff = now_ms - window_ms
      stamps = [stamp for stamp in stamps if stamp > cutoff]
      stamps.append(now_ms)
      self._logs[key] = (stamps, now_ms + ttl_ms)
      return len(stamps), stamps[0]

  async def delete(self, key: str) -> None:
    with self._lock:
      self._counters.pop(key, None)
      self._logs.pop(key, None)

  def _prune(self, now_ms: int) -> None:
    """Drop expired keys once the store grows past MAX_KEYS; caller holds the lock."""
    if len(self._counters) + len(self._logs) <= self.MAX_KEYS:
      return
    self._counters = {key: entry for key, entry in self._counters.items() if entry[1] > now_ms}
    self._logs = {key: entry for key, entry in self._logs.items() if entry[1] > now_ms}


def build_counter_store(settings: Settings) -> RedisCounterStore | None:
  """Create the shared Redis store when a URL is configured."""
  if not settings.redis_url:
    logger.info("MARKETSYNC_REDIS_URL not set; rate limiting uses per-process counters only.")
    return None
  client = redis_asyncio.from_url(settings.redis_url, decode_responses=True, socket_connect_timeout=2, socket_timeout=2)
  return RedisCounterStore(client)
