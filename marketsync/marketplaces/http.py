"""Outbound HTTP composition for marketplaces: admission check, then retried, signed requests."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from marketsync.config import PlatformCredentials
from marketsync.core.errors import PlatformError
from marketsync.marketplaces.errors import classify_exception, classify_response
from marketsync.ratelimit.limiter import RateLimiter
from marketsync.utils.retry import LoggingRetryObserver, RetryingClient, RetryOptions

logger = logging.getLogger(__name__)

USER_AGENT = "MarketSync/1.0"


class RequestSigner(Protocol):
  """Produces per-request authentication headers."""

  async def headers(self, method: str, url: httpx.URL, body: bytes) -> dict[str, str]:
    """Return headers to merge into the outgoing request."""


@dataclass(frozen=True)
class MarketplaceResponse:
  """Decoded successful response plus the number of attempts it took."""

  status_code: int
  data: Any
  attempts: int


def limiter_identifier(credentials: PlatformCredentials) -> str:
  """Stable, non-secret identifier for rate-limit keys derived from the account credentials."""
  account = credentials.api_key or credentials.access_key or credentials.client_id
  if not account:
    return "default"
  return hashlib.sha256(account.encode("utf-8")).hexdigest()[:12]


def encode_json(payload: Any) -> bytes:
  return json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


class MarketplaceHttpClient:
  """RateLimiter check, then RetryingClient around a signed httpx request."""

  def __init__(
    self,
    *,
    platform: str,
    credentials: PlatformCredentials,
    signer: RequestSigner,
    rate_limiter: RateLimiter,
    retry_options: RetryOptions | None = None,
    retrying_client: RetryingClient | None = None,
    http_client: httpx.AsyncClient | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
  ) -> None:
    self.platform = platform
    self._signer = signer
    self._rate_limiter = rate_limiter
    self._identifier = limiter_identifier(credentials)
    self._retrying = retrying_client or RetryingClient(retry_options, name=platform, observers=[LoggingRetryObserver(platform)])
    self._http = http_client or httpx.AsyncClient(base_url=credentials.base_url, timeout=credentials.timeout_seconds, transport=transport, headers={"User-Agent": USER_AGENT, "Accept": "application/json"})

  @property
  def http(self) -> httpx.AsyncClient:
    return self._http

  @property
  def retrying_client(self) -> RetryingClient:
    return self._retrying

  @property
  def signer(self) -> RequestSigner:
    return self._signer

  @signer.setter
  def signer(self, signer: RequestSigner) -> None:
    self._signer = signer

  async def aclose(self) -> None:
    await self._http.aclose()

  async def request(self, method: str, path: str, *, json_body: Any = None, params: dict[str, Any] | None = None, files: dict[str, Any] | None = None, form: dict[str, Any] | None = None) -> MarketplaceResponse:
    """Send one logical call; raises PlatformError classified by the adapter error mapping."""
    decision = await self._rate_limiter.allow(self.platform, self._identifier)
    if not decision.allowed:
      logger.warning("Local rate limit reached platform=%s retry_after=%s", self.platform, decision.retry_after)
      raise PlatformError(f"Local rate limit reached for {self.platform}", platform=self.platform, code="RATE_LIMIT_EXCEEDED", retryable=True, retry_after=decision.retry_after, attempts=0)

    content = encode_json(json_body) if json_body is not None else None

    async def _call() -> httpx.Response:
      return await self._send(method, path, content=content, params=params, files=files, form=form)

    result = await self._retrying.execute(_call)
    if not result.success:
      assert result.error is not None
      raise classify_exception(self.platform, result.error, attempts=result.attempts)

    response = result.data
    assert response is not None
    return MarketplaceResponse(status_code=response.status_code, data=_decode(response), attempts=result.attempts)

  async def _send(self, method: str, path: str, *, content: bytes | None, params: dict[str, Any] | None, files: dict[str, Any] | None, form: dict[str, Any] | None) -> httpx.Response:
    headers = {"Content-Type": "application/json;charset=UTF-8"} if content is not None else {}
    request = self._http.build_request(method, path, params=params, content=content, files=files, data=form, headers=headers)
    # Sign per attempt; signatures embed timestamps.
    request.headers.update(await self._signer.headers(method, request.url, content or b""))
    logger.debug("Marketplace request platform=%s %s %s", self.platform, method, request.url.path)
    response = await self._http.send(request)
    if response.status_code >= 400:
      raise classify_response(self.platform, response)
    return response


def _decode(response: httpx.Response) -> Any:
  if not response.content:
    return None
  try:
    return response.json()
  except ValueError:
    return {"raw": response.text}
