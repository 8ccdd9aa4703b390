"""Build adapters for every marketplace that has credentials configured."""

from __future__ import annotations

import logging

import httpx

from marketsync.config import PlatformCredentials, Settings
from marketsync.marketplaces.contracts import PlatformAdapter
from marketsync.marketplaces.coupang import CoupangAdapter, CoupangSigner
from marketsync.marketplaces.elevenst import ElevenstAdapter, ElevenstSigner
from marketsync.marketplaces.esm import EsmAdapter, EsmSigner
from marketsync.marketplaces.http import MarketplaceHttpClient
from marketsync.marketplaces.naver import NaverAdapter, NaverSigner, NaverTokenProvider
from marketsync.ratelimit.limiter import RateLimiter
from marketsync.utils.retry import RetryOptions

logger = logging.getLogger(__name__)


def build_platform_adapter(credentials: PlatformCredentials, *, rate_limiter: RateLimiter, retry_options: RetryOptions, transport: httpx.AsyncBaseTransport | None = None) -> PlatformAdapter:
  """Wire one adapter: signer, limiter and retrying HTTP client."""
  platform = credentials.platform

  def _client(signer) -> MarketplaceHttpClient:
    return MarketplaceHttpClient(platform=platform, credentials=credentials, signer=signer, rate_limiter=rate_limiter, retry_options=retry_options, transport=transport)

  if platform == "coupang":
    return CoupangAdapter(credentials, _client(CoupangSigner(credentials.access_key or "", credentials.secret_key or "")))
  if platform == "elevenst":
    return ElevenstAdapter(credentials, _client(ElevenstSigner(credentials.api_key or "")))
  if platform == "esm":
    return EsmAdapter(credentials, _client(EsmSigner(credentials.api_key or "", credentials.secret_key or "", credentials.master_id or "")))
  if platform == "naver":
    # The token provider reuses the adapter's own connection pool.
    client = _client(None)
    tokens = NaverTokenProvider(credentials, client.http)
    client.signer = NaverSigner(tokens)
    return NaverAdapter(credentials, client, tokens)
  raise ValueError(f"Unsupported platform: {platform}")


def build_platform_adapters(settings: Settings, *, rate_limiter: RateLimiter, retry_options: RetryOptions | None = None, transport: httpx.AsyncBaseTransport | None = None) -> dict[str, PlatformAdapter]:
  """Return adapters keyed by platform name, skipping platforms without credentials."""
  options = retry_options or RetryOptions.from_settings(settings)
  adapters: dict[str, PlatformAdapter] = {}
  for platform, credentials in settings.platforms.items():
    if not credentials.is_configured:
      logger.info("Skipping %s adapter: credentials not configured", platform)
      continue
    adapters[platform] = build_platform_adapter(credentials, rate_limiter=rate_limiter, retry_options=options, transport=transport)
  logger.info("Marketplace adapters ready: %s", ", ".join(sorted(adapters)) or "none")
  return adapters
