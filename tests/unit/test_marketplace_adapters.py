"""Adapters over a mocked transport: signing, classification, retries and the local limiter."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
from dataclasses import replace
from datetime import UTC, datetime

import httpx
import pytest

from marketsync.config import PlatformCredentials, get_settings
from marketsync.core.errors import PlatformError
from marketsync.marketplaces.contracts import PlatformRequestContext, RegistrationOptions
from marketsync.marketplaces.coupang import CoupangAdapter, CoupangSigner
from marketsync.marketplaces.elevenst import ElevenstAdapter, ElevenstSigner
from marketsync.marketplaces.errors import classify_response, extract_retry_after
from marketsync.marketplaces.esm import EsmAdapter, EsmSigner
from marketsync.marketplaces.http import MarketplaceHttpClient
from marketsync.marketplaces.naver import NaverAdapter, NaverSigner, NaverTokenProvider
from marketsync.marketplaces.registry import build_platform_adapters
from marketsync.media.models import ImageUrls
from marketsync.ratelimit.limiter import FixedWindowRateLimiter
from marketsync.ratelimit.models import RateLimitRule
from marketsync.utils.retry import RetryingClient, RetryOptions

COUPANG = PlatformCredentials(platform="coupang", base_url="https://coupang.test", access_key="ak", secret_key="sk", vendor_id="A0001")
ELEVENST = PlatformCredentials(platform="elevenst", base_url="https://elevenst.test", api_key="11st-key")
NAVER = PlatformCredentials(platform="naver", base_url="https://naver.test", client_id="cid", client_secret="csecret")
ESM = PlatformCredentials(platform="esm", base_url="https://esm.test", api_key="esm-key", secret_key="esm-secret", master_id="master", gmarket_id="gm-seller")


async def _no_sleep(seconds: float) -> None:
  return None


def _client(credentials: PlatformCredentials, signer, handler, *, max_requests: int = 100, max_retries: int = 3) -> MarketplaceHttpClient:
  limiter = FixedWindowRateLimiter(rules={credentials.platform: RateLimitRule(max_requests=max_requests, window_ms=60_000)})
  retrying = RetryingClient(RetryOptions(max_retries=max_retries, initial_delay_ms=1, timeout_ms=None), name=credentials.platform, sleep=_no_sleep)
  return MarketplaceHttpClient(platform=credentials.platform, credentials=credentials, signer=signer, rate_limiter=limiter, retrying_client=retrying, transport=httpx.MockTransport(handler))


def _context(**options) -> PlatformRequestContext:
  images = ImageUrls(main_image_url="https://cdn.test/main.jpg", additional_image_urls=("https://cdn.test/a.jpg",))
  return PlatformRequestContext(category_id="56137", images=images, options=RegistrationOptions(**options))


def test_coupang_signature_is_hmac_over_date_method_path_query() -> None:
  signer = CoupangSigner("ak", "sk")
  expected = hmac.new(b"sk", b"260301T090000ZGET/v2/pathvendorId=A1", hashlib.sha256).hexdigest()
  assert signer.signature("260301T090000Z", "get", "/v2/path", "vendorId=A1") == expected


@pytest.mark.anyio
async def test_coupang_register_sends_cea_authorization(product) -> None:
  captured: list[httpx.Request] = []

  def handler(request: httpx.Request) -> httpx.Response:
    captured.append(request)
    return httpx.Response(200, json={"code": "SUCCESS", "data": 1234567})

  signer = CoupangSigner("ak", "sk", clock=lambda: datetime(2026, 3, 1, 9, 0, tzinfo=UTC))
  adapter = CoupangAdapter(COUPANG, _client(COUPANG, signer, handler))
  payload = adapter.build_payload(product, _context())
  result = await adapter.register_product(payload)

  assert result.success is True
  assert result.platform_product_id == "1234567"
  assert result.attempts == 1
  request = captured[0]
  assert request.url.path == "/v2/providers/seller_api/apis/api/v1/marketplace/seller-products"
  assert re.fullmatch(r"CEA algorithm=HmacSHA256, access-key=ak, signed-date=260301T090000Z, signature=[0-9a-f]{64}", request.headers["Authorization"])
  body = json.loads(request.content)
  assert body["displayCategoryCode"] == "56137"
  assert body["vendorId"] == "A0001"
  assert body["items"][0]["externalVendorSku"] == "EAR-001"
  assert [image["imageType"] for image in body["items"][0]["images"]] == ["REPRESENTATION", "DETAIL"]
  await adapter.aclose()


@pytest.mark.anyio
async def test_server_error_then_success_reports_two_attempts(product) -> None:
  responses = iter([httpx.Response(500, json={"message": "internal"}), httpx.Response(200, json={"productId": "11-77"})])
  adapter = ElevenstAdapter(ELEVENST, _client(ELEVENST, ElevenstSigner("11st-key"), lambda request: next(responses)))

  result = await adapter.register_product(adapter.build_payload(product, _context()))

  assert result.platform_product_id == "11-77"
  assert result.attempts == 2


@pytest.mark.anyio
async def test_business_rejection_is_terminal_with_remediation(product) -> None:
  calls: list[int] = []

  def handler(request: httpx.Request) -> httpx.Response:
    calls.append(1)
    assert request.headers["openapikey"] == "11st-key"
    return httpx.Response(400, json={"code": "FORBIDDEN_KEYWORD", "message": "금지어가 포함되어 있습니다"})

  adapter = ElevenstAdapter(ELEVENST, _client(ELEVENST, ElevenstSigner("11st-key"), handler))

  with pytest.raises(PlatformError) as exc_info:
    await adapter.register_product(adapter.build_payload(product, _context()))

  error = exc_info.value
  assert len(calls) == 1
  assert error.code == "PROHIBITED_KEYWORD"
  assert error.retryable is False
  assert error.http_status == 400
  assert error.attempts == 1
  assert error.remediation is not None


@pytest.mark.anyio
async def test_exhausted_retries_surface_attempt_count() -> None:
  adapter = ElevenstAdapter(ELEVENST, _client(ELEVENST, ElevenstSigner("k"), lambda request: httpx.Response(503), max_retries=2))

  with pytest.raises(PlatformError) as exc_info:
    await adapter.list_orders(start_date="2026-03-01")

  assert exc_info.value.code == "SERVER_ERROR"
  assert exc_info.value.retryable is True
  assert exc_info.value.attempts == 3


@pytest.mark.anyio
async def test_transport_failure_becomes_network_error() -> None:
  def handler(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("refused", request=request)

  adapter = ElevenstAdapter(ELEVENST, _client(ELEVENST, ElevenstSigner("k"), handler, max_retries=1))

  with pytest.raises(PlatformError) as exc_info:
    await adapter.list_categories()

  assert exc_info.value.code == "NETWORK_ERROR"
  assert exc_info.value.attempts == 2


@pytest.mark.anyio
async def test_local_rate_limit_rejects_without_sending() -> None:
  sent: list[int] = []

  def handler(request: httpx.Request) -> httpx.Response:
    sent.append(1)
    return httpx.Response(200, json={"data": []})

  signer = CoupangSigner("ak", "sk")
  adapter = CoupangAdapter(COUPANG, _client(COUPANG, signer, handler, max_requests=1))
  await adapter.list_products()

  with pytest.raises(PlatformError) as exc_info:
    await adapter.list_products()

  assert sent == [1]
  assert exc_info.value.code == "RATE_LIMIT_EXCEEDED"
  assert exc_info.value.retryable is True
  assert exc_info.value.attempts == 0
  assert exc_info.value.retry_after >= 1


@pytest.mark.anyio
async def test_naver_token_is_fetched_once_and_reused(product) -> None:
  token_calls: list[dict[str, str]] = []
  authorizations: list[str] = []

  def handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/v1/oauth2/token":
      token_calls.append(dict(httpx.QueryParams(request.content.decode())))
      return httpx.Response(200, json={"access_token": "tok-1", "expires_in": 10800})
    authorizations.append(request.headers["Authorization"])
    return httpx.Response(200, json={"channelProductId": 9001})

  client = _client(NAVER, None, handler)
  tokens = NaverTokenProvider(NAVER, client.http)
  client.signer = NaverSigner(tokens)
  adapter = NaverAdapter(NAVER, client, tokens)

  payload = adapter.build_payload(product, _context())
  first = await adapter.register_product(payload)
  await adapter.update_inventory("9001", 3)

  assert first.platform_product_id == "9001"
  assert len(token_calls) == 1
  assert token_calls[0]["grant_type"] == "client_credentials"
  assert authorizations == ["Bearer tok-1", "Bearer tok-1"]
  assert payload["originProduct"]["leafCategoryId"] == "56137"


@pytest.mark.anyio
async def test_naver_token_refreshes_after_expiry_margin() -> None:
  now = [0.0]
  issued = iter(["tok-1", "tok-2"])
  transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"access_token": next(issued), "expires_in": 120}))
  async with httpx.AsyncClient(base_url="https://naver.test", transport=transport) as http:
    tokens = NaverTokenProvider(NAVER, http, clock=lambda: now[0])
    assert await tokens.get_token() == "tok-1"
    now[0] = 59.0
    assert await tokens.get_token() == "tok-1"
    now[0] = 61.0
    assert await tokens.get_token() == "tok-2"


def test_esm_signature_matches_hmac_base64() -> None:
  signer = EsmSigner("esm-key", "esm-secret", "master")
  message = "POST&%2Fapi%2Fproducts&1700000000&n1&esm-key"
  expected = base64.b64encode(hmac.new(b"esm-secret", message.encode(), hashlib.sha256).digest()).decode()
  assert signer.signature("post", "/api/products", "1700000000", "n1") == expected


@pytest.mark.anyio
async def test_esm_register_signs_and_selects_seller(product) -> None:
  captured: list[httpx.Request] = []

  def handler(request: httpx.Request) -> httpx.Response:
    captured.append(request)
    return httpx.Response(200, json={"goodsNo": 555})

  signer = EsmSigner("esm-key", "esm-secret", "master", clock=lambda: 1_700_000_000.0, nonce=lambda: "n1")
  adapter = EsmAdapter(ESM, _client(ESM, signer, handler))
  payload = adapter.build_payload(product, _context(esm_marketplace="gmarket"))
  result = await adapter.register_product(payload)

  headers = captured[0].headers
  assert result.platform_product_id == "555"
  assert payload["sellerId"] == "gm-seller"
  assert headers["Authorization"] == f"ESM esm-key:{signer.signature('POST', '/api/products', '1700000000', 'n1')}"
  assert headers["X-ESM-Timestamp"] == "1700000000"
  assert headers["X-ESM-MasterID"] == "master"


def test_esm_missing_auction_seller_id_is_terminal(product) -> None:
  adapter = EsmAdapter(ESM, _client(ESM, EsmSigner("k", "s", "m"), lambda request: httpx.Response(200)))
  with pytest.raises(PlatformError) as exc_info:
    adapter.build_payload(product, _context(esm_marketplace="auction"))
  assert exc_info.value.code == "SELLER_ID_MISSING"
  assert exc_info.value.retryable is False


def test_classify_rate_limited_response_clamps_retry_after() -> None:
  request = httpx.Request("GET", "https://coupang.test/x")
  error = classify_response("coupang", httpx.Response(429, headers={"Retry-After": "9999"}, request=request))
  assert error.code == "RATE_LIMIT_EXCEEDED"
  assert error.retryable is True
  assert error.retry_after == 300
  assert extract_retry_after({}) == 60
  assert extract_retry_after({"retry-after": "soon"}) == 60


def test_registry_skips_unconfigured_platforms() -> None:
  unconfigured_naver = PlatformCredentials(platform="naver", base_url="https://naver.test")
  settings = replace(get_settings(), platforms={"coupang": COUPANG, "naver": unconfigured_naver, "esm": ESM})
  limiter = FixedWindowRateLimiter()

  adapters = build_platform_adapters(settings, rate_limiter=limiter, retry_options=RetryOptions(max_retries=0))

  assert sorted(adapters) == ["coupang", "esm"]
  assert isinstance(adapters["coupang"], CoupangAdapter)
  assert isinstance(adapters["esm"], EsmAdapter)
