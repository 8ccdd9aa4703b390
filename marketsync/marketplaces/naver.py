"""Naver Commerce (SmartStore) API adapter."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from marketsync.config import PlatformCredentials
from marketsync.core.errors import PlatformError
from marketsync.marketplaces.contracts import PlatformListing, PlatformRequestContext, ProductPayload, RegisterResult, UploadedImage
from marketsync.marketplaces.errors import classify_response
from marketsync.marketplaces.http import MarketplaceHttpClient

logger = logging.getLogger(__name__)

TOKEN_PATH = "/v1/oauth2/token"
PRODUCTS_PATH = "/external/v2/eco/products/channel-products"
# Refresh this many seconds before the token actually expires.
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class NaverTokenProvider:
  """Fetches and caches OAuth client-credentials tokens."""

  def __init__(self, credentials: PlatformCredentials, http: httpx.AsyncClient, *, clock: Callable[[], float] = time.monotonic) -> None:
    self._credentials = credentials
    self._http = http
    self._clock = clock
    self._token: str | None = None
    self._expires_at = 0.0
    self._lock = asyncio.Lock()

  async def get_token(self) -> str:
    if self._token and self._clock() < self._expires_at:
      return self._token

    # Concurrent dispatches share a single refresh.
    async with self._lock:
      if self._token and self._clock() < self._expires_at:
        return self._token
      response = await self._http.post(TOKEN_PATH, data={"client_id": self._credentials.client_id, "client_secret": self._credentials.client_secret, "grant_type": "client_credentials", "type": "SELF"})
      if response.status_code >= 400:
        raise classify_response("naver", response)
      body = response.json()
      token = body.get("access_token")
      if not token:
        raise PlatformError("Naver token response did not include access_token", platform="naver", code="AUTHENTICATION_FAILED", http_status=response.status_code)
      expires_in = int(body.get("expires_in", 3600))
      self._token = token
      self._expires_at = self._clock() + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
      logger.info("Naver access token refreshed expires_in=%s", expires_in)
      return token


class NaverSigner:
  def __init__(self, tokens: NaverTokenProvider) -> None:
    self._tokens = tokens

  async def headers(self, method: str, url: httpx.URL, body: bytes) -> dict[str, str]:
    return {"Authorization": f"Bearer {await self._tokens.get_token()}"}


class NaverAdapter:
  """Registers channel products on Naver SmartStore."""

  platform = "naver"

  def __init__(self, credentials: PlatformCredentials, client: MarketplaceHttpClient, tokens: NaverTokenProvider) -> None:
    self._credentials = credentials
    self._client = client
    self._tokens = tokens

  def build_payload(self, product: ProductPayload, context: PlatformRequestContext) -> dict[str, Any]:
    images = []
    if context.images.main_image_url:
      images.append({"imageUrl": context.images.main_image_url, "imageType": "MAIN"})
    images.extend({"imageUrl": url, "imageType": "ADDITIONAL"} for url in context.images.additional_image_urls)

    return {
      "originProduct": {
        "statusType": "SALE",
        "saleType": "NEW",
        "leafCategoryId": context.category_id,
        "name": product.name,
        "detailContent": product.description,
        "salePrice": product.price,
        "stockQuantity": max(product.stock, 0),
        "images": {"representativeImage": {"url": context.images.main_image_url}, "optionalImages": [{"url": url} for url in context.images.additional_image_urls]},
        "deliveryInfo": {"deliveryType": "DELIVERY", "deliveryFee": {"deliveryFeeType": "FREE" if product.delivery_fee == 0 else "PAID", "baseFee": product.delivery_fee}},
        "detailAttribute": {
          "naverShoppingSearchInfo": {"brandName": product.brand, "manufacturerName": product.manufacturer, "modelName": product.model},
          "sellerCodeInfo": {"sellerManagementCode": product.seller_code},
          "taxType": "DUTYFREE" if product.tax_free else "TAX",
          "seoInfo": {"sellerTags": [{"text": tag} for tag in product.search_tags[:10]]},
        },
      },
      "smartstoreChannelProduct": {"channelProductName": product.name, "channelProductDisplayStatusType": "ON", "naverShoppingRegistration": True},
      "channelProductName": product.name,
      "channelProductSalePrice": product.price,
      "channelProductCategoryId": context.category_id,
      "channelProductImages": images,
    }

  async def register_product(self, payload: dict[str, Any]) -> RegisterResult:
    response = await self._client.request("POST", PRODUCTS_PATH, json_body=payload)
    data = response.data or {}
    product_id = _field(data, "channelProductId", "smartstoreChannelProductNo", "originProductNo")
    logger.info("Naver product registered channel_product_id=%s attempts=%d", product_id, response.attempts)
    return RegisterResult(success=True, platform_product_id=product_id, raw=data, attempts=response.attempts)

  async def update_product(self, product_id: str, payload: dict[str, Any]) -> RegisterResult:
    response = await self._client.request("PUT", f"{PRODUCTS_PATH}/{product_id}", json_body=payload)
    return RegisterResult(success=True, platform_product_id=product_id, raw=response.data, attempts=response.attempts)

  async def delete_product(self, product_id: str) -> RegisterResult:
    response = await self._client.request("DELETE", f"{PRODUCTS_PATH}/{product_id}")
    return RegisterResult(success=True, platform_product_id=product_id, raw=response.data, attempts=response.attempts)

  async def list_products(self, **options: Any) -> PlatformListing:
    params = {"page": options.get("page", 1), "size": options.get("limit", 50)}
    response = await self._client.request("GET", PRODUCTS_PATH, params=params)
    return _listing(response.data, response.attempts)

  async def list_orders(self, **options: Any) -> PlatformListing:
    params = {"from": options.get("start_date"), "to": options.get("end_date"), "productOrderStatuses": options.get("status"), "page": options.get("page", 1), "size": options.get("limit", 50)}
    response = await self._client.request("GET", "/external/v1/pay-order/seller/orders", params={key: value for key, value in params.items() if value is not None})
    return _listing(response.data, response.attempts)

  async def update_inventory(self, product_id: str, quantity: int) -> RegisterResult:
    response = await self._client.request("PUT", f"{PRODUCTS_PATH}/{product_id}/stock", json_body={"stockQuantity": quantity})
    return RegisterResult(success=True, platform_product_id=product_id, raw=response.data, attempts=response.attempts)

  async def list_categories(self) -> PlatformListing:
    response = await self._client.request("GET", "/external/v2/eco/products/categories")
    return _listing(response.data, response.attempts)

  async def upload_image(self, data: bytes, *, filename: str, content_type: str) -> UploadedImage:
    response = await self._client.request("POST", "/external/v1/product-images/upload", files={"imageFiles": (filename, data, content_type)})
    body = response.data or {}
    images = body.get("images") if isinstance(body, dict) else None
    url = images[0].get("url") if isinstance(images, list) and images else _field(body, "url")
    return UploadedImage(url=url, raw=body, attempts=response.attempts)

  async def aclose(self) -> None:
    await self._client.aclose()


def _field(body: Any, *names: str) -> str | None:
  if not isinstance(body, dict):
    return None
  for name in names:
    value = body.get(name)
    if value is not None:
      return str(value)
  return None


def _listing(data: Any, attempts: int) -> PlatformListing:
  if isinstance(data, list):
    return PlatformListing(items=data, total=len(data), raw=data, attempts=attempts)
  body = data if isinstance(data, dict) else {}
  items = body.get("contents") or body.get("data") or []
  items = items if isinstance(items, list) else []
  total = body.get("totalElements")
  return PlatformListing(items=items, total=total if isinstance(total, int) else len(items), raw=data, attempts=attempts)
