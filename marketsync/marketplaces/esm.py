"""ESM Plus (Gmarket / Auction) API adapter."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
import time
from collections.abc import Callable
from typing import Any
from urllib.parse import quote

import httpx

from marketsync.config import PlatformCredentials
from marketsync.core.errors import PlatformError
from marketsync.marketplaces.contracts import EsmMarketplace, PlatformListing, PlatformRequestContext, ProductPayload, RegisterResult, UploadedImage
from marketsync.marketplaces.http import MarketplaceHttpClient

logger = logging.getLogger(__name__)

# Same unreserved set as JavaScript's encodeURIComponent.
_URI_COMPONENT_SAFE = "-_.!~*'()"


class EsmSigner:
  """HMAC-SHA256 (base64) over `METHOD&encoded(path)&timestamp&nonce&apiKey`."""

  def __init__(self, api_key: str, api_secret: str, master_id: str, *, clock: Callable[[], float] = time.time, nonce: Callable[[], str] | None = None) -> None:
    self._api_key = api_key
    self._api_secret = api_secret.encode("utf-8")
    self._master_id = master_id
    self._clock = clock
    self._nonce = nonce or (lambda: secrets.token_hex(16))

  def signature(self, method: str, target: str, timestamp: str, nonce: str) -> str:
    message = "&".join([method.upper(), quote(target, safe=_URI_COMPONENT_SAFE), timestamp, nonce, self._api_key])
    digest = hmac.new(self._api_secret, message.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")

  async def headers(self, method: str, url: httpx.URL, body: bytes) -> dict[str, str]:
    timestamp = str(int(self._clock()))
    nonce = self._nonce()
    target = url.raw_path.decode("ascii")
    return {"Authorization": f"ESM {self._api_key}:{self.signature(method, target, timestamp, nonce)}", "X-ESM-Timestamp": timestamp, "X-ESM-Nonce": nonce, "X-ESM-MasterID": self._master_id}


class EsmAdapter:
  """One adapter serves both Gmarket and Auction; the seller id picks the marketplace."""

  platform = "esm"

  def __init__(self, credentials: PlatformCredentials, client: MarketplaceHttpClient) -> None:
    self._credentials = credentials
    self._client = client

  def seller_id(self, marketplace: EsmMarketplace) -> str:
    seller_id = self._credentials.gmarket_id if marketplace == "gmarket" else self._credentials.auction_id
    if not seller_id:
      raise PlatformError(f"{marketplace} seller id is not configured", platform=self.platform, code="SELLER_ID_MISSING", retryable=False, attempts=0)
    return seller_id

  def build_payload(self, product: ProductPayload, context: PlatformRequestContext) -> dict[str, Any]:
    return {
      "sellerId": self.seller_id(context.options.esm_marketplace),
      "sellerGoodsNo": product.seller_code,
      "goodsNm": product.name,
      "gdPrice": product.price,
      "gdOriginPrice": product.effective_original_price,
      "categoryCode": context.category_id,
      "brandNm": product.brand or "",
      "makerNm": product.manufacturer or "",
      "modelNm": product.model or "",
      "goodsDescription": product.description,
      "goodsImageUrl": context.images.main_image_url,
      "goodsImageDetailUrls": list(context.images.additional_image_urls),
      "stockQty": max(product.stock, 0),
      "minOrderQty": 1,
      "maxOrderQty": 999,
      "taxGubun": "2" if product.tax_free else "1",
      "keywords": list(product.search_tags),
      "deliveryInfo": {"deliveryType": "1" if product.delivery_fee == 0 else "3", "deliveryFee": product.delivery_fee},
      "returnExchangeInfo": {"returnExchangeType": "1", "returnExchangeFee": 3000, "returnExchangePeriod": 7},
    }

  async def register_product(self, payload: dict[str, Any]) -> RegisterResult:
    response = await self._client.request("POST", "/api/products", json_body=payload)
    data = response.data or {}
    goods_no = data.get("goodsNo") if isinstance(data, dict) else None
    logger.info("ESM product registered goods_no=%s seller_id=%s attempts=%d", goods_no, payload.get("sellerId"), response.attempts)
    return RegisterResult(success=True, platform_product_id=None if goods_no is None else str(goods_no), raw=data, attempts=response.attempts)

  async def update_product(self, product_id: str, payload: dict[str, Any]) -> RegisterResult:
    response = await self._client.request("PUT", f"/api/products/{product_id}", json_body=payload)
    return RegisterResult(success=True, platform_product_id=product_id, raw=response.data, attempts=response.attempts)

  async def delete_product(self, product_id: str) -> RegisterResult:
    response = await self._client.request("DELETE", f"/api/products/{product_id}")
    return RegisterResult(success=True, platform_product_id=product_id, raw=response.data, attempts=response.attempts)

  async def list_products(self, **options: Any) -> PlatformListing:
    params = {"sellerId": self.seller_id(options.get("marketplace", "gmarket")), "page": options.get("page", 1), "pageSize": options.get("limit", 50)}
    response = await self._client.request("GET", "/api/products", params=params)
    return _listing(response.data, response.attempts, "goods")

  async def list_orders(self, **options: Any) -> PlatformListing:
    params = {"sellerId": self.seller_id(options.get("marketplace", "gmarket")), "startDate": options.get("start_date"), "endDate": options.get("end_date"), "orderStatus": options.get("status"), "page": options.get("page", 1)}
    response = await self._client.request("GET", "/api/orders", params={key: value for key, value in params.items() if value is not None})
    return _listing(response.data, response.attempts, "orders")

  async def update_inventory(self, product_id: str, quantity: int) -> RegisterResult:
    response = await self._client.request("PUT", "/api/products/stock", json_body={"goodsNo": product_id, "stockQty": quantity})
    return RegisterResult(success=True, platform_product_id=product_id, raw=response.data, attempts=response.attempts)

  async def list_categories(self) -> PlatformListing:
    response = await self._client.request("GET", "/api/categories")
    return _listing(response.data, response.attempts, "categories")

  async def upload_image(self, data: bytes, *, filename: str, content_type: str) -> UploadedImage:
    response = await self._client.request("POST", "/api/images/upload", files={"image": (filename, data, content_type)})
    body = response.data or {}
    url = body.get("imageUrl") if isinstance(body, dict) else None
    return UploadedImage(url=url, raw=body, attempts=response.attempts)

  async def aclose(self) -> None:
    await self._client.aclose()


def _listing(data: Any, attempts: int, key: str) -> PlatformListing:
  body = data if isinstance(data, dict) else {}
  items = body.get(key)
  if not isinstance(items, list):
    items = data if isinstance(data, list) else []
  total = body.get("totalCount")
  return PlatformListing(items=items, total=total if isinstance(total, int) else len(items), raw=data, attempts=attempts)
