"""Coupang Wing seller API adapter."""

from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import httpx

from marketsync.config import PlatformCredentials
from marketsync.marketplaces.contracts import PlatformListing, PlatformRequestContext, ProductPayload, RegisterResult, UploadedImage
from marketsync.marketplaces.http import MarketplaceHttpClient

logger = logging.getLogger(__name__)

API_ROOT = "/v2/providers/seller_api/apis/api/v1/marketplace"


class CoupangSigner:
  """HMAC-SHA256 `CEA` authorization over signed-date, method, path and query."""

  def __init__(self, access_key: str, secret_key: str, *, clock: Callable[[], datetime] | None = None) -> None:
    self._access_key = access_key
    self._secret_key = secret_key.encode("utf-8")
    self._clock = clock or (lambda: datetime.now(UTC))

  def signature(self, signed_date: str, method: str, path: str, query: str) -> str:
    message = f"{signed_date}{method.upper()}{path}{query}"
    return hmac.new(self._secret_key, message.encode("utf-8"), hashlib.sha256).hexdigest()

  async def headers(self, method: str, url: httpx.URL, body: bytes) -> dict[str, str]:
    signed_date = self._clock().strftime("%y%m%dT%H%M%SZ")
    query = url.query.decode("ascii") if url.query else ""
    signature = self.signature(signed_date, method, url.path, query)
    return {"Authorization": f"CEA algorithm=HmacSHA256, access-key={self._access_key}, signed-date={signed_date}, signature={signature}", "X-EXTENDED-TIMEOUT": "90000"}


class CoupangAdapter:
  """Registers and manages seller products on Coupang."""

  platform = "coupang"

  def __init__(self, credentials: PlatformCredentials, client: MarketplaceHttpClient) -> None:
    self._credentials = credentials
    self._client = client

  def build_payload(self, product: ProductPayload, context: PlatformRequestContext) -> dict[str, Any]:
    images: list[dict[str, Any]] = []
    if context.images.main_image_url:
      images.append({"imageOrder": 0, "imageType": "REPRESENTATION", "vendorPath": context.images.main_image_url})
    for order, url in enumerate(context.images.additional_image_urls, start=len(images)):
      images.append({"imageOrder": order, "imageType": "DETAIL", "vendorPath": url})

    item = {
      "itemName": product.name,
      "originalPrice": product.effective_original_price,
      "salePrice": product.price,
      "maximumBuyCount": max(product.stock, 0),
      "maximumBuyForPerson": 0,
      "outboundShippingTimeDay": 2,
      "unitCount": 1,
      "adultOnly": "EVERYONE",
      "taxType": "FREE" if product.tax_free else "TAX",
      "externalVendorSku": product.seller_code,
      "modelNo": product.model or "",
      "searchTags": list(product.search_tags)[:20],
      "images": images,
      "attributes": [{"attributeTypeName": name, "attributeValueName": str(value)} for name, value in product.attributes.items()],
      "contents": [{"contentsType": "TEXT", "contentDetails": [{"content": product.description, "detailType": "TEXT"}]}],
    }
    return {
      "displayCategoryCode": context.category_id,
      "sellerProductName": product.name,
      "vendorId": self._credentials.vendor_id,
      "saleStartedAt": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S"),
      "saleEndedAt": "2099-01-01T23:59:59",
      "brand": product.brand or "",
      "manufacture": product.manufacturer or product.brand or "",
      "deliveryMethod": "SEQUENCIAL",
      "deliveryChargeType": "FREE" if product.delivery_fee == 0 else "NOT_FREE",
      "deliveryCharge": product.delivery_fee,
      "vendorUserId": self._credentials.vendor_id,
      "requested": True,
      "items": [item],
    }

  async def register_product(self, payload: dict[str, Any]) -> RegisterResult:
    response = await self._client.request("POST", f"{API_ROOT}/seller-products", json_body=payload)
    data = response.data or {}
    product_id = _product_id(data)
    logger.info("Coupang product registered seller_product_id=%s attempts=%d", product_id, response.attempts)
    return RegisterResult(success=True, platform_product_id=product_id, raw=data, attempts=response.attempts)

  async def update_product(self, product_id: str, payload: dict[str, Any]) -> RegisterResult:
    body = {**payload, "sellerProductId": product_id}
    response = await self._client.request("PUT", f"{API_ROOT}/seller-products", json_body=body)
    return RegisterResult(success=True, platform_product_id=product_id, raw=response.data, attempts=response.attempts)

  async def delete_product(self, product_id: str) -> RegisterResult:
    response = await self._client.request("DELETE", f"{API_ROOT}/seller-products/{product_id}")
    return RegisterResult(success=True, platform_product_id=product_id, raw=response.data, attempts=response.attempts)

  async def list_products(self, **options: Any) -> PlatformListing:
    params = {"vendorId": self._credentials.vendor_id, "maxPerPage": options.get("limit", 50)}
    if options.get("next_token"):
      params["nextToken"] = options["next_token"]
    response = await self._client.request("GET", f"{API_ROOT}/seller-products", params=params)
    return _listing(response.data, response.attempts)

  async def list_orders(self, **options: Any) -> PlatformListing:
    params = {"createdAtFrom": options.get("start_date"), "createdAtTo": options.get("end_date"), "status": options.get("status", "ACCEPT"), "maxPerPage": options.get("limit", 50)}
    path = f"/v2/providers/openapi/apis/api/v4/vendors/{self._credentials.vendor_id}/ordersheets"
    response = await self._client.request("GET", path, params={key: value for key, value in params.items() if value is not None})
    return _listing(response.data, response.attempts)

  async def update_inventory(self, product_id: str, quantity: int) -> RegisterResult:
    response = await self._client.request("PUT", f"{API_ROOT}/vendor-items/{product_id}/quantities/{quantity}")
    return RegisterResult(success=True, platform_product_id=product_id, raw=response.data, attempts=response.attempts)

  async def list_categories(self) -> PlatformListing:
    response = await self._client.request("GET", f"{API_ROOT}/meta/display-categories")
    return _listing(response.data, response.attempts)

  async def upload_image(self, data: bytes, *, filename: str, content_type: str) -> UploadedImage:
    response = await self._client.request("POST", f"{API_ROOT}/images", files={"file": (filename, data, content_type)})
    body = response.data or {}
    hosted = body.get("data") if isinstance(body, dict) else None
    return UploadedImage(url=hosted.get("cdnPath") if isinstance(hosted, dict) else None, raw=body, attempts=response.attempts)

  async def aclose(self) -> None:
    await self._client.aclose()


def _listing(data: Any, attempts: int) -> PlatformListing:
  body = data or {}
  items = body.get("data") if isinstance(body, dict) else body
  if isinstance(items, dict):
    items = items.get("content") or items.get("child") or [items]
  items = items if isinstance(items, list) else []
  return PlatformListing(items=items, total=len(items), raw=body, attempts=attempts)


def _product_id(body: Any) -> str | None:
  """Coupang answers `{"code": "SUCCESS", "data": 1234}` or nests the id under `data`."""
  data = body.get("data") if isinstance(body, dict) else None
  if isinstance(data, dict):
    data = data.get("sellerProductId") or data.get("vendorItemId")
  return None if data is None else str(data)
