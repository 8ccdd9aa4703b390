"""11st (11번가) seller open API adapter."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from marketsync.config import PlatformCredentials
from marketsync.marketplaces.contracts import PlatformListing, PlatformRequestContext, ProductPayload, RegisterResult, UploadedImage
from marketsync.marketplaces.http import MarketplaceHttpClient

logger = logging.getLogger(__name__)

SELLER_API = "/openapi/SellerApi"


class ElevenstSigner:
  """11st authenticates every call with a static `openapikey` header."""

  def __init__(self, api_key: str) -> None:
    self._api_key = api_key

  async def headers(self, method: str, url: httpx.URL, body: bytes) -> dict[str, str]:
    return {"openapikey": self._api_key}


class ElevenstAdapter:
  platform = "elevenst"

  def __init__(self, credentials: PlatformCredentials, client: MarketplaceHttpClient) -> None:
    self._credentials = credentials
    self._client = client

  def build_payload(self, product: ProductPayload, context: PlatformRequestContext) -> dict[str, Any]:
    return {
      "sellerProductId": product.seller_code,
      "productName": product.name,
      "productDescription": product.description,
      "salePrice": product.price,
      "originalPrice": product.effective_original_price,
      "categoryId": context.category_id,
      "stockQuantity": max(product.stock, 0),
      "brand": product.brand,
      "manufacturer": product.manufacturer,
      "modelName": product.model,
      "productImageUrl": context.images.main_image_url,
      "additionalImageUrls": list(context.images.additional_image_urls),
      "searchKeywords": list(product.search_tags),
      "taxType": "DUTY_FREE" if product.tax_free else "TAXABLE",
      "deliveryInfo": {"deliveryType": "FREE" if product.delivery_fee == 0 else "PAID", "deliveryFee": product.delivery_fee},
      "productAttributes": [{"name": name, "value": str(value)} for name, value in product.attributes.items()],
    }

  async def register_product(self, payload: dict[str, Any]) -> RegisterResult:
    response = await self._client.request("POST", f"{SELLER_API}/Product/ProductCreate", json_body=payload)
    data = response.data or {}
    product_id = _field(data, "productId", "prdNo")
    logger.info("11st product registered product_id=%s attempts=%d", product_id, response.attempts)
    return RegisterResult(success=True, platform_product_id=product_id, raw=data, attempts=response.attempts)

  async def update_product(self, product_id: str, payload: dict[str, Any]) -> RegisterResult:
    response = await self._client.request("PUT", f"{SELLER_API}/Product/ProductUpdate", json_body={**payload, "productId": product_id})
    return RegisterResult(success=True, platform_product_id=product_id, raw=response.data, attempts=response.attempts)

  async def delete_product(self, product_id: str) -> RegisterResult:
    response = await self._client.request("DELETE", f"{SELLER_API}/Product/ProductDelete", params={"productId": product_id})
    return RegisterResult(success=True, platform_product_id=product_id, raw=response.data, attempts=response.attempts)

  async def list_products(self, **options: Any) -> PlatformListing:
    params = {"page": options.get("page", 1), "limit": options.get("limit", 50)}
    response = await self._client.request("GET", f"{SELLER_API}/Product/ProductList", params=params)
    return _listing(response.data, response.attempts, "products")

  async def list_orders(self, **options: Any) -> PlatformListing:
    params = {"startDate": options.get("start_date"), "endDate": options.get("end_date"), "orderStatus": options.get("status"), "page": options.get("page", 1), "limit": options.get("limit", 50)}
    response = await self._client.request("GET", f"{SELLER_API}/Order/OrderList", params={key: value for key, value in params.items() if value is not None})
    return _listing(response.data, response.attempts, "orders")

  async def update_inventory(self, product_id: str, quantity: int) -> RegisterResult:
    response = await self._client.request("PUT", f"{SELLER_API}/Product/StockUpdate", json_body={"productId": product_id, "stockQuantity": quantity})
    return RegisterResult(success=True, platform_product_id=product_id, raw=response.data, attempts=response.attempts)

  async def list_categories(self) -> PlatformListing:
    response = await self._client.request("GET", "/openapi/OpenApiService/CategoryService/CategoryList")
    return _listing(response.data, response.attempts, "categories")

  async def upload_image(self, data: bytes, *, filename: str, content_type: str) -> UploadedImage:
    response = await self._client.request("POST", f"{SELLER_API}/Product/ImageUpload", files={"image": (filename, data, content_type)})
    body = response.data or {}
    return UploadedImage(url=_field(body, "imageUrl", "url"), raw=body, attempts=response.attempts)

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


def _listing(data: Any, attempts: int, key: str) -> PlatformListing:
  body = data if isinstance(data, dict) else {}
  items = body.get(key)
  if not isinstance(items, list):
    items = data if isinstance(data, list) else []
  total = body.get("totalCount")
  return PlatformListing(items=items, total=int(total) if isinstance(total, int) else len(items), raw=data, attempts=attempts)
