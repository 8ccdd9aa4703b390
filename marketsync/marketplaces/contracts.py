"""Contracts shared by the orchestrator and marketplace adapters."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from marketsync.media.models import ImageSource, ImageUrls

EsmMarketplace = Literal["gmarket", "auction"]


@dataclass
class ProductPayload:
  """Platform-neutral product description submitted for registration."""

  name: str
  description: str
  price: int
  original_price: int | None = None
  stock: int = 0
  sku: str | None = None
  product_id: str | None = None
  brand: str | None = None
  manufacturer: str | None = None
  model: str | None = None
  standard_category: str | None = None
  category: dict[str, str] = field(default_factory=dict)
  images: list[ImageSource] = field(default_factory=list)
  attributes: dict[str, Any] = field(default_factory=dict)
  search_tags: list[str] = field(default_factory=list)
  delivery_fee: int = 0
  tax_free: bool = False

  @property
  def effective_original_price(self) -> int:
    return self.original_price or self.price

  @property
  def seller_code(self) -> str:
    """Seller-side product code sent to every platform."""
    return self.sku or self.product_id or f"AUTO_{hashlib.sha1(self.name.encode('utf-8')).hexdigest()[:12].upper()}"

  def to_dict(self) -> dict[str, Any]:
    """Serializable form persisted on jobs; uploaded image bytes are kept so retries can replay them."""
    return {
      "name": self.name,
      "description": self.description,
      "price": self.price,
      "original_price": self.original_price,
      "stock": self.stock,
      "sku": self.sku,
      "product_id": self.product_id,
      "brand": self.brand,
      "manufacturer": self.manufacturer,
      "model": self.model,
      "standard_category": self.standard_category,
      "category": dict(self.category),
      "images": list(self.images),
      "attributes": dict(self.attributes),
      "search_tags": list(self.search_tags),
      "delivery_fee": self.delivery_fee,
      "tax_free": self.tax_free,
    }

  @classmethod
  def from_dict(cls, data: dict[str, Any]) -> ProductPayload:
    known = {name for name in cls.__dataclass_fields__}
    return cls(**{key: value for key, value in data.items() if key in known})


@dataclass(frozen=True)
class RegistrationOptions:
  """Caller switches for a registration run."""

  skip_category_validation: bool = False
  skip_images: bool = False
  esm_marketplace: EsmMarketplace = "gmarket"

  def to_dict(self) -> dict[str, Any]:
    return {"skip_category_validation": self.skip_category_validation, "skip_images": self.skip_images, "esm_marketplace": self.esm_marketplace}

  @classmethod
  def from_dict(cls, data: dict[str, Any] | None) -> RegistrationOptions:
    data = data or {}
    return cls(skip_category_validation=bool(data.get("skip_category_validation", False)), skip_images=bool(data.get("skip_images", False)), esm_marketplace=data.get("esm_marketplace", "gmarket"))


@dataclass(frozen=True)
class PlatformRequestContext:
  """Everything a payload builder needs besides the product."""

  category_id: str | None
  images: ImageUrls
  options: RegistrationOptions


@dataclass(frozen=True)
class RegisterResult:
  """Successful product mutation on a platform."""

  success: bool
  platform_product_id: str | None
  raw: Any = None
  attempts: int = 1


@dataclass(frozen=True)
class PlatformListing:
  """Result of a list operation (products, orders or categories)."""

  items: list[dict[str, Any]]
  total: int
  raw: Any = None
  attempts: int = 1


@dataclass(frozen=True)
class UploadedImage:
  """Image hosted by the platform itself."""

  url: str | None
  raw: Any = None
  attempts: int = 1


class PlatformAdapter(Protocol):
  """Capability set every marketplace integration implements."""

  platform: str

  def build_payload(self, product: ProductPayload, context: PlatformRequestContext) -> dict[str, Any]:
    """Translate the neutral product into this platform's registration body."""

  async def register_product(self, payload: dict[str, Any]) -> RegisterResult:
    """Create a listing; raises PlatformError on failure."""

  async def update_product(self, product_id: str, payload: dict[str, Any]) -> RegisterResult:
    """Replace an existing listing."""

  async def delete_product(self, product_id: str) -> RegisterResult:
    """Remove a listing."""

  async def list_products(self, **options: Any) -> PlatformListing:
    """Page through listings."""

  async def list_orders(self, **options: Any) -> PlatformListing:
    """Page through orders."""

  async def update_inventory(self, product_id: str, quantity: int) -> RegisterResult:
    """Set the sellable quantity of a listing."""

  async def list_categories(self) -> PlatformListing:
    """Return the platform category tree."""

  async def upload_image(self, data: bytes, *, filename: str, content_type: str) -> UploadedImage:
    """Upload image bytes to platform-hosted storage."""

  async def aclose(self) -> None:
    """Release network resources."""
