from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictStr, StringConstraints, field_validator
from pydantic.alias_generators import to_camel

from marketsync.marketplaces.contracts import ProductPayload, RegistrationOptions
from marketsync.services.sync import InventoryUpdate

PlatformName = Literal["elevenst", "coupang", "naver", "esm"]

MAX_IMAGES = 10

ProductName = Annotated[str, StringConstraints(strict=True, strip_whitespace=True, min_length=1, max_length=200)]


class _ApiModel(BaseModel):
  """Accept camelCase from clients while keeping snake_case attributes."""

  model_config = ConfigDict(extra="forbid", populate_by_name=True, alias_generator=to_camel)


class ProductIn(_ApiModel):
  """Product definition shared by every marketplace."""

  name: ProductName = Field(description="Product display name; surrounding whitespace is stripped.")
  description: StrictStr = Field(default="", max_length=50_000, description="Detail page text or HTML.")
  price: int = Field(gt=0, description="Sale price in KRW.")
  original_price: int | None = Field(default=None, gt=0, description="List price in KRW; defaults to the sale price.")
  stock: int = Field(default=0, ge=0)
  sku: StrictStr | None = Field(default=None, min_length=1, max_length=100)
  product_id: StrictStr | None = Field(default=None, min_length=1, max_length=100, description="Internal product id used for image storage keys.")
  brand: StrictStr | None = None
  manufacturer: StrictStr | None = None
  model: StrictStr | None = None
  standard_category: StrictStr | None = Field(default=None, description="Internal category resolved through the configured category mappings.")
  category: dict[PlatformName, StrictStr] = Field(default_factory=dict, description="Explicit platform category ids; these win over mappings.")
  images: list[StrictStr] = Field(default_factory=list, max_length=MAX_IMAGES, description="Image URLs; the first one is the main image.")
  attributes: dict[str, Any] = Field(default_factory=dict)
  search_tags: list[StrictStr] = Field(default_factory=list, max_length=20)
  delivery_fee: int = Field(default=0, ge=0)
  tax_free: bool = False

  @field_validator("images")
  @classmethod
  def validate_image_urls(cls, value: list[str]) -> list[str]:
    for url in value:
      if not url.startswith(("http://", "https://")):
        raise ValueError("Image URLs must be absolute http(s) URLs.")
    return value

  def to_domain(self) -> ProductPayload:
    return ProductPayload(
      name=self.name.strip(),
      description=self.description,
      price=self.price,
      original_price=self.original_price,
      stock=self.stock,
      sku=self.sku,
      product_id=self.product_id,
      brand=self.brand,
      manufacturer=self.manufacturer,
      model=self.model,
      standard_category=self.standard_category,
      category=dict(self.category),
      images=list(self.images),
      attributes=dict(self.attributes),
      search_tags=list(self.search_tags),
      delivery_fee=self.delivery_fee,
      tax_free=self.tax_free,
    )


class RegistrationOptionsIn(_ApiModel):
  skip_category_validation: bool = False
  skip_images: bool = False
  esm_marketplace: Literal["gmarket", "auction"] = "gmarket"

  def to_domain(self) -> RegistrationOptions:
    return RegistrationOptions(skip_category_validation=self.skip_category_validation, skip_images=self.skip_images, esm_marketplace=self.esm_marketplace)


class RegisterProductRequest(_ApiModel):
  """Register one product on the selected marketplaces."""

  product: ProductIn
  platforms: list[PlatformName] = Field(min_length=1, max_length=4)
  options: RegistrationOptionsIn = Field(default_factory=RegistrationOptionsIn)
  background: bool = Field(default=False, description="Return 202 with the job id instead of waiting for the result.")


class BatchRegisterRequest(_ApiModel):
  products: list[ProductIn] = Field(min_length=1, max_length=50)
  platforms: list[PlatformName] = Field(min_length=1, max_length=4)
  options: RegistrationOptionsIn = Field(default_factory=RegistrationOptionsIn)


class OrderSyncRequest(_ApiModel):
  platforms: list[PlatformName] | None = None
  start_date: StrictStr | None = Field(default=None, description="Inclusive start in the platform's date format.")
  end_date: StrictStr | None = None
  status: StrictStr | None = None

  def filters(self) -> dict[str, Any]:
    return {key: value for key, value in {"start_date": self.start_date, "end_date": self.end_date, "status": self.status}.items() if value is not None}


class InventoryUpdateIn(_ApiModel):
  quantity: int = Field(ge=0)
  product_ids: dict[PlatformName, StrictStr] = Field(min_length=1, description="Platform product id per marketplace.")

  def to_domain(self) -> InventoryUpdate:
    return InventoryUpdate(quantity=self.quantity, product_ids=dict(self.product_ids))


class InventorySyncRequest(_ApiModel):
  updates: list[InventoryUpdateIn] = Field(min_length=1, max_length=500)
