"""Shared fixtures: settings env, fake storage, fake adapters and Pillow-generated images."""

from __future__ import annotations

import io
import os
from typing import Any

import pytest
from PIL import Image

# Ensure required settings are available before any module reads them.
os.environ.setdefault("MARKETSYNC_ALLOWED_ORIGINS", "http://localhost")
os.environ.setdefault("MARKETSYNC_LOG_DIR", "/tmp/marketsync-test-logs")

from marketsync.core.errors import PlatformError  # noqa: E402
from marketsync.marketplaces.contracts import PlatformListing, PlatformRequestContext, ProductPayload, RegisterResult, UploadedImage  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


def make_image_bytes(image_format: str = "JPEG", size: tuple[int, int] = (1600, 900), color: tuple[int, int, int] = (200, 30, 30)) -> bytes:
  """Render a solid-colour image in memory."""
  mode = "RGBA" if image_format == "PNG" else "RGB"
  fill = (*color, 255) if mode == "RGBA" else color
  buffer = io.BytesIO()
  Image.new(mode, size, fill).save(buffer, format=image_format)
  return buffer.getvalue()


class FakeStorage:
  """In-memory BlobStorage."""

  def __init__(self, base_url: str = "https://cdn.test") -> None:
    self.base_url = base_url
    self.objects: dict[str, tuple[bytes, str, dict[str, str]]] = {}

  async def upload(self, key: str, data: bytes, *, content_type: str, metadata: dict[str, str] | None = None, cache_control: str = "public, max-age=31536000") -> str:
    self.objects[key] = (data, content_type, dict(metadata or {}))
    return f"{self.base_url}/{key}"

  async def delete(self, key: str) -> None:
    self.objects.pop(key, None)

  async def delete_prefix(self, prefix: str) -> int:
    doomed = [key for key in self.objects if key.startswith(prefix)]
    for key in doomed:
      del self.objects[key]
    return len(doomed)


class FakeAdapter:
  """Scripted PlatformAdapter: each register call pops the next outcome (RegisterResult or exception)."""

  def __init__(self, platform: str, outcomes: list[Any] | None = None) -> None:
    self.platform = platform
    self.outcomes = list(outcomes or [])
    self.payloads: list[dict[str, Any]] = []
    self.contexts: list[PlatformRequestContext] = []
    self.closed = False

  def build_payload(self, product: ProductPayload, context: PlatformRequestContext) -> dict[str, Any]:
    self.contexts.append(context)
    return {"name": product.name, "category": context.category_id, "main_image": context.images.main_image_url}

  async def register_product(self, payload: dict[str, Any]) -> RegisterResult:
    self.payloads.append(payload)
    outcome = self.outcomes.pop(0) if self.outcomes else RegisterResult(success=True, platform_product_id=f"{self.platform}-1")
    if isinstance(outcome, BaseException):
      raise outcome
    return outcome

  async def update_product(self, product_id: str, payload: dict[str, Any]) -> RegisterResult:
    return RegisterResult(success=True, platform_product_id=product_id)

  async def delete_product(self, product_id: str) -> RegisterResult:
    return RegisterResult(success=True, platform_product_id=product_id)

  async def list_products(self, **options: Any) -> PlatformListing:
    return PlatformListing(items=[], total=0)

  async def list_orders(self, **options: Any) -> PlatformListing:
    return PlatformListing(items=[{"orderId": f"{self.platform}-order-1"}], total=1)

  async def update_inventory(self, product_id: str, quantity: int) -> RegisterResult:
    outcome = self.outcomes.pop(0) if self.outcomes else None
    if isinstance(outcome, BaseException):
      raise outcome
    return RegisterResult(success=True, platform_product_id=product_id)

  async def list_categories(self) -> PlatformListing:
    return PlatformListing(items=[], total=0)

  async def upload_image(self, data: bytes, *, filename: str, content_type: str) -> UploadedImage:
    return UploadedImage(url=f"https://{self.platform}.test/{filename}")

  async def aclose(self) -> None:
    self.closed = True


def platform_error(platform: str, *, code: str = "SERVER_ERROR", retryable: bool = True, attempts: int = 4, http_status: int | None = 503) -> PlatformError:
  return PlatformError(f"{platform} failed", platform=platform, code=code, http_status=http_status, retryable=retryable, attempts=attempts)


@pytest.fixture
def fake_storage() -> FakeStorage:
  return FakeStorage()


@pytest.fixture
def product() -> ProductPayload:
  return ProductPayload(name="무선 블루투스 이어폰", description="<p>노이즈 캔슬링</p>", price=39000, original_price=49000, stock=25, sku="EAR-001", brand="Sonic", standard_category="electronics/audio", search_tags=["이어폰", "블루투스"])


@pytest.fixture
def make_adapter():
  return FakeAdapter


@pytest.fixture
def make_platform_error():
  return platform_error


@pytest.fixture
def image_bytes():
  return make_image_bytes
