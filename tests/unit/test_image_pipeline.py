from __future__ import annotations

import io
import re

import httpx
import pytest
from PIL import Image

from marketsync.media.models import ImageUpload, ImageUrls
from marketsync.media.pipeline import ImagePipeline, ImagePipelineConfig, build_object_key
from marketsync.media.processing import render_variants
from marketsync.utils.retry import RetryingClient, RetryOptions

KEY_PATTERN = re.compile(r"^products/P1/(main|additional)/1700000000000_[0-9a-f]+_(original|optimized|thumbnail)\.(jpg|png|webp)$")


async def _no_sleep(seconds: float) -> None:
  return None


def _pipeline(storage, *, transport: httpx.MockTransport | None = None, **config) -> ImagePipeline:
  http_client = httpx.AsyncClient(transport=transport or httpx.MockTransport(lambda request: httpx.Response(404)))
  retrying = RetryingClient(RetryOptions(max_retries=1, initial_delay_ms=1, timeout_ms=None), sleep=_no_sleep)
  return ImagePipeline(storage, config=ImagePipelineConfig(**config), http_client=http_client, retrying_client=retrying, clock=lambda: 1_700_000_000.0)


def test_render_variants_bounds_sizes(image_bytes) -> None:
  rendered = render_variants(image_bytes("PNG", (2400, 1200)), "png")
  assert (rendered["original"].width, rendered["original"].height) == (2400, 1200)
  assert (rendered["optimized"].width, rendered["optimized"].height) == (1200, 600)
  assert rendered["optimized"].format == "png"
  assert (rendered["thumbnail"].width, rendered["thumbnail"].height) == (300, 300)
  assert rendered["thumbnail"].content_type == "image/jpeg"


def test_small_images_are_not_enlarged(image_bytes) -> None:
  rendered = render_variants(image_bytes("JPEG", (400, 200)), "jpeg")
  assert (rendered["optimized"].width, rendered["optimized"].height) == (400, 200)


def test_object_key_layout() -> None:
  assert build_object_key("P9", "main", 123, "abc", "thumbnail", "jpg") == "products/P9/main/123_abc_thumbnail.jpg"


@pytest.mark.anyio
async def test_upload_produces_three_stored_variants(fake_storage, image_bytes) -> None:
  pipeline = _pipeline(fake_storage)
  result = await pipeline.process_image(ImageUpload(image_bytes("JPEG", (1600, 900)), "image/jpeg", "front.jpg"), "P1")

  assert result.status == "processed"
  assert set(result.assets) == {"original", "optimized", "thumbnail"}
  assert len(fake_storage.objects) == 3
  for key in fake_storage.objects:
    assert KEY_PATTERN.match(key), key
  thumbnail = result.assets["thumbnail"]
  assert (thumbnail.width, thumbnail.height) == (300, 300)
  assert thumbnail.url == f"https://cdn.test/{thumbnail.key}"
  assert thumbnail.watermark_detected is None

  stored, content_type, metadata = fake_storage.objects[result.assets["optimized"].key]
  with Image.open(io.BytesIO(stored)) as reopened:
    assert reopened.width == 1200
  assert content_type == "image/jpeg"
  assert metadata["productId"] == "P1"
  assert metadata["type"] == "optimized"


@pytest.mark.anyio
async def test_failed_image_does_not_abort_batch(fake_storage, image_bytes) -> None:
  pipeline = _pipeline(fake_storage, concurrent_uploads=2)
  sources = [
    ImageUpload(image_bytes("JPEG", (800, 800)), "image/jpeg"),
    ImageUpload(b"<html>", "image/png"),
    ImageUpload(image_bytes("PNG", (500, 500)), "image/png"),
  ]

  results = await pipeline.process_images(sources, "P1")

  assert [image.status for image in results] == ["processed", "failed", "processed"]
  assert [image.image_type for image in results] == ["main", "additional", "additional"]
  assert [image.index for image in results] == [0, 1, 2]
  assert results[1].error == "File signature does not match a known image format."
  assert len(fake_storage.objects) == 6

  urls = ImageUrls.from_processed(results)
  assert urls.main_image_url == results[0].url_for("optimized")
  assert urls.additional_image_urls == (results[2].url_for("optimized"),)
  assert len(urls.thumbnail_urls) == 2


@pytest.mark.anyio
async def test_failed_main_image_promotes_next(fake_storage, image_bytes) -> None:
  pipeline = _pipeline(fake_storage)
  results = await pipeline.process_images([ImageUpload(b"", "image/jpeg"), ImageUpload(image_bytes("JPEG", (100, 100)), "image/jpeg")], "P1")
  urls = ImageUrls.from_processed(results)
  assert urls.main_image_url == results[1].url_for("optimized")
  assert urls.additional_image_urls == ()


@pytest.mark.anyio
async def test_downloads_url_and_trusts_signature_for_generic_content_type(fake_storage, image_bytes) -> None:
  payload = image_bytes("WEBP", (640, 480))
  seen: list[str] = []

  def handler(request: httpx.Request) -> httpx.Response:
    seen.append(str(request.url))
    return httpx.Response(200, content=payload, headers={"content-type": "application/octet-stream"})

  pipeline = _pipeline(fake_storage, transport=httpx.MockTransport(handler))
  result = await pipeline.process_image("https://images.example.com/a.webp", "P1")

  assert seen == ["https://images.example.com/a.webp"]
  assert result.status == "processed"
  assert result.source_url == "https://images.example.com/a.webp"
  assert result.assets["optimized"].format == "webp"
  assert result.assets["original"].source_url == "https://images.example.com/a.webp"


@pytest.mark.anyio
async def test_download_errors_are_recorded(fake_storage) -> None:
  pipeline = _pipeline(fake_storage)
  missing = await pipeline.process_image("https://images.example.com/missing.jpg", "P1")
  local = await pipeline.process_image("file:///etc/passwd", "P1")

  assert missing.status == "failed"
  assert "HTTPStatusError" in missing.error
  assert local.status == "failed"
  assert "Unsupported image URL" in local.error
  assert fake_storage.objects == {}


@pytest.mark.anyio
async def test_oversized_download_is_rejected(fake_storage, image_bytes) -> None:
  payload = image_bytes("JPEG", (300, 300))
  transport = httpx.MockTransport(lambda request: httpx.Response(200, content=payload, headers={"content-type": "image/jpeg"}))
  pipeline = _pipeline(fake_storage, transport=transport, max_file_size=100)

  result = await pipeline.process_image("https://images.example.com/big.jpg", "P1")

  assert result.status == "failed"
  assert "the limit is 100 bytes" in result.error


@pytest.mark.anyio
async def test_delete_product_images_removes_every_variant(fake_storage, image_bytes) -> None:
  pipeline = _pipeline(fake_storage)
  await pipeline.process_images([ImageUpload(image_bytes("JPEG", (50, 50)), "image/jpeg")] * 2, "P1")
  await fake_storage.upload("products/P2/main/1_x_original.jpg", b"x", content_type="image/jpeg")

  deleted = await pipeline.delete_product_images("P1")

  assert deleted == 6
  assert list(fake_storage.objects) == ["products/P2/main/1_x_original.jpg"]


@pytest.mark.anyio
async def test_delete_image_removes_single_variant(fake_storage, image_bytes) -> None:
  pipeline = _pipeline(fake_storage)
  [processed] = await pipeline.process_images([ImageUpload(image_bytes("PNG", (40, 40)), "image/png")], "P1")
  thumbnail_key = processed.assets["thumbnail"].key

  await pipeline.delete_image(thumbnail_key)

  assert thumbnail_key not in fake_storage.objects
  assert len(fake_storage.objects) == 2
