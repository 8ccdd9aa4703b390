"""Download, validate, resize and store product images with bounded concurrency."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import httpx
from starlette.concurrency import run_in_threadpool

from marketsync.config import Settings
from marketsync.core.errors import ValidationError
from marketsync.media.models import VARIANTS, ImageAsset, ImageSource, ImageType, ImageUpload, ProcessedImage
from marketsync.media.processing import ImageProcessingOptions, RenderedVariant, render_variants
from marketsync.media.validation import DEFAULT_ALLOWED_TYPES, MIME_BY_FORMAT, ImageValidationPolicy, detect_image_format, ensure_valid_image, normalize_content_type
from marketsync.services.storage_client import BlobStorage
from marketsync.utils.ids import generate_file_id
from marketsync.utils.retry import RetryingClient, RetryOptions

logger = logging.getLogger(__name__)

_DOWNLOAD_HEADERS = {"User-Agent": "MarketSync-ImageFetcher/1.0", "Accept": "image/*"}


@dataclass(frozen=True)
class ImagePipelineConfig:
  """Limits and encoder settings for the pipeline."""

  max_file_size: int = 5 * 1024 * 1024
  allowed_types: frozenset[str] = DEFAULT_ALLOWED_TYPES
  max_width: int = 1200
  max_height: int = 1200
  quality: int = 85
  thumbnail_size: int = 300
  thumbnail_quality: int = 80
  concurrent_uploads: int = 3
  download_timeout_seconds: float = 30.0

  @property
  def validation_policy(self) -> ImageValidationPolicy:
    return ImageValidationPolicy(max_file_size=self.max_file_size, allowed_types=self.allowed_types)

  @property
  def processing_options(self) -> ImageProcessingOptions:
    return ImageProcessingOptions(max_width=self.max_width, max_height=self.max_height, quality=self.quality, thumbnail_size=self.thumbnail_size, thumbnail_quality=self.thumbnail_quality)

  @classmethod
  def from_settings(cls, settings: Settings) -> ImagePipelineConfig:
    return cls(
      max_file_size=settings.image_max_file_size,
      max_width=settings.image_max_width,
      max_height=settings.image_max_height,
      quality=settings.image_quality,
      thumbnail_size=settings.image_thumbnail_size,
      thumbnail_quality=settings.image_thumbnail_quality,
      concurrent_uploads=settings.image_concurrent_uploads,
      download_timeout_seconds=settings.image_download_timeout_seconds,
    )


def build_object_key(product_id: str, image_type: str, timestamp_ms: int, file_id: str, variant: str, extension: str) -> str:
  """Storage key: products/{product_id}/{image_type}/{timestamp}_{file_id}_{variant}.{ext}"""
  return f"products/{product_id}/{image_type}/{timestamp_ms}_{file_id}_{variant}.{extension}"


class ImagePipeline:
  """Turns image URLs or uploads into stored original/optimized/thumbnail variants."""

  def __init__(self, storage: BlobStorage, *, config: ImagePipelineConfig | None = None, http_client: httpx.AsyncClient | None = None, retrying_client: RetryingClient | None = None, clock: Callable[[], float] = time.time) -> None:
    self._storage = storage
    self._config = config or ImagePipelineConfig()
    self._http = http_client or httpx.AsyncClient(timeout=self._config.download_timeout_seconds, follow_redirects=True, headers=_DOWNLOAD_HEADERS)
    self._owns_http = http_client is None
    timeout_ms = int(self._config.download_timeout_seconds * 1000)
    self._retrying = retrying_client or RetryingClient(RetryOptions(max_retries=2, initial_delay_ms=500, max_delay_ms=5000, timeout_ms=timeout_ms), name="image-download")
    self._clock = clock

  @property
  def config(self) -> ImagePipelineConfig:
    return self._config

  async def aclose(self) -> None:
    if self._owns_http:
      await self._http.aclose()

  async def process_images(self, images: Sequence[ImageSource], product_id: str) -> list[ProcessedImage]:
    """
    Process images in batches of `concurrent_uploads`.

    Images inside a batch run concurrently, batches run one after another. The first image is the
    main image and the rest are additional. A failed image yields a ProcessedImage with status
    "failed" and never aborts the others.
    """
    batch_size = max(1, self._config.concurrent_uploads)
    results: list[ProcessedImage] = []
    for batch_start in range(0, len(images), batch_size):
      batch = images[batch_start : batch_start + batch_size]
      batch_results = await asyncio.gather(*(self.process_image(source, product_id, image_type="main" if index == 0 else "additional", index=index) for index, source in enumerate(batch, start=batch_start)))
      results.extend(batch_results)

    failed = sum(1 for image in results if image.status == "failed")
    logger.info("Processed images product_id=%s total=%d failed=%d", product_id, len(results), failed)
    return results

  async def process_image(self, source: ImageSource, product_id: str, *, image_type: ImageType = "main", index: int = 0) -> ProcessedImage:
    """Acquire, validate, render and upload a single image."""
    source_url = source if isinstance(source, str) else None
    result = ProcessedImage(product_id=product_id, image_type=image_type, index=index, source_url=source_url)
    try:
      data, content_type = await self._acquire(source)
      detected = ensure_valid_image(data, content_type, self._config.validation_policy)
      rendered = await run_in_threadpool(render_variants, data, detected, self._config.processing_options)
      result.content_hash = hashlib.sha256(data).hexdigest()

      timestamp_ms = int(self._clock() * 1000)
      file_id = generate_file_id()
      assets = await asyncio.gather(*(self._store_variant(rendered[variant], variant, product_id, image_type, timestamp_ms, file_id, source_url) for variant in VARIANTS))
      result.assets = {asset.variant: asset for asset in assets}
      result.status = "processed"
    except Exception as exc:  # noqa: BLE001
      # Per-image isolation: record the failure and let the rest of the batch continue.
      result.status = "failed"
      result.error = _describe_failure(exc)
      logger.warning("Image processing failed product_id=%s index=%d source=%s error=%s", product_id, index, source_url or "<upload>", result.error)
    return result

  async def delete_image(self, key: str) -> None:
    await self._storage.delete(key)

  async def delete_product_images(self, product_id: str) -> int:
    """Delete every stored variant for a product."""
    deleted = await self._storage.delete_prefix(f"products/{product_id}/")
    logger.info("Deleted product images product_id=%s count=%d", product_id, deleted)
    return deleted

  async def _acquire(self, source: ImageSource) -> tuple[bytes, str | None]:
    if isinstance(source, ImageUpload):
      return source.data, source.content_type
    return await self._download(source)

  async def _download(self, url: str) -> tuple[bytes, str | None]:
    if not url.startswith(("http://", "https://")):
      raise ValidationError(f"Unsupported image URL: {url!r}")

    async def _fetch() -> tuple[bytes, str | None]:
      async with self._http.stream("GET", url) as response:
        response.raise_for_status()
        declared_length = response.headers.get("content-length")
        if declared_length and declared_length.isdigit() and int(declared_length) > self._config.max_file_size:
          raise ValidationError(f"Image is {declared_length} bytes; the limit is {self._config.max_file_size} bytes.")
        chunks: list[bytes] = []
        received = 0
        async for chunk in response.aiter_bytes():
          received += len(chunk)
          # Stop reading oversized bodies early; validation reports the size error.
          if received > self._config.max_file_size:
            chunks.append(chunk)
            break
          chunks.append(chunk)
        return b"".join(chunks), response.headers.get("content-type")

    data, content_type = await self._retrying.execute_or_raise(_fetch)
    declared = normalize_content_type(content_type)
    # Servers often label images generically; trust the signature in that case.
    if declared in (None, "application/octet-stream", "binary/octet-stream"):
      detected = detect_image_format(data)
      content_type = MIME_BY_FORMAT.get(detected) if detected else content_type
    return data, content_type

  async def _store_variant(self, variant_data: RenderedVariant, variant: str, product_id: str, image_type: str, timestamp_ms: int, file_id: str, source_url: str | None) -> ImageAsset:
    key = build_object_key(product_id, image_type, timestamp_ms, file_id, variant, variant_data.extension)
    metadata = {"type": variant, "productId": product_id, "imageType": image_type, "width": str(variant_data.width), "height": str(variant_data.height)}
    url = await self._storage.upload(key, variant_data.data, content_type=variant_data.content_type, metadata=metadata)
    return ImageAsset(source_url=source_url, product_id=product_id, variant=variant, url=url, key=key, width=variant_data.width, height=variant_data.height, format=variant_data.format, size_bytes=len(variant_data.data), status="processed")  # type: ignore[arg-type]


def _describe_failure(exc: BaseException) -> str:
  if isinstance(exc, ValidationError) and exc.errors:
    return "; ".join(exc.errors)
  return f"{type(exc).__name__}: {exc}"
