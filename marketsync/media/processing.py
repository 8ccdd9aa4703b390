"""Pillow-based variant rendering; CPU-bound, callers run it in a worker thread."""

from __future__ import annotations

import io
from dataclasses import dataclass

from PIL import Image, ImageOps

from marketsync.media.validation import EXTENSION_BY_FORMAT, MIME_BY_FORMAT

_PIL_FORMAT: dict[str, str] = {"jpeg": "JPEG", "png": "PNG", "webp": "WEBP"}


@dataclass(frozen=True)
class ImageProcessingOptions:
  """Target sizes and encoder quality for derived variants."""

  max_width: int = 1200
  max_height: int = 1200
  quality: int = 85
  thumbnail_size: int = 300
  thumbnail_quality: int = 80


@dataclass(frozen=True)
class RenderedVariant:
  """Encoded bytes for one variant plus its dimensions."""

  data: bytes
  width: int
  height: int
  format: str

  @property
  def content_type(self) -> str:
    return MIME_BY_FORMAT[self.format]

  @property
  def extension(self) -> str:
    return EXTENSION_BY_FORMAT[self.format]


def _encode(image: Image.Image, image_format: str, quality: int) -> bytes:
  buffer = io.BytesIO()
  if image_format == "jpeg":
    # JPEG has no alpha channel.
    if image.mode != "RGB":
      image = image.convert("RGB")
    image.save(buffer, format="JPEG", quality=quality, optimize=True, progressive=True)
  elif image_format == "webp":
    image.save(buffer, format="WEBP", quality=quality, method=4)
  else:
    image.save(buffer, format=_PIL_FORMAT.get(image_format, "PNG"), optimize=True)
  return buffer.getvalue()


def render_variants(data: bytes, source_format: str, options: ImageProcessingOptions | None = None) -> dict[str, RenderedVariant]:
  """
  Produce original, optimized and thumbnail variants.

  - optimized: fits inside max_width x max_height, never enlarged, same format as the source
  - thumbnail: thumbnail_size square, cover-cropped from the center, always JPEG
  """
  options = options or ImageProcessingOptions()
  with Image.open(io.BytesIO(data)) as opened:
    opened.load()
    original = RenderedVariant(data=data, width=opened.width, height=opened.height, format=source_format)
    # Apply EXIF orientation so derived variants are upright.
    upright = ImageOps.exif_transpose(opened)

  optimized_format = source_format if source_format in _PIL_FORMAT else "png"
  optimized_image = upright.copy()
  optimized_image.thumbnail((options.max_width, options.max_height), Image.Resampling.LANCZOS)
  optimized = RenderedVariant(data=_encode(optimized_image, optimized_format, options.quality), width=optimized_image.width, height=optimized_image.height, format=optimized_format)

  size = (options.thumbnail_size, options.thumbnail_size)
  thumbnail_image = ImageOps.fit(upright, size, Image.Resampling.LANCZOS)
  thumbnail = RenderedVariant(data=_encode(thumbnail_image, "jpeg", options.thumbnail_quality), width=thumbnail_image.width, height=thumbnail_image.height, format="jpeg")

  return {"original": original, "optimized": optimized, "thumbnail": thumbnail}
