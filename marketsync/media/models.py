"""Domain models for product image processing."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

ImageVariant = Literal["original", "optimized", "thumbnail"]
ImageStatus = Literal["pending", "processed", "failed"]
ImageType = Literal["main", "additional"]

VARIANTS: tuple[ImageVariant, ...] = ("original", "optimized", "thumbnail")


@dataclass(frozen=True)
class ImageUpload:
  """Image bytes supplied directly by the caller instead of a URL."""

  data: bytes
  content_type: str
  filename: str | None = None

  def __repr__(self) -> str:
    return f"ImageUpload(filename={self.filename!r}, content_type={self.content_type!r}, size={len(self.data)})"


ImageSource = str | ImageUpload


@dataclass
class ImageAsset:
  """One stored variant of a source image."""

  source_url: str | None
  product_id: str
  variant: ImageVariant
  url: str | None = None
  key: str | None = None
  width: int = 0
  height: int = 0
  format: str = ""
  size_bytes: int = 0
  status: ImageStatus = "pending"
  watermark_detected: bool | None = None

  def to_dict(self) -> dict[str, Any]:
    return {"variant": self.variant, "url": self.url, "key": self.key, "width": self.width, "height": self.height, "format": self.format, "size": self.size_bytes, "status": self.status, "watermarkDetected": self.watermark_detected}


@dataclass
class ProcessedImage:
  """All variants produced for one source image."""

  product_id: str
  image_type: ImageType
  index: int
  source_url: str | None = None
  status: ImageStatus = "pending"
  assets: dict[str, ImageAsset] = field(default_factory=dict)
  content_hash: str | None = None
  error: str | None = None

  def url_for(self, variant: ImageVariant) -> str | None:
    asset = self.assets.get(variant)
    return asset.url if asset is not None else None

  def to_dict(self) -> dict[str, Any]:
    return {
      "index": self.index,
      "imageType": self.image_type,
      "sourceUrl": self.source_url,
      "status": self.status,
      "contentHash": self.content_hash,
      "error": self.error,
      "variants": {variant: asset.to_dict() for variant, asset in self.assets.items()},
    }


@dataclass(frozen=True)
class ImageUrls:
  """Image fields consumed by platform payload builders."""

  main_image_url: str | None = None
  additional_image_urls: tuple[str, ...] = ()
  thumbnail_urls: tuple[str, ...] = ()

  @classmethod
  def from_processed(cls, images: list[ProcessedImage]) -> ImageUrls:
    """Use the optimized variant of processed images; failed images are skipped."""
    processed = [image for image in images if image.status == "processed"]
    main = next((image for image in processed if image.image_type == "main"), None)
    if main is None and processed:
      # The first image failed; promote the next one.
      main = processed[0]
    additional = tuple(url for image in processed if image is not main and (url := image.url_for("optimized")))
    thumbnails = tuple(url for image in processed if (url := image.url_for("thumbnail")))
    return cls(main_image_url=main.url_for("optimized") if main else None, additional_image_urls=additional, thumbnail_urls=thumbnails)

  def to_dict(self) -> dict[str, Any]:
    return {"mainImage": self.main_image_url, "additionalImages": list(self.additional_image_urls), "thumbnails": list(self.thumbnail_urls)}
