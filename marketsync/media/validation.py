"""Image byte validation: size, declared MIME type and magic-byte signature."""

from __future__ import annotations

from dataclasses import dataclass

from marketsync.core.errors import ValidationError

DEFAULT_MAX_FILE_SIZE = 5 * 1024 * 1024
DEFAULT_ALLOWED_TYPES: frozenset[str] = frozenset({"image/jpeg", "image/png", "image/webp"})

MIME_BY_FORMAT: dict[str, str] = {"jpeg": "image/jpeg", "png": "image/png", "webp": "image/webp", "gif": "image/gif"}
EXTENSION_BY_FORMAT: dict[str, str] = {"jpeg": "jpg", "png": "png", "webp": "webp", "gif": "gif"}
_MIME_ALIASES: dict[str, str] = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg", "image/x-png": "image/png"}


@dataclass(frozen=True)
class ImageValidationPolicy:
  """Limits applied to every image before it is processed."""

  max_file_size: int = DEFAULT_MAX_FILE_SIZE
  allowed_types: frozenset[str] = DEFAULT_ALLOWED_TYPES


def normalize_content_type(content_type: str | None) -> str | None:
  """Lower-case, drop parameters and resolve common aliases."""
  if not content_type:
    return None
  base = content_type.split(";", 1)[0].strip().lower()
  if not base:
    return None
  return _MIME_ALIASES.get(base, base)


def detect_image_format(data: bytes) -> str | None:
  """Identify an image format from its leading bytes."""
  if data[:3] == b"\xff\xd8\xff":
    return "jpeg"
  if data[:4] == b"\x89PNG":
    return "png"
  if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
    return "webp"
  if data[:3] == b"GIF":
    return "gif"
  return None


def validate_image(data: bytes, content_type: str | None, policy: ImageValidationPolicy | None = None) -> list[str]:
  """Return every validation problem; an empty list means the image is acceptable."""
  policy = policy or ImageValidationPolicy()
  errors: list[str] = []

  if not data:
    return ["Image is empty."]

  if len(data) > policy.max_file_size:
    errors.append(f"Image is {len(data)} bytes; the limit is {policy.max_file_size} bytes.")

  declared = normalize_content_type(content_type)
  if declared not in policy.allowed_types:
    errors.append(f"Unsupported content type: {content_type!r}.")

  detected = detect_image_format(data)
  if detected is None:
    errors.append("File signature does not match a known image format.")
  elif declared in policy.allowed_types and MIME_BY_FORMAT[detected] != declared:
    # Declared type and actual bytes disagree.
    errors.append(f"Declared content type {declared} does not match detected format {detected}.")

  return errors


def ensure_valid_image(data: bytes, content_type: str | None, policy: ImageValidationPolicy | None = None) -> str:
  """Validate and return the detected format, raising ValidationError on any problem."""
  errors = validate_image(data, content_type, policy)
  if errors:
    raise ValidationError("Image validation failed.", errors=errors)
  detected = detect_image_format(data)
  assert detected is not None
  return detected
