"""Application configuration loaded from environment variables."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from marketsync.ratelimit.models import DEFAULT_PLATFORM_RULES, DEFAULT_RULE, RateLimitRule
from marketsync.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

SUPPORTED_PLATFORMS: tuple[str, ...] = ("elevenst", "coupang", "naver", "esm")


@dataclass(frozen=True)
class PlatformCredentials:
  """Static credentials and endpoint configuration for one marketplace."""

  platform: str
  base_url: str
  timeout_seconds: float = 30.0
  api_key: str | None = None
  secret_key: str | None = None
  access_key: str | None = None
  vendor_id: str | None = None
  client_id: str | None = None
  client_secret: str | None = None
  channel_uid: str | None = None
  master_id: str | None = None
  gmarket_id: str | None = None
  auction_id: str | None = None

  @property
  def is_configured(self) -> bool:
    """Return True when the minimum credential set for the platform is present."""
    if self.platform == "coupang":
      return bool(self.access_key and self.secret_key and self.vendor_id)
    if self.platform == "naver":
      return bool(self.client_id and self.client_secret)
    if self.platform == "esm":
      return bool(self.master_id and self.api_key and self.secret_key)
    return bool(self.api_key)


@dataclass(frozen=True)
class Settings:
  """Typed settings for the MarketSync service."""

  environment: str
  debug: bool
  allowed_origins: tuple[str, ...]
  log_dir: str
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  redis_url: str | None
  retry_max_retries: int
  retry_initial_delay_ms: int
  retry_backoff_multiplier: float
  retry_max_delay_ms: int
  retry_timeout_ms: int
  rate_limits: dict[str, RateLimitRule] = field(hash=False)
  default_rate_limit: RateLimitRule
  http_rate_limit_max_requests: int
  http_rate_limit_window_ms: int
  job_retention_seconds: int
  job_sweep_interval_seconds: int
  max_concurrent_dispatches: int
  image_bucket: str
  image_public_base_url: str | None
  gcs_storage_host: str | None
  gcp_project_id: str | None
  image_max_file_size: int
  image_max_width: int
  image_max_height: int
  image_quality: int
  image_thumbnail_size: int
  image_thumbnail_quality: int
  image_concurrent_uploads: int
  image_download_timeout_seconds: float
  platforms: dict[str, PlatformCredentials] = field(hash=False)
  category_mappings: dict[str, dict[str, str]] = field(hash=False)


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    raise ValueError("MARKETSYNC_ALLOWED_ORIGINS must be set to one or more origins.")

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("MARKETSYNC_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("MARKETSYNC_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_json_dict(raw: str | None, default: dict[str, Any]) -> dict[str, Any]:
  if not raw:
    return default
  try:
    parsed = json.loads(raw)
  except json.JSONDecodeError:
    return default
  if not isinstance(parsed, dict):
    return default
  return parsed


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _parse_rate_limits() -> dict[str, RateLimitRule]:
  """Resolve per-platform limiter rules with environment overrides."""
  rules: dict[str, RateLimitRule] = {}
  for platform, default_rule in DEFAULT_PLATFORM_RULES.items():
    prefix = f"MARKETSYNC_RATE_LIMIT_{platform.upper()}"
    max_requests = _positive_int(f"{prefix}_MAX_REQUESTS", str(default_rule.max_requests))
    window_ms = _positive_int(f"{prefix}_WINDOW_MS", str(default_rule.window_ms))
    rules[platform] = RateLimitRule(max_requests=max_requests, window_ms=window_ms)
  return rules


def _parse_platforms() -> dict[str, PlatformCredentials]:
  """Load marketplace credentials; unconfigured platforms are kept so they can be reported."""
  timeout_seconds = float(os.getenv("MARKETSYNC_PLATFORM_TIMEOUT_SECONDS", "30"))
  return {
    "coupang": PlatformCredentials(
      platform="coupang",
      base_url=(os.getenv("MARKETSYNC_COUPANG_BASE_URL") or "https://api-gateway.coupang.com").strip(),
      timeout_seconds=timeout_seconds,
      access_key=_optional_str(os.getenv("MARKETSYNC_COUPANG_ACCESS_KEY")),
      secret_key=_optional_str(os.getenv("MARKETSYNC_COUPANG_SECRET_KEY")),
      vendor_id=_optional_str(os.getenv("MARKETSYNC_COUPANG_VENDOR_ID")),
    ),
    "elevenst": PlatformCredentials(
      platform="elevenst",
      base_url=(os.getenv("MARKETSYNC_ELEVENST_BASE_URL") or "https://openapi.11st.co.kr").strip(),
      timeout_seconds=timeout_seconds,
      api_key=_optional_str(os.getenv("MARKETSYNC_ELEVENST_API_KEY")),
    ),
    "naver": PlatformCredentials(
      platform="naver",
      base_url=(os.getenv("MARKETSYNC_NAVER_BASE_URL") or "https://api.commerce.naver.com").strip(),
      timeout_seconds=timeout_seconds,
      client_id=_optional_str(os.getenv("MARKETSYNC_NAVER_CLIENT_ID")),
      client_secret=_optional_str(os.getenv("MARKETSYNC_NAVER_CLIENT_SECRET")),
      channel_uid=_optional_str(os.getenv("MARKETSYNC_NAVER_CHANNEL_UID")),
    ),
    "esm": PlatformCredentials(
      platform="esm",
      base_url=(os.getenv("MARKETSYNC_ESM_BASE_URL") or "https://etapi.gmarket.com").strip(),
      timeout_seconds=timeout_seconds,
      api_key=_optional_str(os.getenv("MARKETSYNC_ESM_API_KEY")),
      secret_key=_optional_str(os.getenv("MARKETSYNC_ESM_API_SECRET")),
      master_id=_optional_str(os.getenv("MARKETSYNC_ESM_MASTER_ID")),
      gmarket_id=_optional_str(os.getenv("MARKETSYNC_ESM_GMARKET_ID")),
      auction_id=_optional_str(os.getenv("MARKETSYNC_ESM_AUCTION_ID")),
    ),
  }


def _parse_category_mappings(raw: str | None) -> dict[str, dict[str, str]]:
  """Parse `{standard_category: {platform: category_id}}` from JSON."""
  parsed = _parse_json_dict(raw, {})
  mappings: dict[str, dict[str, str]] = {}
  for standard_category, platform_map in parsed.items():
    if not isinstance(platform_map, dict):
      raise ValueError(f"MARKETSYNC_CATEGORY_MAPPINGS entry '{standard_category}' must be an object.")
    mappings[str(standard_category)] = {str(platform): str(category_id) for platform, category_id in platform_map.items()}
  return mappings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("MARKETSYNC_ENV", "development").lower()

  # Toggle verbose error output and diagnostics in non-production environments.
  debug = _parse_bool(os.getenv("MARKETSYNC_DEBUG"))

  log_max_bytes = _positive_int("MARKETSYNC_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(os.getenv("MARKETSYNC_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("MARKETSYNC_LOG_BACKUP_COUNT must be zero or a positive integer.")

  retry_max_retries = int(os.getenv("MARKETSYNC_RETRY_MAX_RETRIES", "3"))
  if retry_max_retries < 0:
    raise ValueError("MARKETSYNC_RETRY_MAX_RETRIES must be zero or a positive integer.")

  retry_backoff_multiplier = float(os.getenv("MARKETSYNC_RETRY_BACKOFF_MULTIPLIER", "2"))
  if retry_backoff_multiplier < 1:
    raise ValueError("MARKETSYNC_RETRY_BACKOFF_MULTIPLIER must be at least 1.")

  image_quality = _positive_int("MARKETSYNC_IMAGE_QUALITY", "85")
  if image_quality > 100:
    raise ValueError("MARKETSYNC_IMAGE_QUALITY must be between 1 and 100.")

  return Settings(
    environment=environment,
    debug=debug,
    allowed_origins=_parse_origins(os.getenv("MARKETSYNC_ALLOWED_ORIGINS")),
    log_dir=(os.getenv("MARKETSYNC_LOG_DIR") or "./logs").strip(),
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("MARKETSYNC_LOG_HTTP_4XX")),
    redis_url=_optional_str(os.getenv("MARKETSYNC_REDIS_URL")),
    retry_max_retries=retry_max_retries,
    retry_initial_delay_ms=_positive_int("MARKETSYNC_RETRY_INITIAL_DELAY_MS", "1000"),
    retry_backoff_multiplier=retry_backoff_multiplier,
    retry_max_delay_ms=_positive_int("MARKETSYNC_RETRY_MAX_DELAY_MS", "30000"),
    retry_timeout_ms=_positive_int("MARKETSYNC_RETRY_TIMEOUT_MS", "10000"),
    rate_limits=_parse_rate_limits(),
    default_rate_limit=DEFAULT_RULE,
    http_rate_limit_max_requests=_positive_int("MARKETSYNC_HTTP_RATE_LIMIT_MAX_REQUESTS", "100"),
    http_rate_limit_window_ms=_positive_int("MARKETSYNC_HTTP_RATE_LIMIT_WINDOW_MS", "60000"),
    job_retention_seconds=_positive_int("MARKETSYNC_JOB_RETENTION_SECONDS", "86400"),
    job_sweep_interval_seconds=_positive_int("MARKETSYNC_JOB_SWEEP_INTERVAL_SECONDS", "3600"),
    max_concurrent_dispatches=_positive_int("MARKETSYNC_MAX_CONCURRENT_DISPATCHES", "4"),
    image_bucket=os.getenv("MARKETSYNC_IMAGE_BUCKET", "marketsync-product-images"),
    image_public_base_url=_optional_str(os.getenv("MARKETSYNC_IMAGE_PUBLIC_BASE_URL")),
    gcs_storage_host=_optional_str(os.getenv("GCS_STORAGE_HOST")),
    gcp_project_id=_optional_str(os.getenv("GCP_PROJECT_ID")),
    image_max_file_size=_positive_int("MARKETSYNC_IMAGE_MAX_FILE_SIZE", str(5 * 1024 * 1024)),
    image_max_width=_positive_int("MARKETSYNC_IMAGE_MAX_WIDTH", "1200"),
    image_max_height=_positive_int("MARKETSYNC_IMAGE_MAX_HEIGHT", "1200"),
    image_quality=image_quality,
    image_thumbnail_size=_positive_int("MARKETSYNC_IMAGE_THUMBNAIL_SIZE", "300"),
    image_thumbnail_quality=_positive_int("MARKETSYNC_IMAGE_THUMBNAIL_QUALITY", "80"),
    image_concurrent_uploads=_positive_int("MARKETSYNC_IMAGE_CONCURRENT_UPLOADS", "3"),
    image_download_timeout_seconds=float(os.getenv("MARKETSYNC_IMAGE_DOWNLOAD_TIMEOUT_SECONDS", "30")),
    platforms=_parse_platforms(),
    category_mappings=_parse_category_mappings(os.getenv("MARKETSYNC_CATEGORY_MAPPINGS")),
  )


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value
