"""Object storage helper for product image variants."""

from __future__ import annotations

import os
from typing import Protocol
from urllib.parse import quote, urlparse, urlunparse

from google.auth.credentials import AnonymousCredentials
from google.cloud import storage
from starlette.concurrency import run_in_threadpool

from marketsync.config import Settings

DEFAULT_CACHE_CONTROL = "public, max-age=31536000"


class BlobStorage(Protocol):
  """Blob storage contract used by the image pipeline."""

  async def upload(self, key: str, data: bytes, *, content_type: str, metadata: dict[str, str] | None = None, cache_control: str = DEFAULT_CACHE_CONTROL) -> str:
    """Store bytes under `key` and return the public URL."""

  async def delete(self, key: str) -> None:
    """Delete one object."""

  async def delete_prefix(self, prefix: str) -> int:
    """Delete every object under `prefix` and return the count."""


class StorageClient:
  """GCS (or emulator) access for product image variants."""

  def __init__(self, settings: Settings) -> None:
    self._bucket_name = settings.image_bucket
    self._storage_host = settings.gcs_storage_host
    self._public_base_url = settings.image_public_base_url
    self._emulator_endpoint: str | None = None
    # Ensure emulator endpoint is visible to the SDK in local development.
    if self._storage_host:
      self._emulator_endpoint = _normalize_emulator_endpoint(self._storage_host)
      os.environ["GCS_STORAGE_EMULATOR_HOST"] = self._emulator_endpoint
      self._client = storage.Client(project=settings.gcp_project_id or "local-dev", credentials=AnonymousCredentials(), client_options={"api_endpoint": self._emulator_endpoint})
    else:
      self._client = storage.Client(project=settings.gcp_project_id)

  @property
  def bucket_name(self) -> str:
    """Return the bucket holding product images."""
    return self._bucket_name

  def public_url(self, key: str) -> str:
    """Return the URL marketplaces fetch the object from."""
    if self._public_base_url:
      return f"{self._public_base_url.rstrip('/')}/{key}"
    if self._emulator_endpoint:
      return f"{self._emulator_endpoint}/download/storage/v1/b/{self._bucket_name}/o/{quote(key, safe='')}?alt=media"
    return f"https://storage.googleapis.com/{self._bucket_name}/{key}"

  async def ensure_bucket(self) -> None:
    """Create the default bucket when missing in local/dev flows."""
    # Keep production startup side-effect free; only auto-create in emulator mode.
    if not self._storage_host:
      return
    bucket = self._client.bucket(self._bucket_name)

    def _create_if_missing() -> None:
      if not bucket.exists(client=self._client):
        self._client.create_bucket(bucket)

    await run_in_threadpool(_create_if_missing)

  async def upload(self, key: str, data: bytes, *, content_type: str, metadata: dict[str, str] | None = None, cache_control: str = DEFAULT_CACHE_CONTROL) -> str:
    """Upload bytes with cache directives and custom metadata."""
    bucket = self._client.bucket(self._bucket_name)
    blob = bucket.blob(key)
    blob.cache_control = cache_control
    blob.content_type = content_type
    if metadata:
      blob.metadata = metadata
    await run_in_threadpool(blob.upload_from_string, data, content_type)
    return self.public_url(key)

  async def delete(self, key: str) -> None:
    """Delete a single object."""
    bucket = self._client.bucket(self._bucket_name)
    blob = bucket.blob(key)
    await run_in_threadpool(blob.delete)

  async def delete_prefix(self, prefix: str) -> int:
    """Delete every object under a key prefix."""

    def _delete_all() -> int:
      blobs = list(self._client.list_blobs(self._bucket_name, prefix=prefix))
      for blob in blobs:
        blob.delete()
      return len(blobs)

    return await run_in_threadpool(_delete_all)


def build_storage_client(settings: Settings) -> StorageClient:
  """Create a storage client instance with environment-aware credentials."""
  return StorageClient(settings)


def _normalize_emulator_endpoint(raw_endpoint: str) -> str:
  """Normalize emulator endpoint so the SDK receives scheme+host+port only."""
  parsed = urlparse(raw_endpoint)
  if not parsed.scheme or not parsed.netloc:
    return raw_endpoint.rstrip("/")
  return urlunparse((parsed.scheme, parsed.netloc, "", "", "", "")).rstrip("/")
