from __future__ import annotations

from dataclasses import replace

import pytest

from marketsync.config import get_settings
from marketsync.services.storage_client import _normalize_emulator_endpoint, build_storage_client


def test_normalize_emulator_endpoint_drops_paths() -> None:
  assert _normalize_emulator_endpoint("http://localhost:4443/storage/v1/") == "http://localhost:4443"
  assert _normalize_emulator_endpoint("localhost:4443/") == "localhost:4443"


def test_public_urls_for_emulator_and_cdn(monkeypatch: pytest.MonkeyPatch) -> None:
  # The client exports the emulator host; let monkeypatch restore it afterwards.
  monkeypatch.setenv("GCS_STORAGE_EMULATOR_HOST", "unset")
  settings = replace(get_settings(), gcs_storage_host="http://localhost:4443/", image_bucket="images", image_public_base_url=None, gcp_project_id=None)

  emulator = build_storage_client(settings)
  cdn = build_storage_client(replace(settings, image_public_base_url="https://cdn.example.com/"))

  assert emulator.bucket_name == "images"
  assert emulator.public_url("products/P1/main/1_a_original.jpg") == "http://localhost:4443/download/storage/v1/b/images/o/products%2FP1%2Fmain%2F1_a_original.jpg?alt=media"
  assert cdn.public_url("products/P1/main/1_a_original.jpg") == "https://cdn.example.com/products/P1/main/1_a_original.jpg"
