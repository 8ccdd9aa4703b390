from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from decimal import Decimal

from marketsync.core.json import MarketSyncJSONResponse
from marketsync.core.logging import TruncatedFormatter, _rotated_name
from marketsync.jobs.models import TargetResult
from marketsync.media.models import ImageUpload


def test_rotated_backups_use_dash_suffix() -> None:
  assert _rotated_name("/logs/marketsync_1.log.3") == "/logs/marketsync_1.log-3"
  assert _rotated_name("/logs/marketsync_1.log") == "/logs/marketsync_1.log"


def test_truncated_formatter_keeps_header_and_tail() -> None:
  def _recurse(depth: int) -> None:
    if depth == 0:
      raise RuntimeError("deep failure")
    _recurse(depth - 1)

  try:
    _recurse(10)
  except RuntimeError:
    exc_info = sys.exc_info()

  formatted = TruncatedFormatter().formatException(exc_info)
  assert formatted.startswith("Traceback")
  assert "    ...\n" in formatted
  assert formatted.rstrip().endswith("RuntimeError: deep failure")
  assert isinstance(TruncatedFormatter(), logging.Formatter)


def test_json_response_renders_domain_objects_and_korean_text() -> None:
  content = {
    "name": "무선 이어폰",
    "at": datetime(2026, 3, 1, 9, 0, tzinfo=UTC),
    "price": Decimal("39000"),
    "ratio": Decimal("0.5"),
    "result": TargetResult(target="naver", success=True, external_id="9001"),
    "image": ImageUpload(b"\xff\xd8\xff", "image/jpeg"),
    "tags": ("a", "b"),
  }

  body = MarketSyncJSONResponse(content=content).body

  assert "무선 이어폰".encode() in body
  decoded = json.loads(body)
  assert decoded["at"] == "2026-03-01T09:00:00+00:00"
  assert decoded["price"] == 39000
  assert decoded["ratio"] == 0.5
  assert decoded["result"]["externalId"] == "9001"
  assert decoded["image"]["data"] == "<3 bytes>"
  assert decoded["tags"] == ["a", "b"]
