"""Custom JSON handling."""

from __future__ import annotations

import dataclasses
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from fastapi.responses import JSONResponse


class MarketSyncJSONEncoder(json.JSONEncoder):
  """Encode datetimes, Decimals and dataclasses found in service payloads."""

  def default(self, obj: Any) -> Any:
    if isinstance(obj, datetime | date):
      return obj.isoformat()
    if isinstance(obj, Decimal):
      return int(obj) if obj % 1 == 0 else float(obj)
    if hasattr(obj, "to_dict"):
      return obj.to_dict()
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
      return dataclasses.asdict(obj)
    if isinstance(obj, bytes):
      return f"<{len(obj)} bytes>"
    if isinstance(obj, set | frozenset | tuple):
      return list(obj)
    return super().default(obj)


class MarketSyncJSONResponse(JSONResponse):
  """JSONResponse that keeps Korean text readable and understands domain objects."""

  def render(self, content: Any) -> bytes:
    return json.dumps(content, ensure_ascii=False, allow_nan=False, indent=None, separators=(",", ":"), cls=MarketSyncJSONEncoder).encode("utf-8")
