"""Resolve platform category ids for a product."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol

from marketsync.marketplaces.contracts import ProductPayload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CategoryMapping:
  category_id: str
  confidence: float = 1.0


class CategoryMapper(Protocol):
  """Maps a product to a category id on one platform, or None when unmapped."""

  async def map_category(self, product: ProductPayload, platform: str) -> CategoryMapping | None:
    """Return the mapping for `platform`, or None."""


class StaticCategoryMapper:
  """Lookup table keyed by standard category; explicit product categories win."""

  def __init__(self, mappings: Mapping[str, Mapping[str, str]] | None = None) -> None:
    self._mappings = {standard: dict(platforms) for standard, platforms in (mappings or {}).items()}

  def add_mapping(self, standard_category: str, platform: str, category_id: str) -> None:
    self._mappings.setdefault(standard_category, {})[platform] = category_id

  async def map_category(self, product: ProductPayload, platform: str) -> CategoryMapping | None:
    explicit = product.category.get(platform)
    if explicit:
      return CategoryMapping(category_id=str(explicit), confidence=1.0)

    if not product.standard_category:
      return None

    category_id = self._mappings.get(product.standard_category, {}).get(platform)
    if category_id is None:
      logger.debug("No category mapping standard_category=%s platform=%s", product.standard_category, platform)
      return None
    return CategoryMapping(category_id=category_id, confidence=0.9)
