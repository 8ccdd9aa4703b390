"""Order collection and stock synchronization across marketplaces."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from marketsync.core.errors import ErrorInfo, PlatformError, ValidationError, error_info_from_exception
from marketsync.jobs.models import Job, TargetResult
from marketsync.jobs.tracker import JobTracker
from marketsync.marketplaces.contracts import PlatformAdapter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InventoryUpdate:
  """New stock level for a listing, keyed by platform product id."""

  quantity: int
  product_ids: Mapping[str, str]


class MarketplaceSync:
  """Pulls orders from and pushes stock levels to every configured marketplace."""

  def __init__(self, *, adapters: Mapping[str, PlatformAdapter], job_tracker: JobTracker, max_concurrent_dispatches: int = 4) -> None:
    self._adapters = dict(adapters)
    self._jobs = job_tracker
    self._slots = asyncio.Semaphore(max_concurrent_dispatches)

  async def synchronize_orders(self, platforms: Sequence[str] | None = None, **filters: Any) -> Job:
    """Fetch orders from each platform; one target result per platform."""
    targets = self._targets(platforms)
    job_id = await self._jobs.create_job("order_sync", targets, request={"platforms": targets, "filters": dict(filters)})
    async def _collect(platform: str) -> TargetResult:
      async with self._slots:
        try:
          listing = await self._adapters[platform].list_orders(**filters)
        except Exception as exc:  # noqa: BLE001
          return _failure(platform, exc)
      return TargetResult(target=platform, success=True, attempts=listing.attempts, data={"orders": listing.items, "total": listing.total})

    return await self._run(job_id, lambda: asyncio.gather(*(_collect(platform) for platform in targets)))

  async def synchronize_inventory(self, updates: Sequence[InventoryUpdate]) -> Job:
    """Apply each stock update on every platform it lists a product id for."""
    if not updates:
      raise ValidationError("At least one inventory update is required.")
    targets = sorted({platform for update in updates for platform in update.product_ids})
    self._targets(targets)
    request = {"updates": [{"quantity": update.quantity, "product_ids": dict(update.product_ids)} for update in updates]}
    job_id = await self._jobs.create_job("inventory_sync", targets, request=request)
    async def _push(platform: str) -> TargetResult:
      adapter = self._adapters[platform]
      updated: list[str] = []
      errors: list[dict[str, Any]] = []
      attempts = 0
      for update in updates:
        product_id = update.product_ids.get(platform)
        if product_id is None:
          continue
        async with self._slots:
          try:
            result = await adapter.update_inventory(product_id, update.quantity)
          except PlatformError as exc:
            attempts += exc.attempts
            errors.append({"productId": product_id, **exc.to_info().to_dict(), "retryable": exc.retryable})
            continue
          except Exception as exc:  # noqa: BLE001
            logger.error("Stock update failed platform=%s product_id=%s", platform, product_id, exc_info=True)
            errors.append({"productId": product_id, **error_info_from_exception(exc).to_dict(), "retryable": False})
            continue
        attempts += result.attempts
        updated.append(product_id)
      if errors:
        first = errors[0]
        return TargetResult(target=platform, success=False, error=ErrorInfo(code=first["code"], message=f"{len(errors)} stock update(s) failed on {platform}.", details={"failures": errors}), needs_retry=any(item["retryable"] for item in errors), attempts=attempts, data={"updated": updated})
      return TargetResult(target=platform, success=True, attempts=attempts, data={"updated": updated})

    return await self._run(job_id, lambda: asyncio.gather(*(_push(platform) for platform in targets)))

  def _targets(self, platforms: Sequence[str] | None) -> list[str]:
    targets = list(dict.fromkeys(platforms)) if platforms else sorted(self._adapters)
    missing = [platform for platform in targets if platform not in self._adapters]
    if missing:
      raise ValidationError("Platforms are not configured.", errors=[f"{platform} is not configured" for platform in missing])
    if not targets:
      raise ValidationError("No marketplace is configured.")
    return targets

  async def _run(self, job_id: str, dispatch: Callable[[], Awaitable[list[TargetResult]]]) -> Job:
    try:
      await self._jobs.update_job(job_id, status="in_progress")
      results = await dispatch()
      return await self._finish(job_id, results)
    except asyncio.CancelledError:
      logger.warning("Sync cancelled job_id=%s", job_id)
      await self._fail_job(job_id, ErrorInfo(code="CANCELLED", message="Sync was cancelled."))
      raise
    except Exception as exc:
      logger.error("Sync crashed job_id=%s", job_id, exc_info=True)
      await self._fail_job(job_id, error_info_from_exception(exc))
      raise

  async def _fail_job(self, job_id: str, error: ErrorInfo) -> None:
    job = await self._jobs.get_job(job_id)
    if job is not None and not job.is_terminal:
      await self._jobs.update_job(job_id, status="failed", error=error)

  async def _finish(self, job_id: str, results: Sequence[TargetResult]) -> Job:
    per_target = {result.target: result for result in results}
    succeeded = sum(1 for result in results if result.success)
    status = "completed" if succeeded else "failed"
    error = None if succeeded else ErrorInfo(code="SYNC_FAILED", message="Every platform failed.")
    summary = {"total_platforms": len(results), "succeeded": succeeded, "failed": len(results) - succeeded}
    job = await self._jobs.update_job(job_id, status=status, per_target_results=per_target, summary=summary, error=error)
    logger.info("%s job finished job_id=%s succeeded=%d/%d", job.kind, job_id, succeeded, len(results))
    return job


def _failure(platform: str, exc: Exception) -> TargetResult:
  if isinstance(exc, PlatformError):
    return TargetResult(target=platform, success=False, error=exc.to_info(), needs_retry=exc.retryable, attempts=exc.attempts)
  logger.error("Sync failure platform=%s", platform, exc_info=exc)
  return TargetResult(target=platform, success=False, error=error_info_from_exception(exc))
