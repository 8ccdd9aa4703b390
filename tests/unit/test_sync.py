from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from marketsync.core.errors import ValidationError
from marketsync.jobs.tracker import JobTracker
from marketsync.services.sync import InventoryUpdate, MarketplaceSync


@pytest.mark.anyio
async def test_order_sync_collects_every_configured_platform(make_adapter) -> None:
  sync = MarketplaceSync(adapters={"naver": make_adapter("naver"), "coupang": make_adapter("coupang")}, job_tracker=JobTracker())

  job = await sync.synchronize_orders(start_date="2026-03-01")

  assert job.kind == "order_sync"
  assert job.status == "completed"
  assert job.target_identifiers == ["coupang", "naver"]
  assert job.per_target_results["naver"].data == {"orders": [{"orderId": "naver-order-1"}], "total": 1}
  assert job.summary == {"total_platforms": 2, "succeeded": 2, "failed": 0}
  assert job.request["filters"] == {"start_date": "2026-03-01"}


@pytest.mark.anyio
async def test_order_sync_rejects_unconfigured_platform(make_adapter) -> None:
  sync = MarketplaceSync(adapters={"naver": make_adapter("naver")}, job_tracker=JobTracker())
  with pytest.raises(ValidationError) as exc_info:
    await sync.synchronize_orders(["naver", "esm"])
  assert exc_info.value.errors == ["esm is not configured"]


@pytest.mark.anyio
async def test_inventory_sync_reports_partial_failures(make_adapter, make_platform_error) -> None:
  coupang = make_adapter("coupang", [None, make_platform_error("coupang", attempts=2)])
  esm = make_adapter("esm")
  sync = MarketplaceSync(adapters={"coupang": coupang, "esm": esm}, job_tracker=JobTracker())
  updates = [InventoryUpdate(quantity=10, product_ids={"coupang": "VI-1", "esm": "G-1"}), InventoryUpdate(quantity=0, product_ids={"coupang": "VI-2"})]

  job = await sync.synchronize_inventory(updates)

  assert job.status == "completed"
  coupang_result = job.per_target_results["coupang"]
  assert coupang_result.success is False
  assert coupang_result.needs_retry is True
  assert coupang_result.data == {"updated": ["VI-1"]}
  assert coupang_result.error.details["failures"][0]["productId"] == "VI-2"
  assert coupang_result.attempts == 3
  assert job.per_target_results["esm"].data == {"updated": ["G-1"]}
  assert job.summary["failed"] == 1


@pytest.mark.anyio
async def test_sync_job_fails_when_every_platform_fails(make_adapter, make_platform_error) -> None:
  coupang = make_adapter("coupang", [make_platform_error("coupang", retryable=False, attempts=1)])
  sync = MarketplaceSync(adapters={"coupang": coupang}, job_tracker=JobTracker())

  job = await sync.synchronize_inventory([InventoryUpdate(quantity=1, product_ids={"coupang": "VI-1"})])

  assert job.status == "failed"
  assert job.error.code == "SYNC_FAILED"


@pytest.mark.anyio
async def test_inventory_sync_requires_updates(make_adapter) -> None:
  sync = MarketplaceSync(adapters={"coupang": make_adapter("coupang")}, job_tracker=JobTracker())
  with pytest.raises(ValidationError):
    await sync.synchronize_inventory([])


@pytest.mark.anyio
async def test_unexpected_adapter_error_still_finishes_job(make_adapter) -> None:
  class BrokenAdapter(make_adapter):
    async def update_inventory(self, product_id, quantity):
      raise RuntimeError("socket closed")

  tracker = JobTracker()
  sync = MarketplaceSync(adapters={"coupang": BrokenAdapter("coupang"), "esm": make_adapter("esm")}, job_tracker=tracker)

  job = await sync.synchronize_inventory([InventoryUpdate(quantity=3, product_ids={"coupang": "VI-1", "esm": "G-1"})])

  assert job.status == "completed"
  coupang_result = job.per_target_results["coupang"]
  assert coupang_result.success is False
  assert coupang_result.needs_retry is False
  assert coupang_result.error.details["failures"][0]["code"] == "INTERNAL_ERROR"
  assert await tracker.list_active() == []


@pytest.mark.anyio
async def test_cancelled_order_sync_marks_job_failed(make_adapter) -> None:
  started = asyncio.Event()

  class HangingAdapter(make_adapter):
    async def list_orders(self, **options):
      started.set()
      await asyncio.Event().wait()

  tracker = JobTracker()
  sync = MarketplaceSync(adapters={"naver": HangingAdapter("naver")}, job_tracker=tracker)

  task = asyncio.create_task(sync.synchronize_orders(["naver"]))
  await asyncio.wait_for(started.wait(), timeout=1)
  task.cancel()
  with pytest.raises(asyncio.CancelledError):
    await task

  [job], _ = await tracker.list_jobs(kind="order_sync")
  assert job.status == "failed"
  assert job.error.code == "CANCELLED"
  assert await tracker.sweep(timedelta(seconds=-1)) == 1
