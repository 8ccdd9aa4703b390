"""Fan a product registration out to marketplaces and consolidate the outcome into a job."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from marketsync.config import SUPPORTED_PLATFORMS
from marketsync.core.errors import REMEDIATION_HINTS, ErrorInfo, JobStateError, MarketSyncError, PlatformError, ValidationError, error_info_from_exception
from marketsync.jobs.models import TargetResult
from marketsync.jobs.tracker import JobTracker
from marketsync.marketplaces.contracts import PlatformAdapter, PlatformRequestContext, ProductPayload, RegistrationOptions
from marketsync.media.models import ImageUrls, ProcessedImage
from marketsync.media.pipeline import ImagePipeline
from marketsync.services.category_mapping import CategoryMapper, CategoryMapping, StaticCategoryMapper

logger = logging.getLogger(__name__)

MAX_BATCH_PRODUCTS = 50
BATCH_CHUNK_SIZE = 5


@dataclass
class RegistrationResult:
  """
  Consolidated outcome of one registration job.

  `successful` and `failed` partition the requested platforms. `needs_retry` and
  `needs_manual_mapping` are disjoint subsets of `failed`; whatever is left in `failed`
  is a hard failure (see `hard_failed`).
  """

  job_id: str
  success_count: int
  failure_count: int
  successful: list[str]
  failed: list[str]
  needs_retry: list[str]
  needs_manual_mapping: list[str]
  results: dict[str, TargetResult]
  images: ImageUrls = field(default_factory=ImageUrls)
  processed_images: list[ProcessedImage] = field(default_factory=list)
  warnings: list[str] = field(default_factory=list)
  summary: dict[str, Any] = field(default_factory=dict)

  @property
  def hard_failed(self) -> list[str]:
    soft = set(self.needs_retry) | set(self.needs_manual_mapping)
    return [platform for platform in self.failed if platform not in soft]

  @property
  def all_succeeded(self) -> bool:
    return self.failure_count == 0

  @property
  def all_failed(self) -> bool:
    return self.success_count == 0

  @classmethod
  def consolidate(cls, job_id: str, results: Mapping[str, TargetResult], *, images: ImageUrls, processed_images: list[ProcessedImage], warnings: list[str], completed_at: datetime) -> RegistrationResult:
    successful = [platform for platform, result in results.items() if result.success]
    failed = [platform for platform, result in results.items() if not result.success]
    needs_manual_mapping = [platform for platform in failed if results[platform].needs_manual_mapping]
    needs_retry = [platform for platform in failed if results[platform].needs_retry and not results[platform].needs_manual_mapping]
    total = len(results)
    summary = {"total_platforms": total, "success_rate": round(len(successful) / total * 100, 1) if total else 0.0, "completed_at": completed_at.isoformat()}
    return cls(
      job_id=job_id,
      success_count=len(successful),
      failure_count=len(failed),
      successful=successful,
      failed=failed,
      needs_retry=needs_retry,
      needs_manual_mapping=needs_manual_mapping,
      results=dict(results),
      images=images,
      processed_images=processed_images,
      warnings=warnings,
      summary=summary,
    )

  def to_dict(self) -> dict[str, Any]:
    return {
      "jobId": self.job_id,
      "successCount": self.success_count,
      "failureCount": self.failure_count,
      "successful": list(self.successful),
      "failed": list(self.failed),
      "needsRetry": list(self.needs_retry),
      "needsManualMapping": list(self.needs_manual_mapping),
      "results": {platform: result.to_dict() for platform, result in self.results.items()},
      "images": self.images.to_dict(),
      "warnings": list(self.warnings),
      "summary": dict(self.summary),
    }


@dataclass
class BatchItemResult:
  """One product of a batch: its registration result, or the error that stopped it before any job ran."""

  index: int
  sku: str | None
  result: RegistrationResult | None = None
  error: ErrorInfo | None = None

  @property
  def all_succeeded(self) -> bool:
    return self.result is not None and self.result.all_succeeded

  def to_dict(self) -> dict[str, Any]:
    if self.result is not None:
      return {"index": self.index, "sku": self.sku, "success": self.result.all_succeeded, **self.result.to_dict()}
    return {"index": self.index, "sku": self.sku or f"batch_{self.index}", "success": False, "error": self.error.to_dict() if self.error else None}


class RegistrationOrchestrator:
  """Registers one product on many marketplaces and records the outcome as a job."""

  def __init__(
    self,
    *,
    adapters: Mapping[str, PlatformAdapter],
    job_tracker: JobTracker,
    image_pipeline: ImagePipeline | None = None,
    category_mapper: CategoryMapper | None = None,
    max_concurrent_dispatches: int = 4,
  ) -> None:
    if max_concurrent_dispatches < 1:
      raise ValueError("max_concurrent_dispatches must be at least 1.")
    self._adapters = dict(adapters)
    self._jobs = job_tracker
    self._images = image_pipeline
    self._categories = category_mapper or StaticCategoryMapper()
    self._dispatch_slots = asyncio.Semaphore(max_concurrent_dispatches)
    self._tasks: dict[str, asyncio.Task[RegistrationResult]] = {}

  @property
  def adapters(self) -> Mapping[str, PlatformAdapter]:
    return self._adapters

  @property
  def job_tracker(self) -> JobTracker:
    return self._jobs

  async def register_product(self, product: ProductPayload, platforms: Sequence[str], options: RegistrationOptions | None = None, *, parent_job_id: str | None = None) -> RegistrationResult:
    """Run a registration to completion and return the consolidated result."""
    options = options or RegistrationOptions()
    targets = self._validate(product, platforms)
    job_id = await self._create_job(product, targets, options, parent_job_id=parent_job_id)
    return await self._run(job_id, product, targets, options)

  async def start_registration(self, product: ProductPayload, platforms: Sequence[str], options: RegistrationOptions | None = None) -> str:
    """Schedule a registration on a background task and return its job id immediately."""
    options = options or RegistrationOptions()
    targets = self._validate(product, platforms)
    job_id = await self._create_job(product, targets, options)
    task = asyncio.create_task(self._run(job_id, product, targets, options), name=f"registration-{job_id}")
    self._tasks[job_id] = task
    task.add_done_callback(lambda finished, job_id=job_id: self._forget_task(job_id, finished))
    return job_id

  async def cancel_job(self, job_id: str) -> bool:
    """Cancel a background registration. Returns False when it already finished."""
    job = await self._jobs.require_job(job_id)
    task = self._tasks.get(job_id)
    if task is None:
      if job.is_terminal:
        return False
      raise JobStateError(f"Job {job_id} is not running in the background and cannot be cancelled.")
    task.cancel()
    await asyncio.wait({task})
    return True

  async def retry_failed_registrations(self, job_id: str) -> RegistrationResult:
    """Re-run the retryable platforms of a finished registration job using its stored request."""
    job = await self._jobs.require_job(job_id)
    if job.kind != "registration":
      raise JobStateError(f"Job {job_id} is a {job.kind} job, not a registration.")
    if not job.is_terminal:
      raise JobStateError(f"Job {job_id} is still {job.status}.")
    targets = [target for target, result in job.per_target_results.items() if result.needs_retry]
    if not targets:
      raise JobStateError(f"Job {job_id} has no platforms to retry.")
    if not job.request or "product" not in job.request:
      raise JobStateError(f"Job {job_id} has no stored request to replay.")

    product = ProductPayload.from_dict(job.request["product"])
    options = RegistrationOptions.from_dict(job.request.get("options"))
    logger.info("Retrying registration job_id=%s platforms=%s", job_id, ",".join(targets))
    return await self.register_product(product, targets, options, parent_job_id=job_id)

  async def register_products(self, products: Sequence[ProductPayload], platforms: Sequence[str], options: RegistrationOptions | None = None) -> list[BatchItemResult]:
    """Register up to 50 products, five at a time. A product that fails on its own becomes a failed entry."""
    if not products:
      raise ValidationError("At least one product is required.")
    if len(products) > MAX_BATCH_PRODUCTS:
      raise ValidationError(f"At most {MAX_BATCH_PRODUCTS} products can be registered per batch.")

    results: list[BatchItemResult] = []
    for start in range(0, len(products), BATCH_CHUNK_SIZE):
      chunk = products[start : start + BATCH_CHUNK_SIZE]
      results.extend(await asyncio.gather(*(self._register_item(start + offset, product, platforms, options) for offset, product in enumerate(chunk))))
    logger.info("Batch registration finished products=%d succeeded=%d", len(results), sum(1 for result in results if result.all_succeeded))
    return results

  async def _register_item(self, index: int, product: ProductPayload, platforms: Sequence[str], options: RegistrationOptions | None) -> BatchItemResult:
    try:
      result = await self.register_product(product, platforms, options)
    except MarketSyncError as exc:
      logger.warning("Batch item rejected index=%d sku=%s code=%s", index, product.sku, exc.code)
      return BatchItemResult(index=index, sku=product.sku, error=exc.to_info())
    except Exception as exc:  # noqa: BLE001
      logger.error("Batch item failed index=%d sku=%s", index, product.sku, exc_info=True)
      return BatchItemResult(index=index, sku=product.sku, error=error_info_from_exception(exc))
    return BatchItemResult(index=index, sku=product.sku, result=result)

  async def aclose(self) -> None:
    """Cancel background registrations and release adapter connections."""
    pending = list(self._tasks.values())
    for task in pending:
      task.cancel()
    if pending:
      await asyncio.wait(pending)
    for adapter in self._adapters.values():
      await adapter.aclose()
    if self._images is not None:
      await self._images.aclose()

  def _validate(self, product: ProductPayload, platforms: Sequence[str]) -> list[str]:
    errors: list[str] = []
    if not product.name or not product.name.strip():
      errors.append("name is required")
    if product.price <= 0:
      errors.append("price must be greater than 0")
    targets = list(dict.fromkeys(platform.strip().lower() for platform in platforms if platform and platform.strip()))
    if not targets:
      errors.append("at least one platform is required")
    unknown = [platform for platform in targets if platform not in SUPPORTED_PLATFORMS]
    if unknown:
      errors.append(f"unsupported platforms: {', '.join(unknown)}")
    if errors:
      raise ValidationError("Invalid registration request.", errors=errors)
    return targets

  async def _create_job(self, product: ProductPayload, targets: list[str], options: RegistrationOptions, *, parent_job_id: str | None = None) -> str:
    request = {"product": product.to_dict(), "platforms": list(targets), "options": options.to_dict()}
    return await self._jobs.create_job("registration", targets, request=request, parent_job_id=parent_job_id)

  async def _run(self, job_id: str, product: ProductPayload, targets: list[str], options: RegistrationOptions) -> RegistrationResult:
    try:
      await self._jobs.update_job(job_id, status="in_progress")
      processed, images, warnings = await self._prepare_images(product, options)
      mappings, mapping_errors = await self._resolve_categories(product, targets)

      results: dict[str, TargetResult] = {}
      dispatches: list[tuple[str, PlatformAdapter, PlatformRequestContext]] = []
      for platform in targets:
        adapter = self._adapters.get(platform)
        mapping = mappings.get(platform)
        if adapter is None:
          results[platform] = TargetResult(target=platform, success=False, error=ErrorInfo(code="PLATFORM_NOT_CONFIGURED", message=f"No credentials are configured for {platform}."))
        elif platform in mapping_errors and not options.skip_category_validation:
          results[platform] = TargetResult(target=platform, success=False, needs_manual_mapping=True, error=ErrorInfo(code="CATEGORY_MAPPING_MISSING", message=f"Category lookup for {platform} failed: {mapping_errors[platform]}", remediation=REMEDIATION_HINTS["CATEGORY_MAPPING_MISSING"]))
        elif mapping is None and not options.skip_category_validation:
          # Unmapped platforms are never called.
          results[platform] = TargetResult(target=platform, success=False, needs_manual_mapping=True, error=ErrorInfo(code="CATEGORY_MAPPING_MISSING", message=f"No {platform} category mapping for this product.", remediation=REMEDIATION_HINTS["CATEGORY_MAPPING_MISSING"]))
        else:
          dispatches.append((platform, adapter, PlatformRequestContext(category_id=mapping.category_id if mapping else None, images=images, options=options)))

      outcomes = await asyncio.gather(*(self._dispatch(platform, adapter, product, context) for platform, adapter, context in dispatches))
      results.update({outcome.target: outcome for outcome in outcomes})
      ordered = {platform: results[platform] for platform in targets}

      result = RegistrationResult.consolidate(job_id, ordered, images=images, processed_images=processed, warnings=warnings, completed_at=datetime.now(UTC))
      if dispatches:
        await self._jobs.update_job(job_id, status="completed", per_target_results=ordered, warnings=warnings, summary=result.summary)
      else:
        error = ErrorInfo(code="NO_PLATFORM_DISPATCHED", message="No platform could be called for this product.")
        await self._jobs.update_job(job_id, status="failed", per_target_results=ordered, warnings=warnings, summary=result.summary, error=error)

      logger.info("Registration finished job_id=%s succeeded=%s retry=%s manual_mapping=%s failed=%s", job_id, result.successful, result.needs_retry, result.needs_manual_mapping, result.hard_failed)
      return result
    except asyncio.CancelledError:
      logger.warning("Registration cancelled job_id=%s", job_id)
      await self._fail_job(job_id, ErrorInfo(code="CANCELLED", message="Registration was cancelled."))
      raise
    except Exception as exc:
      logger.error("Registration crashed job_id=%s", job_id, exc_info=True)
      await self._fail_job(job_id, error_info_from_exception(exc))
      raise

  async def _fail_job(self, job_id: str, error: ErrorInfo) -> None:
    job = await self._jobs.get_job(job_id)
    if job is not None and not job.is_terminal:
      await self._jobs.update_job(job_id, status="failed", error=error)

  async def _prepare_images(self, product: ProductPayload, options: RegistrationOptions) -> tuple[list[ProcessedImage], ImageUrls, list[str]]:
    if not product.images:
      return [], ImageUrls(), []

    if options.skip_images or self._images is None:
      # Pass remote URLs through untouched; uploads need the pipeline.
      urls = [image for image in product.images if isinstance(image, str)]
      warnings = [] if len(urls) == len(product.images) else ["Uploaded images were skipped because image processing is disabled."]
      return [], ImageUrls(main_image_url=urls[0] if urls else None, additional_image_urls=tuple(urls[1:])), warnings

    processed = await self._images.process_images(product.images, product.product_id or product.seller_code)
    warnings = [f"Image {image.index} ({image.source_url or 'upload'}) failed: {image.error}" for image in processed if image.status == "failed"]
    return processed, ImageUrls.from_processed(processed), warnings

  async def _resolve_categories(self, product: ProductPayload, targets: list[str]) -> tuple[dict[str, CategoryMapping | None], dict[str, str]]:
    """Look up every platform; mapper failures are returned per platform."""
    mappings: dict[str, CategoryMapping | None] = {}
    errors: dict[str, str] = {}
    for platform in targets:
      try:
        mappings[platform] = await self._categories.map_category(product, platform)
      except Exception as exc:  # noqa: BLE001
        logger.warning("Category mapper failed platform=%s", platform, exc_info=True)
        mappings[platform] = None
        errors[platform] = str(exc) or type(exc).__name__
    return mappings, errors

  async def _dispatch(self, platform: str, adapter: PlatformAdapter, product: ProductPayload, context: PlatformRequestContext) -> TargetResult:
    async with self._dispatch_slots:
      try:
        payload = adapter.build_payload(product, context)
        registered = await adapter.register_product(payload)
      except PlatformError as exc:
        logger.warning("Registration failed platform=%s code=%s retryable=%s attempts=%d", platform, exc.code, exc.retryable, exc.attempts)
        return TargetResult(target=platform, success=False, error=exc.to_info(), needs_retry=exc.retryable, attempts=exc.attempts)
      except MarketSyncError as exc:
        logger.warning("Registration rejected platform=%s code=%s", platform, exc.code)
        return TargetResult(target=platform, success=False, error=exc.to_info())
      except Exception as exc:  # noqa: BLE001
        # One broken adapter must not sink the other platforms.
        logger.error("Adapter failure platform=%s", platform, exc_info=True)
        return TargetResult(target=platform, success=False, error=error_info_from_exception(exc))
    return TargetResult(target=platform, success=True, external_id=registered.platform_product_id, attempts=registered.attempts, data={"raw": registered.raw} if registered.raw is not None else None)

  def _forget_task(self, job_id: str, task: asyncio.Task[RegistrationResult]) -> None:
    self._tasks.pop(job_id, None)
    if task.cancelled():
      return
    exc = task.exception()
    if exc is not None:
      logger.error("Background registration failed job_id=%s", job_id, exc_info=exc)
