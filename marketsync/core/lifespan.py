import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI

from marketsync.config import Settings
from marketsync.core.logging import _initialize_logging
from marketsync.jobs.tracker import JobTracker
from marketsync.marketplaces.registry import build_platform_adapters
from marketsync.media.pipeline import ImagePipeline, ImagePipelineConfig
from marketsync.ratelimit.limiter import build_http_rate_limiter, build_platform_rate_limiter
from marketsync.ratelimit.stores import RedisCounterStore, build_counter_store
from marketsync.services.category_mapping import StaticCategoryMapper
from marketsync.services.registration import RegistrationOrchestrator
from marketsync.services.storage_client import build_storage_client
from marketsync.services.sync import MarketplaceSync
from marketsync.utils.retry import RetryOptions


async def _build_image_pipeline(settings: Settings, logger: logging.Logger) -> ImagePipeline | None:
  """Return the image pipeline, or None when blob storage is unavailable."""
  try:
    storage_client = build_storage_client(settings)
  except Exception:  # noqa: BLE001
    logger.warning("Blob storage unavailable; image URLs will be passed through unprocessed.", exc_info=True)
    return None

  # Ensure the image bucket exists before registrations begin.
  try:
    await storage_client.ensure_bucket()
    logger.info("Image bucket ensured: %s", storage_client.bucket_name)
  except Exception as exc:  # noqa: BLE001
    logger.warning("Failed to ensure image bucket at startup: %s", exc)
  return ImagePipeline(storage_client, config=ImagePipelineConfig.from_settings(settings))


async def _check_counter_store(store: RedisCounterStore | None, logger: logging.Logger) -> None:
  if store is None:
    return
  try:
    await store.ping()
    logger.info("Redis counter store reachable.")
  except Exception as exc:  # noqa: BLE001
    # The limiters fall back to local counters per call; startup continues.
    logger.warning("Redis counter store unreachable at startup: %s", exc)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Build every service onto app.state and tear them down on shutdown."""
  from marketsync.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("marketsync.core.lifespan")
  _initialize_logging(settings)

  counter_store = build_counter_store(settings)
  await _check_counter_store(counter_store, logger)
  platform_limiter = build_platform_rate_limiter(settings, counter_store)

  job_tracker = JobTracker()
  job_tracker.start_sweeper(interval_seconds=settings.job_sweep_interval_seconds, retention=timedelta(seconds=settings.job_retention_seconds))

  adapters = build_platform_adapters(settings, rate_limiter=platform_limiter, retry_options=RetryOptions.from_settings(settings))
  image_pipeline = await _build_image_pipeline(settings, logger)
  orchestrator = RegistrationOrchestrator(adapters=adapters, job_tracker=job_tracker, image_pipeline=image_pipeline, category_mapper=StaticCategoryMapper(settings.category_mappings), max_concurrent_dispatches=settings.max_concurrent_dispatches)

  app.state.settings = settings
  app.state.counter_store = counter_store
  app.state.platform_rate_limiter = platform_limiter
  app.state.http_rate_limiter = build_http_rate_limiter(settings, counter_store)
  app.state.job_tracker = job_tracker
  app.state.orchestrator = orchestrator
  app.state.marketplace_sync = MarketplaceSync(adapters=adapters, job_tracker=job_tracker, max_concurrent_dispatches=settings.max_concurrent_dispatches)
  logger.info("Startup complete environment=%s platforms=%s", settings.environment, ",".join(sorted(adapters)) or "<none>")

  try:
    yield
  finally:
    # Close adapters and the pipeline first so in-flight retries stop.
    await orchestrator.aclose()
    await job_tracker.stop_sweeper()
    if counter_store is not None:
      await counter_store.aclose()
    logger.info("Shutdown complete.")
