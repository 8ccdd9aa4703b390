import logging

from fastapi import APIRouter, Depends, Request, status

from marketsync.api import envelope
from marketsync.api.deps import enforce_http_rate_limit, get_marketplace_sync, get_orchestrator
from marketsync.api.models import BatchRegisterRequest, InventorySyncRequest, OrderSyncRequest, RegisterProductRequest
from marketsync.config import SUPPORTED_PLATFORMS, get_settings
from marketsync.core.json import MarketSyncJSONResponse
from marketsync.services.registration import RegistrationOrchestrator, RegistrationResult
from marketsync.services.sync import MarketplaceSync

router = APIRouter(dependencies=[Depends(enforce_http_rate_limit)])
logger = logging.getLogger("marketsync.api.routes.markets")


def _registration_response(result: RegistrationResult, request_id: str | None) -> MarketSyncJSONResponse:
  """201 when every platform succeeded, 207 on partial failure, 502 when nothing succeeded."""
  data = result.to_dict()
  if result.all_succeeded:
    return MarketSyncJSONResponse(status_code=status.HTTP_201_CREATED, content=envelope.success(data, message="Product registered on every platform.", status_code=201))
  if not result.all_failed:
    return MarketSyncJSONResponse(status_code=status.HTTP_207_MULTI_STATUS, content=envelope.fail(f"Registered on {result.success_count} of {result.success_count + result.failure_count} platforms.", status_code=207, data=data, request_id=request_id))
  return MarketSyncJSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=envelope.error("Registration failed on every platform.", status_code=502, code="REGISTRATION_FAILED", data=data, request_id=request_id))


@router.post("/products/register")
async def register_product(  # noqa: B008
  payload: RegisterProductRequest,
  request: Request,
  orchestrator: RegistrationOrchestrator = Depends(get_orchestrator),  # noqa: B008
) -> MarketSyncJSONResponse:
  """Register one product on the requested marketplaces."""
  product = payload.product.to_domain()
  options = payload.options.to_domain()
  if payload.background:
    job_id = await orchestrator.start_registration(product, payload.platforms, options)
    return MarketSyncJSONResponse(status_code=status.HTTP_202_ACCEPTED, content=envelope.success({"jobId": job_id}, message="Registration started.", status_code=202))

  result = await orchestrator.register_product(product, payload.platforms, options)
  return _registration_response(result, getattr(request.state, "request_id", None))


@router.post("/products/register/batch")
async def register_products(  # noqa: B008
  payload: BatchRegisterRequest,
  orchestrator: RegistrationOrchestrator = Depends(get_orchestrator),  # noqa: B008
) -> MarketSyncJSONResponse:
  """Register up to 50 products; each product gets its own job."""
  results = await orchestrator.register_products([product.to_domain() for product in payload.products], payload.platforms, payload.options.to_domain())
  fully_registered = sum(1 for result in results if result.all_succeeded)
  data = {"total": len(results), "fullyRegistered": fully_registered, "results": [result.to_dict() for result in results]}
  if fully_registered == len(results):
    return MarketSyncJSONResponse(status_code=status.HTTP_201_CREATED, content=envelope.success(data, message="Batch registered.", status_code=201))
  return MarketSyncJSONResponse(status_code=status.HTTP_207_MULTI_STATUS, content=envelope.fail(f"{fully_registered} of {len(results)} products registered on every platform.", status_code=207, data=data))


@router.post("/orders/sync")
async def sync_orders(  # noqa: B008
  payload: OrderSyncRequest,
  marketplace_sync: MarketplaceSync = Depends(get_marketplace_sync),  # noqa: B008
) -> MarketSyncJSONResponse:
  """Collect orders from the configured marketplaces."""
  job = await marketplace_sync.synchronize_orders(payload.platforms, **payload.filters())
  return MarketSyncJSONResponse(content=envelope.success(job.to_dict(), message=f"Order sync {job.status}."))


@router.post("/inventory/sync")
async def sync_inventory(  # noqa: B008
  payload: InventorySyncRequest,
  marketplace_sync: MarketplaceSync = Depends(get_marketplace_sync),  # noqa: B008
) -> MarketSyncJSONResponse:
  """Push stock levels to every platform listed per update."""
  job = await marketplace_sync.synchronize_inventory([update.to_domain() for update in payload.updates])
  return MarketSyncJSONResponse(content=envelope.success(job.to_dict(), message=f"Inventory sync {job.status}."))


@router.get("/platforms")
async def list_platforms(orchestrator: RegistrationOrchestrator = Depends(get_orchestrator)) -> MarketSyncJSONResponse:  # noqa: B008
  """Report which marketplaces are supported and which have credentials."""
  settings = get_settings()
  platforms = []
  for name in SUPPORTED_PLATFORMS:
    rule = settings.rate_limits.get(name, settings.default_rate_limit)
    platforms.append({"platform": name, "configured": name in orchestrator.adapters, "rateLimit": {"maxRequests": rule.max_requests, "windowMs": rule.window_ms}})
  return MarketSyncJSONResponse(content=envelope.success(platforms))
