from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from marketsync.api.routes import jobs, markets
from marketsync.config import get_settings
from marketsync.core.errors import MarketSyncError
from marketsync.core.exceptions import global_exception_handler, http_exception_handler, marketsync_exception_handler, request_validation_exception_handler
from marketsync.core.json import MarketSyncJSONResponse
from marketsync.core.lifespan import lifespan
from marketsync.core.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware

settings = get_settings()

APP_VERSION = "0.1.0"

app = FastAPI(title="MarketSync", version=APP_VERSION, default_response_class=MarketSyncJSONResponse, lifespan=lifespan, docs_url="/docs" if settings.debug else None, redoc_url=None, openapi_url="/openapi.json" if settings.debug else None)

app.add_middleware(CORSMiddleware, allow_origins=settings.allowed_origins, allow_credentials=True, allow_methods=["GET", "POST", "OPTIONS"], allow_headers=["content-type", "authorization", "x-client-id", "x-request-id"], expose_headers=["content-length", "x-request-id", "retry-after", "x-ratelimit-limit", "x-ratelimit-remaining", "x-ratelimit-reset"])

# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(MarketSyncError, marketsync_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

# Add middleware
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": APP_VERSION}


app.include_router(markets.router, prefix="/v1/markets", tags=["markets"])
app.include_router(jobs.router, prefix="/v1/jobs", tags=["jobs"])
