"""
Main FastAPI application
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import time
from prometheus_client import make_asgi_app
import uuid

from marketplace.config import settings
from marketplace.core.database import init_db, close_db
from marketplace.core.exceptions import MarketplaceException
from marketplace.core.logging import setup_logging
from marketplace.core.metrics import REQUEST_COUNT, REQUEST_DURATION
from marketplace.api.v1.api import api_router
from marketplace.api.v1.dependencies import get_gateway_registry
from marketplace.api.v1.endpoints import health
from marketplace.schemas.response import ErrorDetail, ErrorResponse

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager
    """
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    await init_db()
    logger.info("Database connection established")

    providers = get_gateway_registry().providers
    if not providers:
        logger.warning("No payment providers configured; checkout and webhooks will be rejected")
    else:
        logger.info(f"Payment providers enabled: {', '.join(providers)}")

    yield

    # Shutdown
    logger.info("Shutting down application")

    for provider in get_gateway_registry().providers:
        client = get_gateway_registry().get(provider)
        if hasattr(client, "close"):
            await client.close()

    await close_db()


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    description="Transaction ledger and payment reconciliation for the mineral marketplace",
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    openapi_url="/openapi.json" if settings.DEBUG else None,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request tracking middleware
@app.middleware("http")
async def track_requests(request: Request, call_next):
    """
    Track request metrics and add request ID
    """
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    # Route template keeps label cardinality bounded
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    REQUEST_COUNT.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code
    ).inc()

    REQUEST_DURATION.labels(
        method=request.method,
        endpoint=endpoint
    ).observe(duration)

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(duration)

    return response


# Exception handlers
@app.exception_handler(MarketplaceException)
async def marketplace_exception_handler(request: Request, exc: MarketplaceException):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=exc.code, message=exc.message, details=exc.details)
        ).model_dump(mode="json"),
    )


@app.exception_handler(404)
async def not_found_handler(request: Request, exc):
    return JSONResponse(
        status_code=404,
        content={
            "success": False,
            "error": {
                "code": "NOT_FOUND",
                "message": getattr(exc, "detail", None) or "The requested resource was not found"
            }
        }
    )


@app.exception_handler(500)
async def internal_error_handler(request: Request, exc):
    logger.error(f"Internal server error: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An internal server error occurred"
            }
        }
    )


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.APP_ENV,
        "api_docs": "/docs" if settings.DEBUG else None
    }


# Kubernetes probes at the root, API under the versioned prefix
app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(api_router, prefix=settings.API_PREFIX)

if settings.PROMETHEUS_ENABLED:
    app.mount("/metrics", make_asgi_app())
