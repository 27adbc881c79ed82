"""
Stockwise Receiving API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import get_settings
from core.errors import ReceivingError

settings = get_settings()
logger = structlog.get_logger()

ERROR_STATUS_CODES = {
    "purchase_order_not_found": 404,
    "product_not_found": 404,
    "concurrent_modification": 409,
    "invalid_transition": 409,
    "not_receivable": 409,
    "invalid_quantity": 422,
    "over_receipt": 422,
    "ledger_failure": 502,
    "persistence_failure": 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("api.starting", version=settings.app_version, env=settings.app_env)
    yield
    logger.info("api.stopping")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Purchase order receiving and inventory reconciliation",
    lifespan=lifespan,
)


@app.exception_handler(ReceivingError)
async def receiving_error_handler(request: Request, exc: ReceivingError):
    status_code = ERROR_STATUS_CODES.get(exc.kind, 500)
    log = logger.error if status_code >= 500 else logger.info
    log("api.receiving_error", path=request.url.path, kind=exc.kind, status_code=status_code, reason=exc.reason)
    return JSONResponse(status_code=status_code, content={"detail": exc.as_dict()})


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from api.v1.routers import purchase_orders

app.include_router(purchase_orders.router)
app.include_router(purchase_orders.inventory_router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
