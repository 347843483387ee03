import logging

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST

from api.admin import router as admin_router
from api.routes import router
from api.wallet import router as wallet_router
from domain.errors import (
    BettingError,
    DuplicateBetInRound,
    ErrorCategory,
    WalletNotFound,
)
from infra.db import get_async_db
from infra.monitoring import HealthChecker, HealthStatus, prometheus_metrics
from infra.settings import settings

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Colour Trading API",
    description="60-second colour/number rounds with a wallet ledger",
    version="0.1.0"
)

app.include_router(router)
app.include_router(wallet_router)
app.include_router(admin_router)


def _status_for(error: BettingError) -> int:
    if isinstance(error, WalletNotFound):
        return 404
    if isinstance(error, DuplicateBetInRound):
        return 409
    if error.category == ErrorCategory.TRANSIENT:
        return 503
    return 400


@app.exception_handler(BettingError)
async def betting_error_handler(request: Request, exc: BettingError):
    prometheus_metrics.record_error(exc)
    logger.info(f"{request.method} {request.url.path} rejected: {exc.to_dict()}")
    return JSONResponse(status_code=_status_for(exc), content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"error": "Something went wrong. Please try again."})


@app.get("/health")
async def health(db: AsyncSession = Depends(get_async_db)):
    system_health = await HealthChecker(db).get_system_health()
    status_code = 503 if system_health.status == HealthStatus.UNHEALTHY else 200
    return JSONResponse(status_code=status_code, content=system_health.to_dict())


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint"""
    return Response(prometheus_metrics.get_metrics_text(), media_type=CONTENT_TYPE_LATEST)
