import logging
from typing import Any

from fastapi import APIRouter, Request
from sqlalchemy.exc import SQLAlchemyError

from intranet.api.dependencies import StoreStatus
from intranet.config import get_settings
from intranet.database import engine, store_probe, wait_for_store
from intranet.exceptions import StoreUnavailable

router = APIRouter()
settings = get_settings()
logger = logging.getLogger(__name__)


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@router.get("/health/ready")
async def readiness_check(request: Request) -> dict[str, Any]:
    checks = {
        "database": "unhealthy",
        "store_init": request.app.state.store_status.value,
        "connectivity": request.app.state.connectivity.status.value,
    }

    try:
        await store_probe(engine)()
        checks["database"] = "healthy"
    except (SQLAlchemyError, OSError) as e:
        checks["database"] = f"unhealthy: {e}"

    healthy = checks["database"] == "healthy" and checks["store_init"] != StoreStatus.ERROR
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
    }


@router.post("/health/reinitialize")
async def reinitialize_store(request: Request) -> dict[str, str]:
    """Manual retry after start-up gave up waiting for the store."""
    request.app.state.store_status = StoreStatus.INITIALIZING
    try:
        await wait_for_store(
            store_probe(engine),
            timeout=settings.store_init_timeout_seconds,
            interval=settings.store_init_poll_interval_seconds,
        )
    except StoreUnavailable:
        request.app.state.store_status = StoreStatus.ERROR
        raise
    request.app.state.store_status = StoreStatus.READY
    logger.info("Store re-initialized on request")
    return {"status": StoreStatus.READY.value}
