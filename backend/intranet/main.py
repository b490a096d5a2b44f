import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from intranet.api.dependencies import StoreStatus
from intranet.api.router import api_router
from intranet.config import get_settings
from intranet.database import engine, store_probe, wait_for_store
from intranet.exceptions import AccessControlError, ErrorKind, StoreUnavailable
from intranet.services.change_feed import ChangeFeed
from intranet.services.connectivity import ConnectivityMonitor

settings = get_settings()
logger = logging.getLogger(__name__)

ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.INVALID_ARGUMENT: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.INVITATION_NOT_FOUND_OR_CONSUMED: status.HTTP_404_NOT_FOUND,
    ErrorKind.STORE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.PARTIAL_REDEMPTION: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    configure_logging()
    settings.validate_security()
    logger.info("Auth mode: %s", settings.get_auth_mode())

    app.state.store_status = StoreStatus.INITIALIZING
    try:
        await wait_for_store(
            store_probe(engine),
            timeout=settings.store_init_timeout_seconds,
            interval=settings.store_init_poll_interval_seconds,
        )
        app.state.store_status = StoreStatus.READY
    except StoreUnavailable:
        # Keep serving: health reports the error and reinitialize can retry
        app.state.store_status = StoreStatus.ERROR

    app.state.connectivity.start()
    yield
    await app.state.connectivity.stop()
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    description="Access control and onboarding for the municipal intranet",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.change_feed = ChangeFeed()
app.state.connectivity = ConnectivityMonitor(
    store_probe(engine), interval=settings.connectivity_check_interval_seconds
)
app.state.store_status = StoreStatus.INITIALIZING

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Enable GZip compression for responses > 500 bytes
app.add_middleware(GZipMiddleware, minimum_size=500)
# Include API router
app.include_router(api_router, prefix="/api/v1")


@app.exception_handler(AccessControlError)
async def access_control_exception_handler(
    request: Request, exc: AccessControlError
) -> JSONResponse:
    status_code = ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    headers = None
    if status_code == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer"}
    if status_code >= 500:
        logger.warning(
            "%s on %s %s [%s]", exc.kind.value, request.method, request.url.path, exc.error_id
        )

    return JSONResponse(
        status_code=status_code,
        content={
            "detail": exc.message,
            "error_code": exc.kind.value,
            "error_id": exc.error_id,
        },
        headers=headers,
    )


# Global exception handlers
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = []
    for error in exc.errors():
        field = " -> ".join(str(loc) for loc in error["loc"])
        errors.append({"field": field, "message": error["msg"]})

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Validation error",
            "errors": errors,
        },
    )


@app.exception_handler(ValidationError)
async def pydantic_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    errors = []
    for error in exc.errors():
        field = " -> ".join(str(loc) for loc in error["loc"])
        errors.append({"field": field, "message": error["msg"]})

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Validation error",
            "errors": errors,
        },
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled exception on {request.method} {request.url.path}: {exc}")

    # Don't expose internal error details in production
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "An unexpected error occurred. Please try again later.",
        },
    )
