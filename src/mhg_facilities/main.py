"""MHG Facilities budget service entry point."""

import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from mhg_facilities.api.router import router
from mhg_facilities.database import dispose_database, init_database
from mhg_facilities.errors import FacilitiesError, ValidationFailedError
from mhg_facilities.observability import configure_logging, get_logger
from mhg_facilities.settings import get_settings

logger = get_logger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    configure_logging(settings.log_level, settings.log_json)
    logger.info(
        "mhg-facilities-budgets starting",
        service=settings.service_name,
        environment=settings.environment,
    )
    init_database(settings)
    yield
    await dispose_database()
    logger.info("mhg-facilities-budgets shutting down")


app = FastAPI(title="MHG Facilities Budgets", version="0.1.0", lifespan=lifespan)


@app.middleware("http")
async def bind_request_context(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """Bind a request id (and clear leftovers) in structlog contextvars per request."""
    structlog.contextvars.clear_contextvars()
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(request_id=request_id, path=request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(FacilitiesError)
async def facilities_error_handler(request: Request, exc: FacilitiesError) -> JSONResponse:
    """Render domain errors with their status code and error body."""
    log = logger.warning if exc.status_code < 500 else logger.error
    log("request_failed", error_code=exc.error_code.value, status_code=exc.status_code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render request validation failures in the same body shape as domain errors."""
    error = ValidationFailedError("Request validation failed", details={"errors": jsonable_encoder(exc.errors())})
    logger.warning("request_invalid", error_code=error.error_code.value, error_count=len(exc.errors()))
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unexpected failures and hide their details from the caller."""
    logger.exception("unhandled_exception", error=str(exc))
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/health", tags=["health"])
async def health() -> dict[str, str]:
    """Liveness probe."""
    return {"status": "ok", "service": settings.service_name}


app.include_router(router, prefix="/api/v1")
