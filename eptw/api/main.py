import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from eptw import __version__
from eptw.common.logger import configure_from_settings
from eptw.core.config import get_settings
from eptw.core.exceptions import (
    PermitError,
    ConfigurationError,
    AuthorizationError,
    StaleTransitionError,
    ValidationError,
    PermitNotFoundError,
)
from eptw.api.routers import health, permits

logger = logging.getLogger(__name__)
settings = get_settings()
configure_from_settings(settings)

# Most specific class first
ERROR_STATUS_CODES = [
    (PermitNotFoundError, 404),
    (AuthorizationError, 403),
    (StaleTransitionError, 409),
    (ConfigurationError, 422),
    (ValidationError, 422),
]

app = FastAPI(
    title=settings.app_name,
    description="Electronic permit-to-work lifecycle and approval engine",
    version=__version__,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PermitError)
async def permit_error_handler(request: Request, exc: PermitError):
    """Report which guard refused the request."""
    status_code = 400
    for error_class, code in ERROR_STATUS_CODES:
        if isinstance(exc, error_class):
            status_code = code
            break
    logger.info(f"{request.method} {request.url.path} refused ({exc.guard}): {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "guard": exc.guard},
    )


# Include routers
app.include_router(health.router)
app.include_router(permits.router, prefix="/api")


@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "version": __version__,
        "docs": "/docs" if settings.debug else None,
    }
