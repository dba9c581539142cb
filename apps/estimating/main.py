"""
Estimating Service Application Entry Point.

FastAPI application wiring the estimating routes, middleware, error
handling and health checks.
"""

import uuid
from contextlib import asynccontextmanager
from typing import Dict, Any

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.settings import settings
from .core.logging import configure_logging, get_logger, LogContext
from .core.database import init_database
from .routes import estimating

# Configure logging before anything else
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown."""
    logger.info("Starting estimating service", version=settings.APP_VERSION)

    # Fail fast if essential configuration is missing
    settings.ensure_critical_settings()

    try:
        init_database()
        logger.info("Integrations", **settings.validate_required_integrations())
        logger.debug("Configured secrets", **settings.mask_secrets())
        logger.info("Estimating service ready to serve requests")
    except Exception as e:
        logger.error(f"Startup failed: {str(e)}", exc_info=True)
        raise

    yield

    logger.info("Shutting down estimating service")


def _request_id(request: Request):
    return getattr(request.state, "request_id", None)


app = FastAPI(
    title=settings.APP_NAME,
    description="Roof measurement normalization, line-item derivation and margin pricing",
    version=settings.APP_VERSION,
    docs_url="/api/docs" if settings.debug_mode else None,
    redoc_url="/api/redoc" if settings.debug_mode else None,
    openapi_url="/api/openapi.json" if settings.debug_mode else None,
    lifespan=lifespan
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"]
)

app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request,
                                       exc: RequestValidationError):
    """Handle validation errors with field-level details."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "status": "error",
            "message": "Validation failed",
            "details": [
                {
                    "loc": err.get("loc"),
                    "msg": str(err.get("msg")),
                    "type": err.get("type")
                }
                for err in exc.errors()
            ],
            "request_id": _request_id(request)
        }
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request,
                                 exc: StarletteHTTPException):
    """Handle HTTP exceptions with consistent format."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "status": "error",
            "message": exc.detail,
            "request_id": _request_id(request)
        }
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """
    Catch-all handler for unexpected errors.

    Logs full details while returning a safe message to clients.
    """
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)

    message = str(exc) if settings.debug_mode else "An internal error occurred"
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "status": "error",
            "message": message,
            "request_id": _request_id(request)
        }
    )


# Request tracking middleware
@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Add unique request ID for tracing and log correlation."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id

    with LogContext(request_id=request_id):
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


app.include_router(
    estimating,
    prefix=f"{settings.API_V1_PREFIX}/estimating",
    tags=["estimating"]
)


@app.get("/health", tags=["system"])
async def health_check() -> Dict[str, Any]:
    """Basic health check used by load balancers."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "integrations": settings.validate_required_integrations()
    }


@app.get("/", tags=["system"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "health": "/health",
        "api": f"{settings.API_V1_PREFIX}/estimating",
        "status": "operational"
    }
