"""
Institute Payments API Application Factory
"""

import asyncio

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from .auth import get_payment_system
from .payments import router as payments_router
from .alerts import router as alerts_router
from ..errors import (
    PaymentError, ValidationError, NotFoundError, InvalidOperationError,
    PermissionDeniedError, ConcurrencyError
)
from ..config import get_config
from ..logging_config import get_logger, setup_logging
from .. import __version__


logger = get_logger("institute_payments.api")

ERROR_STATUS_CODES = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidOperationError: status.HTTP_400_BAD_REQUEST,
    PermissionDeniedError: status.HTTP_403_FORBIDDEN,
    ConcurrencyError: status.HTTP_409_CONFLICT,
}


def _error_response(status_code: int, message: str, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message},
        headers=headers
    )


async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code == status.HTTP_409_CONFLICT:
        logger.warning(f"Concurrent update on {request.method} {request.url.path}: {exc.message}")
    return _error_response(status_code, exc.message)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error_response(exc.status_code, exc.detail, headers=getattr(exc, "headers", None))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies are reported like any other validation failure"""
    fields = [".".join(str(loc) for loc in error["loc"] if loc != "body") for error in exc.errors()]
    logger.warning(f"Validation error on {request.url.path}: {fields}")
    return _error_response(
        status.HTTP_400_BAD_REQUEST,
        f"Missing or invalid fields: {', '.join(fields)}"
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    if get_config().is_development:
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    app = FastAPI(
        title="Institute Payments API",
        description="Payment and installment lifecycle for formation enrolments",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in config.cors_origins.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(PaymentError, payment_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    # Include routers
    app.include_router(payments_router, prefix="/payments", tags=["Payments"])
    app.include_router(alerts_router, prefix="/payment-alerts", tags=["Payment Alerts"])

    @app.on_event("startup")
    async def start_overdue_sweeper():
        """Run the overdue sweeper in the background"""
        app.state.sweeper_stop = asyncio.Event()
        app.state.sweeper_task = None
        if not config.sweeper_enabled:
            logger.info("Overdue sweeper disabled")
            return
        system = get_payment_system()
        app.state.sweeper_task = asyncio.create_task(
            system.sweeper.run_periodically(config.sweep_interval_seconds, app.state.sweeper_stop)
        )

    @app.on_event("shutdown")
    async def stop_overdue_sweeper():
        app.state.sweeper_stop.set()
        if app.state.sweeper_task:
            await app.state.sweeper_task

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "institute_payments_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Institute Payments API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "payments": "/payments",
                "payment-alerts": "/payment-alerts",
            }
        }

    return app


# Create the app instance for uvicorn
app = create_app()
