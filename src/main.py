"""Rent billing FastAPI application."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from src.core.billing_settings.router import router as billing_settings_router
from src.core.config import settings
from src.core.exceptions import AppException
from src.core.exceptions.handlers import (
    app_exception_handler,
    http_exception_handler,
    sqlalchemy_db_error_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from src.core.logging import configure_logging
from src.core.scheduler import create_scheduler
from src.integrations.mpesa.router import router as mpesa_router
from src.modules.billing_jobs.router import router as billing_jobs_router
from src.modules.invoices.router import router as invoices_router
from src.modules.payments.router import router as payments_router
from src.modules.reminders.router import router as reminders_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    scheduler = None
    if settings.scheduler_enabled:
        scheduler = create_scheduler()
        scheduler.start()
        logger.info("In-process billing scheduler started")
    yield
    if scheduler is not None:
        # Let a running cycle finish rather than cut it off mid-update
        scheduler.shutdown(wait=True)


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    configure_logging()
    app = FastAPI(
        title="Rent Billing",
        description="Rent invoicing, prepayment allocation, reminders and M-Pesa reconciliation",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_db_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    # Routers
    app.include_router(invoices_router, prefix="/api/v1")
    app.include_router(payments_router, prefix="/api/v1")
    app.include_router(reminders_router, prefix="/api/v1")
    app.include_router(billing_settings_router, prefix="/api/v1")
    app.include_router(mpesa_router, prefix="/api/v1")
    app.include_router(billing_jobs_router, prefix="/api/v1")

    return app


app = create_app()
