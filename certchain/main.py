"""
Main FastAPI application entry point for the CertChain service.
Configures the application, services, middleware and routes.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import __version__
from .api.v1.bulk import router as bulk_router
from .api.v1.certificates import router as certificates_router
from .api.v1.email import router as email_router
from .api.v1.health import router as health_router
from .api.v1.qr import router as qr_router
from .core.config import Settings, get_settings
from .core.errors import ChainNotConfigured
from .core.middleware import setup_middleware_stack
from .services.batch_orchestrator import BatchOrchestrator
from .services.chain_client import ChainClient
from .services.content_store import ContentStore
from .services.job_store import JobStore
from .services.notification_service import NotificationService
from .services.pdf_service import PDFService
from .services.qr_service import QRCodeService
from .utils.logger import get_logger, setup_logger

logger = get_logger("main")


def create_app(settings: Optional[Settings] = None, chain_client: Optional[ChainClient] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use instead of the environment
        chain_client: Chain client to use instead of one built from settings

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()
    setup_logger(level=settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.
        Builds the services once and keeps them on app.state.
        """
        logger.info("Starting CertChain service...")

        client = chain_client
        if client is None:
            try:
                client = ChainClient.from_settings(settings)
            except ChainNotConfigured as e:
                logger.warning(f"{e.message}; issuance endpoints are disabled")

        qr_service = QRCodeService.from_settings(settings)
        pdf_service = PDFService.from_settings(settings, qr_service)
        content_store = ContentStore.from_settings(settings)
        notifier = NotificationService.from_settings(settings, qr_service)
        job_store = JobStore(ttl_seconds=settings.job_ttl_seconds, max_jobs=settings.max_jobs)

        if not content_store.is_configured():
            logger.warning("Pinata not configured; documents get local content hashes")
        if not notifier.is_configured():
            logger.info("SMTP not configured; certificate emails are skipped")

        app.state.settings = settings
        app.state.chain_client = client
        app.state.qr_service = qr_service
        app.state.pdf_service = pdf_service
        app.state.content_store = content_store
        app.state.notifier = notifier
        app.state.job_store = job_store
        app.state.orchestrator = BatchOrchestrator(
            job_store=job_store,
            pdf_service=pdf_service,
            content_store=content_store,
            qr_service=qr_service,
            notifier=notifier,
            chain_client=client,
        )
        logger.info("Application startup completed successfully")

        yield

        logger.info("Shutting down CertChain service...")
        active = app.state.orchestrator.active_jobs
        if active:
            logger.warning(f"Shutting down with {len(active)} batches still running: {', '.join(active)}")

    app = FastAPI(
        title="CertChain API",
        description="Bulk issuance and verification of blockchain-recorded certificates",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan
    )

    setup_middleware_stack(app, max_upload_size=settings.max_upload_size)

    app.include_router(health_router)
    app.include_router(bulk_router)
    app.include_router(certificates_router)
    app.include_router(qr_router)
    app.include_router(email_router)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle request validation errors with detailed error messages."""
        logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")

        return JSONResponse(
            status_code=422,
            content={
                "error": "Validation Error",
                "message": "Request validation failed",
                "details": jsonable_errors(exc)
            }
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions with logging and a generic response."""
        logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal Server Error",
                "message": "An unexpected error occurred"
            }
        )

    @app.get(
        "/",
        summary="Root Endpoint",
        description="Welcome endpoint for the CertChain API",
        tags=["root"]
    )
    async def root():
        """Basic API information."""
        return {
            "message": "Welcome to the CertChain API",
            "version": __version__,
            "docs": "/docs",
            "health": "/api/v1/health"
        }

    return app


def jsonable_errors(exc: RequestValidationError):
    """Validation errors without the raw input, which may hold non-JSON values"""
    return [
        {key: value for key, value in error.items() if key in ("type", "loc", "msg")}
        for error in exc.errors()
    ]


app = create_app()
