"""
Loan Servicing API Application Factory
"""

import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .admin import router as admin_router
from .cron import router as cron_router
from .payments import router as payments_router
from .. import __version__
from ..config import get_config
from ..logging_config import correlation_context, get_logger
from ..system import LoanServicingSystem

CORRELATION_HEADER = "X-Request-ID"


def create_app(system: Optional[LoanServicingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    system = system or LoanServicingSystem.from_config(get_config())
    logger = get_logger("loan_servicing.api")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if system.config.scheduler_enabled:
            system.scheduler.start()
        logger.info("Loan servicing API started")
        try:
            yield
        finally:
            await system.scheduler.stop()
            system.close()

    app = FastAPI(
        title="Loan Servicing API",
        description="Installment lifecycle and payment reconciliation",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.system = system

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[system.config.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        with correlation_context(correlation_id):
            response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    # Include routers
    app.include_router(payments_router, prefix="/payments", tags=["Payments"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])
    app.include_router(cron_router, prefix="/cron", tags=["Cron"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_servicing_api",
            "version": __version__,
            "scheduler_running": system.scheduler.is_running
        }

    return app
