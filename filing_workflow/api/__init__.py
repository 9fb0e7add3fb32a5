"""
Filing Workflow API Application Factory
"""

import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .clients import router as clients_router
from .reconciliation import router as reconciliation_router, vat_router
from .workflows import router as workflows_router
from .. import __version__
from ..config import get_config
from ..exceptions import (
    ConcurrencyConflict,
    ConfirmationRequired,
    ExternalLookupFailure,
    FilingWorkflowError,
    NotFoundError,
    ReconciliationBlocked,
    RolloverFailure,
    ValidationError,
)

logger = logging.getLogger("filing.api")


# Most specific first: NotFoundError and ConfirmationRequired are ValidationErrors
ERROR_STATUS_CODES = (
    (NotFoundError, 404),
    (ConfirmationRequired, 428),
    (ValidationError, 400),
    (ConcurrencyConflict, 409),
    (ReconciliationBlocked, 422),
    (ExternalLookupFailure, 502),
    (RolloverFailure, 503),
)


def status_code_for(exc: FilingWorkflowError) -> int:
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return code
    return 500


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Filing Workflow API",
        description="Ltd accounts and VAT filing workflows with Companies House reconciliation",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(FilingWorkflowError)
    async def filing_error_handler(request: Request, exc: FilingWorkflowError):
        code = status_code_for(exc)
        if code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=code, content={"error": exc.to_dict()})

    # Include routers
    app.include_router(workflows_router, prefix="/workflows", tags=["Workflows"])
    app.include_router(clients_router, prefix="/clients", tags=["Clients"])
    app.include_router(reconciliation_router, prefix="/reconciliation", tags=["Reconciliation"])
    app.include_router(vat_router, prefix="/vat", tags=["VAT"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "filing_workflow_api",
            "version": __version__
        }

    return app


app = create_app()


def run_server(host: str = None, port: int = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "filing_workflow.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        workers=None if debug else config.api_workers,
        log_level=config.log_level.lower()
    )
