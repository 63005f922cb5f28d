"""
Procurement Approvals API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .approvals import router as approvals_router
from .templates import router as templates_router
from .. import __version__
from ..config import get_config
from ..engine import ApprovalEngine
from ..exceptions import (
    ApprovalError, ConflictError, InvalidStateError, NotFoundError,
    UnauthorizedError, UpstreamUnavailableError
)
from ..logging_config import get_logger, setup_logging

logger = get_logger("procurement_approvals.api")

# Most specific first; DuplicateKeyError is caught as a ConflictError
ERROR_STATUS_CODES = [
    (NotFoundError, 404),
    (UnauthorizedError, 403),
    (InvalidStateError, 409),
    (ConflictError, 409),
    (UpstreamUnavailableError, 503),
]


def status_code_for(error: ApprovalError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


def create_app(engine: Optional[ApprovalEngine] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    config = get_config()

    app = FastAPI(
        title="Procurement Approvals API",
        description="Multi-step, role-gated approval workflows for procurement entities",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.state.engine = engine or ApprovalEngine.from_config(config)
    app.state.actor_header = config.actor_header

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ApprovalError)
    async def approval_error_handler(request: Request, exc: ApprovalError):
        status_code = status_code_for(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    # Include routers
    app.include_router(approvals_router, prefix="/approvals", tags=["Approvals"])
    app.include_router(templates_router, prefix="/templates", tags=["Templates"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "procurement_approvals_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Procurement Approvals API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "approvals": "/approvals",
                "templates": "/templates",
            }
        }

    @app.on_event("shutdown")
    async def close_engine():
        app.state.engine.close()

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(level=config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "procurement_approvals.api_modular:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level="info"
    )
