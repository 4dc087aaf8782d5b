"""
Microcredit Portal API Application Factory
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uuid
import uvicorn

from .loans import router as loans_router
from .reports import router as reports_router
from .savings import router as savings_router
from .session import router as session_router
from .simulator import router as simulator_router
from .. import __version__
from ..errors import ConcurrencyError, MicrocreditError, NotFoundError, RemoteIOError, ValidationError
from ..logging_config import correlation_context, get_logger, log_action


logger = get_logger("microcredit.api")

ERROR_STATUS = (
    (NotFoundError, 404),
    (ValidationError, 400),
    (ConcurrencyError, 409),
    (RemoteIOError, 503),
)


async def handle_microcredit_error(request: Request, exc: MicrocreditError) -> JSONResponse:
    """Map ledger errors onto HTTP status codes"""
    status_code = 500
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break

    level = "error" if status_code >= 500 or status_code == 409 else "info"
    log_action(logger, level, str(exc), action="request_failed",
               resource=request.url.path, extra={"status_code": status_code, "error": type(exc).__name__})
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": type(exc).__name__})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Microcredit Portal API",
        description="Loans with installment verification, programmed savings and portfolio reports",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(MicrocreditError, handle_microcredit_error)

    @app.middleware("http")
    async def bind_correlation_id(request: Request, call_next):
        """Tag the request's action logs with X-Correlation-ID, generating one if absent"""
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        with correlation_context(correlation_id):
            response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    # Include routers
    app.include_router(session_router, prefix="/auth", tags=["Auth"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(savings_router, prefix="/savings", tags=["Savings"])
    app.include_router(reports_router, prefix="/reports", tags=["Reports"])
    app.include_router(simulator_router, prefix="/simulator", tags=["Simulator"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "microcredit_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Microcredit Portal API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "auth": "/auth",
                "loans": "/loans",
                "savings": "/savings",
                "reports": "/reports",
                "simulator": "/simulator",
            }
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "microcredit.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
