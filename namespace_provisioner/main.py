"""FastAPI application entry point."""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from namespace_provisioner.api import live, namespaces, workflows
from namespace_provisioner.config import settings
from namespace_provisioner.exceptions import (
    ConflictError,
    DispatchError,
    NotFoundError,
    ProvisioningError,
    RegistryUnavailable,
    ValidationError,
    WorkflowStateError,
)
from namespace_provisioner.models.schemas import ErrorResponse, HealthResponse
from namespace_provisioner.services.kubernetes import KubectlException, NamespaceRegistry
from namespace_provisioner.services.workflows import ArgoWorkflowClient

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting Namespace Provisioning Service...")
    logger.info(f"Workflow engine: {settings.workflow_engine_url} (namespace {settings.workflow_namespace})")

    # Verify kubectl is available - FAIL FAST if not
    try:
        version = await asyncio.to_thread(NamespaceRegistry().get_version)
        logger.info(f"kubectl version: {version}")
    except (KubectlException, RegistryUnavailable) as e:
        logger.critical(f"kubectl not available: {e} - Service cannot start!")
        raise RuntimeError(f"kubectl is required but not available: {e}")

    live.watcher.start()

    yield

    logger.info("Shutting down Namespace Provisioning Service...")
    await live.watcher.stop()


# Create FastAPI application
app = FastAPI(
    title="Namespace Provisioning Service",
    description="Self-service namespace provisioning through workflow dispatch",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware - configure via CORS_ORIGINS env var
cors_origins = [
    origin.strip()
    for origin in settings.cors_origins.split(",")
    if origin.strip()
] if settings.cors_origins else []

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Authentication middleware
@app.middleware("http")
async def verify_api_key(request: Request, call_next):
    """Verify API key for all requests except health check."""
    # Skip auth for health check and docs
    if request.url.path in ["/health", "/docs", "/redoc", "/openapi.json"]:
        return await call_next(request)

    api_key = request.headers.get("X-API-Key")

    if not settings.api_key:
        return await call_next(request)

    if api_key != settings.api_key:
        client_host = request.client.host if request.client else "unknown"
        logger.warning(f"Invalid API key attempt from {client_host}")
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"detail": "Invalid or missing API key"},
        )

    return await call_next(request)


def _error_status(exc: ProvisioningError) -> int:
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, (ConflictError, WorkflowStateError)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, RegistryUnavailable):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, DispatchError):
        if exc.retryable:
            return status.HTTP_503_SERVICE_UNAVAILABLE
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# Exception handlers
@app.exception_handler(ProvisioningError)
async def provisioning_exception_handler(request: Request, exc: ProvisioningError):
    """Translate provisioning errors into HTTP responses."""
    status_code = _error_status(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")

    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            detail=exc.message,
            error_type=type(exc).__name__,
            field=getattr(exc, "field", None),
        ).model_dump(exclude_none=True),
    )


@app.exception_handler(KubectlException)
async def kubectl_exception_handler(request: Request, exc: KubectlException):
    """Handle cluster query failures without exposing kubectl output."""
    logger.error(f"kubectl failed: {exc.message}\nCommand: {exc.command}\nStderr: {exc.stderr}")
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content=ErrorResponse(
            detail="Cluster query failed. Check service logs for details.",
            error_type=type(exc).__name__,
        ).model_dump(exclude_none=True),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            detail=exc.detail,
            error_type="HTTPException",
        ).model_dump(exclude_none=True),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            detail="Internal server error",
            error_type=type(exc).__name__,
        ).model_dump(exclude_none=True),
    )


# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["health"],
    summary="Health check",
)
async def health_check():
    """Check service health, kubectl and workflow engine availability.

    Returns:
        Health status information
    """
    kubectl_version = None
    try:
        kubectl_version = await asyncio.to_thread(NamespaceRegistry().get_version)
    except Exception as e:
        logger.error(f"kubectl health check failed: {e}")

    engine_version = None
    try:
        engine_version = await ArgoWorkflowClient().version()
    except Exception as e:
        logger.error(f"Workflow engine health check failed: {e}")

    return HealthResponse(
        status="healthy" if kubectl_version and engine_version else "degraded",
        timestamp=datetime.now(timezone.utc),
        kubectl_version=kubectl_version,
        workflow_engine=engine_version,
    )


# Include routers
app.include_router(namespaces.router)
app.include_router(workflows.router)
app.include_router(live.router)


# Root endpoint
@app.get("/", tags=["root"])
async def root():
    """Root endpoint with service information."""
    return {
        "service": "Namespace Provisioning Service",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "websocket": "/ws",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "namespace_provisioner.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
        reload=True,
    )
