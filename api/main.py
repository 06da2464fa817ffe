"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import health, batches, partitions
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.exceptions import LoadEngineException, NonRetryableError
from core.logging import setup_logging
from schemas.api import ErrorResponse
import logging

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Load Engine API",
    description="Operational surface for the checkpointed batch load engine",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Include routers
error_responses = {400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}}
app.include_router(health.router)
app.include_router(batches.router, responses=error_responses)
app.include_router(partitions.router, responses=error_responses)


@app.exception_handler(LoadEngineException)
async def load_engine_exception_handler(request: Request, exc: LoadEngineException):
    """Load-engine errors become structured JSON; retryable ones as 503"""
    status_code = 400 if isinstance(exc, NonRetryableError) else 503
    logger.error(f"{request.method} {request.url.path} failed: {exc.message}", extra={"error_context": exc.to_dict()})
    body = ErrorResponse(error_type=exc.__class__.__name__, message=exc.message, context=exc.context)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Load Engine API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Load Engine API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "batches": "/batches",
            "partitions": "/partitions/{table_name}"
        }
    }
