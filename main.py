"""
Atelier Order Pipeline - REST API
Moves clothing orders from intake through production and dispatch to fulfilment
"""

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
import uvicorn
from contextlib import asynccontextmanager
import logging
from datetime import datetime, timezone

# Import our modules
from atelier.config import get_settings
from atelier.database import engine, Base
from atelier.models import customer, diagnostic_log, order  # noqa: F401  registers tables
from atelier.routers import dashboard, orders, stages
from atelier.services.pipeline import build_pipeline
from atelier.utils.error_handler import ErrorContext, ErrorHandler, PipelineError
from atelier.utils.rate_limit import limiter

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    # Startup
    logger.info("Starting Atelier Order Pipeline API...")
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created/verified")

    if getattr(app.state, "pipeline", None) is None:
        app.state.pipeline = build_pipeline(settings)
    await app.state.pipeline.start()

    yield

    # Shutdown
    logger.info("Shutting down Atelier Order Pipeline API...")
    await app.state.pipeline.stop()


# Create FastAPI app
app = FastAPI(
    title="Atelier Order Pipeline API",
    description="Stage views, transitions and edits for clothing orders",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(stages.router, prefix="/api/v1/stages", tags=["stages"])
app.include_router(orders.router, prefix="/api/v1/orders", tags=["orders"])
app.include_router(dashboard.router, prefix="/api/v1/dashboard", tags=["dashboard"])


@app.get("/")
@limiter.limit("10/minute")
async def root(request: Request):
    """Root endpoint with API information"""
    return {
        "message": "Atelier Order Pipeline API",
        "version": "1.0.0",
        "docs": "/docs",
        "redoc": "/redoc",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.get("/health")
@limiter.limit("30/minute")
async def health_check(request: Request):
    """Health check endpoint; degraded while the change feed is down"""
    pipeline = getattr(request.app.state, "pipeline", None)
    feed = pipeline.change_feed if pipeline is not None else None
    degraded = feed is None or feed.is_degraded
    return {
        "status": "degraded" if degraded else "healthy",
        "change_feed": {
            "connected": feed is not None and not feed.is_degraded,
            "degraded_for_seconds": feed.degraded_for() if feed is not None else 0.0,
        },
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.exception_handler(PipelineError)
async def pipeline_exception_handler(request: Request, exc: PipelineError):
    """Typed pipeline failures carry their own status code"""
    return ErrorHandler.create_error_response(ErrorContext(request), exc)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Anything outside the pipeline taxonomy is a 500; details stay in the log"""
    logger.exception(f"Unhandled {type(exc).__name__} in {request.method} {request.url.path}")
    return ErrorHandler.create_error_response(ErrorContext(request), exc, status_code=500)


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=True,
        log_level=settings.log_level.lower()
    )
