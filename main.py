"""
BLOOMFIT Backend API
Real-time exercise tracking for maternal wellness

FastAPI application entry point. Camera capture and pose detection run in
executor threads so the event loop stays responsive.
"""

import logging
import sys
import time
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

# ============================================
# Configure Root Logger First
# ============================================
logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[logging.StreamHandler(sys.stdout)]
)

# Service routers
from exercise_service.router import router as exercise_router
from exercise_service.models import get_session_controller

# Core utilities
from core.config import settings
from core.persistence import get_repository, HttpSessionRepository
from core.websocket import connection_manager
from shared.utils import setup_logger

# Setup logging
logger = setup_logger("bloomfit.main", level=logging.DEBUG if settings.DEBUG else logging.INFO)
request_logger = setup_logger("bloomfit.requests", level=logging.DEBUG if settings.DEBUG else logging.INFO)


# ============================================
# Request Logging Middleware
# ============================================

class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log all incoming requests and responses with timing."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        client_ip = request.client.host if request.client else "unknown"
        query_string = f"?{request.url.query}" if request.url.query else ""
        has_auth = "🔐" if request.headers.get("Authorization") else "🔓"

        request_logger.info(f"➡️  {has_auth} {request.method} {request.url.path}{query_string}")
        request_logger.debug(f"    Client: {client_ip}")

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = (time.time() - start_time) * 1000
            request_logger.error(
                f"💥 {request.method} {request.url.path} → ERROR: {type(e).__name__}: {e} ({process_time:.1f}ms)"
            )
            request_logger.error(traceback.format_exc())
            raise

        process_time = (time.time() - start_time) * 1000
        if response.status_code < 300:
            status_emoji = "✅"
        elif response.status_code < 400:
            status_emoji = "↪️"
        elif response.status_code < 500:
            status_emoji = "⚠️"
        else:
            status_emoji = "❌"

        request_logger.info(
            f"{status_emoji} {request.method} {request.url.path} → {response.status_code} ({process_time:.1f}ms)"
        )
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown."""
    # ===== STARTUP =====
    logger.info(f"🚀 {settings.APP_NAME} API starting up...")

    repository = get_repository()
    if isinstance(repository, HttpSessionRepository):
        logger.info(f"🔗 Sessions will be saved to {settings.API_BASE_URL}")
    else:
        logger.warning("⚠️ Running in MOCK MODE (sessions kept in memory)")

    connection_manager.start_heartbeat()

    logger.info(f"✅ {settings.APP_NAME} API ready!")

    yield  # Application runs here

    # ===== SHUTDOWN =====
    logger.info(f"👋 {settings.APP_NAME} API shutting down...")

    connection_manager.stop_heartbeat()
    await get_session_controller().shutdown()
    await repository.close()

    logger.info("✅ Shutdown complete")


app = FastAPI(
    title=f"{settings.APP_NAME} API",
    description="Real-time exercise tracking with pose estimation",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    controller = get_session_controller()
    return {
        "status": "healthy",
        "service": "bloomfit-api",
        "persistence": "api" if settings.API_BASE_URL else "mock",
        "camera_state": controller.camera_state.value,
        "exercise_state": controller.exercise_state.value,
        "websocket_connections": connection_manager.connection_count
    }


@app.get("/stats")
async def get_stats():
    """Get service statistics."""
    controller = get_session_controller()
    return {
        "websocket": connection_manager.get_stats(),
        "tracking": controller.provider.get_stats(),
        "pending_submissions": len(controller.pending)
    }


# Include service routers
app.include_router(exercise_router, prefix="/api/exercise", tags=["Exercise Service"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
