"""
Main FastAPI application entry point.
Initializes the application with middleware, routes, real-time fan-out and
health check endpoints.
"""
import asyncio
from uuid import uuid4
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from core.config import settings
from core.logging_config import configure_logging, get_logger, request_id_var

# Configure structured JSON logging before anything else logs
configure_logging(service_name="chat-api", level=settings.log_level, enable_json=settings.log_json)

from api.endpoints import auth_router, users_router, conversations_router, messages_router, websocket_router
from api.errors import register_exception_handlers
from api.health import router as health_router
from api.websocket_manager import ConnectionManager, heartbeat_monitor
from db.database import init_db

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting chat API...")
    try:
        init_db()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")

    manager: ConnectionManager = app.state.connection_manager
    await manager.start()

    heartbeat_task = asyncio.create_task(heartbeat_monitor(
        manager,
        interval_seconds=settings.heartbeat_interval_seconds,
        timeout_seconds=settings.heartbeat_timeout_seconds
    ))
    logger.info("WebSocket heartbeat monitor started")

    yield

    # Shutdown
    logger.info("Shutting down chat API...")

    heartbeat_task.cancel()
    try:
        await heartbeat_task
    except asyncio.CancelledError:
        logger.info("Heartbeat monitor stopped")

    await manager.shutdown()


# Create FastAPI application
app = FastAPI(
    title="Chat API",
    description="Conversations, messages and real-time fan-out over WebSockets",
    version="1.0.0",
    lifespan=lifespan
)

app.state.connection_manager = ConnectionManager(
    max_connections_per_user=settings.max_connections_per_user
)

register_exception_handlers(app)

# Exposes /metrics endpoint with HTTP request metrics
Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Metrics"])


# Request ID middleware
class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add unique request_id to each request.
    The request_id is included in logs for request tracing.
    """
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)

        try:
            logger.info(
                f"{request.method} {request.url.path} - "
                f"Client: {request.client.host if request.client else 'unknown'}"
            )

            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            logger.info(f"Response: {response.status_code}")
            return response
        finally:
            request_id_var.reset(token)


# Add middlewares
app.add_middleware(RequestIDMiddleware)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", tags=["Health"])
async def root():
    """
    Root endpoint pointing at docs and health checks.
    """
    return {
        "message": "Chat API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready"
    }


# Register endpoint routers
app.include_router(health_router)
app.include_router(auth_router, prefix="/auth", tags=["Authentication"])
app.include_router(users_router, prefix="/user", tags=["Users"])
app.include_router(conversations_router, prefix="/conversation", tags=["Conversations"])
app.include_router(messages_router, prefix="/message", tags=["Messages"])
app.include_router(websocket_router, tags=["WebSocket"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower()
    )
