"""
Main FastAPI application entry point.
Initializes the application with middleware, routes, the live connection
manager and its heartbeat task.
"""
import asyncio
import logging
from uuid import uuid4
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.resources import Resource
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_fastapi_instrumentator import Instrumentator
from core.config import settings
from core.logging_config import configure_logging, request_id_var
from db.database import engine, init_db, seed_db
from api.websocket_manager import ConnectionManager, heartbeat_monitor

# Configure structured JSON logging
configure_logging(service_name=settings.service_name, level=settings.log_level, enable_json=settings.log_json)

logger = logging.getLogger(__name__)


def setup_tracing() -> TracerProvider:
    """
    Configure OpenTelemetry tracing with an OTLP/HTTP exporter.

    Spans cover HTTP requests, WebSocket sessions and database queries.
    """
    resource = Resource.create({
        "service.name": settings.service_name,
        "service.version": "1.0.0",
        "deployment.environment": settings.environment
    })

    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint)))
    trace.set_tracer_provider(tracer_provider)

    SQLAlchemyInstrumentor().instrument(engine=engine)
    logger.info(f"OpenTelemetry tracing initialized, exporting to {settings.otlp_endpoint}")
    return tracer_provider


tracer_provider = setup_tracing() if settings.tracing_enabled else None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup creates the tables, seeds demo data when enabled, builds the one
    ConnectionManager for this process and starts the heartbeat monitor.
    Shutdown stops the monitor.
    """
    logger.info(f"Starting {settings.service_name}...")
    init_db()
    if settings.seed_demo_data:
        seed_db()

    manager = ConnectionManager(max_connections_per_user=settings.max_connections_per_user)
    app.state.connection_manager = manager

    heartbeat_task = asyncio.create_task(heartbeat_monitor(
        manager,
        interval_seconds=settings.heartbeat_interval_seconds,
        timeout_seconds=settings.heartbeat_timeout_seconds
    ))
    logger.info("WebSocket heartbeat monitor started")

    yield

    logger.info(f"Shutting down {settings.service_name}...")
    heartbeat_task.cancel()
    try:
        await heartbeat_task
    except asyncio.CancelledError:
        logger.info("Heartbeat monitor stopped")

    if tracer_provider is not None:
        tracer_provider.shutdown()


# Create FastAPI application
app = FastAPI(
    title="TaskHub Realtime",
    description="Realtime chat and notification fan-out for the TaskHub marketplace",
    version="1.0.0",
    lifespan=lifespan
)

if tracer_provider is not None:
    FastAPIInstrumentor.instrument_app(app, tracer_provider=tracer_provider)

# Exposes /metrics with HTTP request metrics and the realtime gauges/counters
Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Metrics"])


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add unique request_id to each request.
    The request_id is included in logs for request tracing.
    """
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)

        logger.info(
            f"{request.method} {request.url.path} - "
            f"Client: {request.client.host if request.client else 'unknown'}"
        )

        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)

        response.headers["X-Request-ID"] = request_id
        return response


# Add middlewares
app.add_middleware(RequestIDMiddleware)

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
    Root endpoint with pointers to docs and probes.
    """
    return {
        "message": f"{settings.service_name} - realtime chat and notifications",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready",
        "websocket": "/ws"
    }


# Register endpoint routers
from api.endpoints import conversations_router, tasks_router, notifications_router, websocket_router  # noqa: E402
from api.health import router as health_router  # noqa: E402

app.include_router(health_router)
app.include_router(conversations_router, prefix="/v1/conversations", tags=["Conversations"])
app.include_router(tasks_router, prefix="/v1/tasks", tags=["Task Chat"])
app.include_router(notifications_router, prefix="/v1/notifications", tags=["Notifications"])
app.include_router(websocket_router, tags=["WebSocket"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
        log_level=settings.log_level.lower()
    )
