"""
Main FastAPI application entry point.
Builds the chat hub in the lifespan, exposes the WebSocket endpoint, health
checks and Prometheus metrics, and wires OpenTelemetry tracing.
"""
import asyncio
import logging
from uuid import uuid4
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from core.config import settings
from db.database import SessionLocal, engine, init_db, seed_db
from db.repository import SqlMessageStore, SqlRoomStore, SqlUserDirectory

# OpenTelemetry imports
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.resources import Resource
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor

# Prometheus metrics
from prometheus_fastapi_instrumentator import Instrumentator

from core.logging_config import configure_logging
configure_logging(service_name=settings.service_name, level=settings.log_level, enable_json=settings.log_json)

from api.endpoints import websocket_router  # noqa: E402
from api.health import router as health_router  # noqa: E402
from api.websocket_manager import WebSocketTransport, heartbeat_monitor  # noqa: E402
from realtime.hub import ChatHub  # noqa: E402

logger = logging.getLogger(__name__)


def setup_tracing() -> TracerProvider:
    """
    Configure OpenTelemetry tracing.

    Spans are exported over OTLP/HTTP when ``otel_exporter_endpoint`` is set;
    otherwise they are created (for log correlation) but not exported.
    """
    resource = Resource.create({
        "service.name": settings.service_name,
        "service.version": "1.0.0",
    })
    tracer_provider = TracerProvider(resource=resource)

    if settings.otel_exporter_endpoint:
        exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_endpoint)
        tracer_provider.add_span_processor(BatchSpanProcessor(exporter))
        logger.info(f"OpenTelemetry tracing exporting to {settings.otel_exporter_endpoint}")

    trace.set_tracer_provider(tracer_provider)
    return tracer_provider


tracer_provider = setup_tracing()


def build_hub(transport: WebSocketTransport) -> ChatHub:
    """Wire the hub to the SQL stores and the optional Redis relay."""
    relay = None
    if settings.relay_enabled:
        from services.event_relay import RedisEventRelay
        from services.redis_client import get_redis_client
        relay = RedisEventRelay(get_redis_client(settings), settings.relay_channel_prefix)

    return ChatHub(
        settings,
        messages=SqlMessageStore(SessionLocal),
        rooms=SqlRoomStore(SessionLocal),
        users=SqlUserDirectory(SessionLocal),
        transport=transport,
        relay=relay
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Creates tables, builds the hub and runs the heartbeat monitor.
    """
    logger.info("Starting chat core...")
    init_db()
    if settings.seed_default_room:
        seed_db()

    transport = WebSocketTransport()
    hub = build_hub(transport)
    app.state.transport = transport
    app.state.hub = hub
    app.state.users = SqlUserDirectory(SessionLocal)

    heartbeat_task = asyncio.create_task(heartbeat_monitor(hub, transport))
    logger.info("WebSocket heartbeat monitor started")

    yield

    logger.info("Shutting down chat core...")
    heartbeat_task.cancel()
    try:
        await heartbeat_task
    except asyncio.CancelledError:
        logger.info("Heartbeat monitor stopped")
    await hub.shutdown()


app = FastAPI(
    title="Chat Core",
    description="Real-time message delivery and room presence",
    version="1.0.0",
    lifespan=lifespan
)

FastAPIInstrumentor.instrument_app(app)
SQLAlchemyInstrumentor().instrument(engine=engine)

# Exposes /metrics with HTTP metrics plus the chat core's own collectors
Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Metrics"])


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Tags each HTTP request with a request_id for log correlation, reusing an
    incoming ``X-Request-ID`` when a proxy already set one.
    """
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid4().hex
        request.state.request_id = request_id
        logger.info(
            f"[{request_id}] {request.method} {request.url.path}",
            extra={"request_id": request_id}
        )
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router)
app.include_router(websocket_router, tags=["WebSocket"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower()
    )
