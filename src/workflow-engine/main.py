"""
Workflow Execution Engine Service

A FastAPI service that executes workflow graphs:
- Breadth-first traversal with conditional edges
- Pluggable node handlers (email, approval, webhook, ai, ...)
- PostgreSQL persistence of every run and node execution
- WebSocket streaming of execution progress
"""

import logging
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.resources import Resource
import asyncpg
import httpx

from config import config
from engine.approvals import ApprovalBroker
from engine.orchestrator import ExecutionOrchestrator
from handlers.builtin import build_default_registry
from persistence.store import ExecutionStore, InMemoryExecutionStore
from persistence.postgres import PostgresExecutionStore
from persistence.repository import WorkflowRepository, InMemoryWorkflowRepository
from tools.llm_client import LLMClient
from tools.mcp_binding import MCPClient
from api.routes import router, set_dependencies
from api.websocket import manager, websocket_endpoint, WebSocketBroadcaster

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# Global resources
db_pool: Optional[asyncpg.Pool] = None
orchestrator: Optional[ExecutionOrchestrator] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global db_pool, orchestrator

    # Setup OpenTelemetry
    resource = Resource.create({"service.name": "workflow-engine"})
    provider = TracerProvider(resource=resource)
    processor = BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otel_endpoint))
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)

    # Create database pool
    store: ExecutionStore
    try:
        db_pool = await asyncpg.create_pool(config.database_url, min_size=2, max_size=10)
        logger.info("Database connection established")

        store = PostgresExecutionStore(db_pool)
        await store.init_tables()
        workflows = WorkflowRepository(db_pool)
        await workflows.init_tables()
    except (OSError, asyncpg.PostgresError) as e:
        logger.warning(f"Could not connect to database, using in-memory stores: {e}")
        db_pool = None
        store = InMemoryExecutionStore()
        workflows = InMemoryWorkflowRepository()

    # Create clients
    llm_client = LLMClient(
        base_url=config.litellm_url,
        api_key=config.litellm_api_key,
        default_model=config.default_model,
    )
    mcp_client = MCPClient(base_url=config.agent_gateway_url)
    http_client = httpx.AsyncClient(timeout=config.webhook_timeout_seconds)

    broadcaster = WebSocketBroadcaster(manager)
    approvals = ApprovalBroker()
    registry = build_default_registry(
        settings=config,
        broadcaster=broadcaster,
        approvals=approvals,
        llm_client=llm_client,
        mcp_client=mcp_client,
        pool=db_pool,
        http_client=http_client,
    )

    orchestrator = ExecutionOrchestrator(registry, store, broadcaster=broadcaster, approvals=approvals)
    set_dependencies(orchestrator, store, workflows, approvals)

    logger.info("Workflow engine service started")
    yield

    # Cleanup
    await llm_client.close()
    await mcp_client.close()
    await http_client.aclose()
    if db_pool:
        await db_pool.close()

    logger.info("Workflow engine service stopped")


app = FastAPI(
    title="Workflow Execution Engine",
    description="Graph workflow execution with pluggable node handlers",
    version="1.0.0",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Instrument with OpenTelemetry
FastAPIInstrumentor.instrument_app(app)

# Include API routes
app.include_router(router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "database": db_pool is not None}


@app.websocket("/ws/executions/{execution_id}")
async def execution_websocket(websocket: WebSocket, execution_id: str):
    """WebSocket endpoint for execution streaming."""
    await websocket_endpoint(websocket, execution_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=config.host, port=config.port)
