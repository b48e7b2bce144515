"""aigent: FastAPI service around the plan-execute engine.

Loads config.yaml on startup. Exposes agent runs, the SSE event stream,
model and tool listings, runtime model registration and retrieval search,
plus operational endpoints for health, config viewing, and hot-reload.
Scheduler runs configured goals on cron schedules.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from aigent.broker import Broker
from aigent.config import ModelSettings, get_config, load_config, reload_config
from aigent.errors import BrokerClosedError, RetrievalError, ToolExecutionError, ToolNotFoundError
from aigent.runtime import Runtime
from aigent.scheduler import setup_scheduler
from aigent.schemas import ExecuteRequest, ToolExecuteRequest

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the broker, runtime and scheduler; tear them down on exit."""
    config = load_config()
    broker = Broker(config.broker)
    broker.start()
    runtime = Runtime(config=config, broker=broker)
    scheduler = setup_scheduler(config, runtime)
    scheduler.start()

    app.state.broker = broker
    app.state.runtime = runtime
    app.state.scheduler = scheduler
    app.state.tasks = set()
    logger.info(
        f"aigent started (origins={config.allowed_origins}, "
        f"models={[m.name for m in config.models]}, tools={config.tools}, "
        f"scheduled_goals={len(config.scheduled_goals)})"
    )
    yield
    app.state.scheduler.shutdown(wait=False)
    for task in list(app.state.tasks):
        task.cancel()
    await broker.shutdown()
    logger.info("aigent shutting down")


# Load config early so we can read allowed_origins and debug for middleware and logging.
_boot_config = load_config()

logging.basicConfig(level=logging.DEBUG if _boot_config.debug else logging.INFO)

app = FastAPI(title="aigent", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_boot_config.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_broker(request: Request) -> Broker:
    return request.app.state.broker


# ---------------------------------------------------------------------------
# Agent endpoints
# ---------------------------------------------------------------------------


@app.post("/api/v1/agent/execute")
async def execute_agent(
    body: ExecuteRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    """Run a goal.

    Background by default: the outcome is broadcast to event subscribers as
    agent_result / agent_error. With wait=true the RunResult is returned.
    """
    if not body.query.strip():
        raise HTTPException(status_code=400, detail="Query must not be empty")
    try:
        runtime.config.get_model(body.model_name)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))

    if body.wait:
        return await runtime.run(body.query, body.model_name, body.timeout)

    task = asyncio.create_task(
        runtime.run_and_broadcast(body.query, body.model_name, body.timeout)
    )
    tasks: set = request.app.state.tasks
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    return {"message": "Agent run started", "query": body.query}


@app.get("/api/v1/agent/status")
async def agent_status(broker: Broker = Depends(get_broker)):
    client_ids = await broker.client_ids()
    return {
        "status": "stopped" if broker.closed else "running",
        "clients_count": len(client_ids),
        "client_ids": client_ids,
        "timestamp": int(time.time()),
    }


@app.get("/api/v1/events")
async def events(
    request: Request,
    client_id: str | None = None,
    broker: Broker = Depends(get_broker),
):
    """Server-Sent Events stream of engine events and run outcomes."""
    client_id = client_id or request.headers.get("user-agent") or f"client_{time.time_ns()}"
    try:
        subscription = broker.subscribe(client_id)
    except BrokerClosedError as e:
        raise HTTPException(status_code=503, detail=str(e))

    async def stream():
        async for frame in subscription:
            yield frame

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ---------------------------------------------------------------------------
# Models and tools
# ---------------------------------------------------------------------------


@app.get("/api/v1/models")
async def list_models(runtime: Runtime = Depends(get_runtime)):
    config = runtime.config
    models = [
        {
            "name": m.name,
            "provider": m.provider,
            "model_id": m.model_id,
            "loaded": runtime.models.get(m.name) is not None,
        }
        for m in config.models
    ]
    return {"models": models, "default_model": config.default_model, "count": len(models)}


@app.post("/api/v1/models", status_code=201)
async def register_model(body: ModelSettings, runtime: Runtime = Depends(get_runtime)):
    """Register a model at runtime. It is dropped again by /reload."""
    if any(m.name == body.name for m in runtime.config.models):
        raise HTTPException(status_code=409, detail=f"Model '{body.name}' is already configured")
    try:
        runtime.register_model(body)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "message": "Model registered",
        "model": {"name": body.name, "provider": body.provider, "model_id": body.model_id},
    }


@app.get("/api/v1/tools")
async def list_tools(runtime: Runtime = Depends(get_runtime)):
    tools = [t.model_dump() for t in runtime.tools.list_tools()]
    return {"tools": tools, "count": len(tools)}


@app.post("/api/v1/tools/execute")
async def execute_tool(body: ToolExecuteRequest, runtime: Runtime = Depends(get_runtime)):
    try:
        result = await runtime.tools.execute(body.tool_name, body.input)
    except ToolNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ToolExecutionError as e:
        raise HTTPException(status_code=500, detail=e.describe())
    return {"result": result, "tool": body.tool_name}


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


@app.get("/api/v1/rag/search")
async def rag_search(
    query: str = Query(..., min_length=1),
    top_k: int | None = Query(None, ge=1),
    runtime: Runtime = Depends(get_runtime),
):
    if runtime.retriever is None:
        raise HTTPException(status_code=503, detail="Retrieval backend not configured")
    try:
        results = await runtime.search(query, top_k)
    except RetrievalError as e:
        raise HTTPException(status_code=500, detail=e.describe())
    return {
        "query": query,
        "results": [r.model_dump() for r in results],
        "count": len(results),
    }


# ---------------------------------------------------------------------------
# Operational endpoints
# ---------------------------------------------------------------------------


@app.get("/health")
async def health():
    """Liveness check."""
    return {"status": "healthy", "timestamp": int(time.time())}


@app.get("/ready")
async def ready(request: Request):
    """Readiness: the runtime is built and the broker accepts subscribers."""
    runtime = getattr(request.app.state, "runtime", None)
    broker = getattr(request.app.state, "broker", None)
    is_ready = runtime is not None and broker is not None and not broker.closed
    return {"status": "ready" if is_ready else "not_ready", "timestamp": int(time.time())}


@app.get("/config")
async def get_current_config():
    """Return current config as JSON."""
    config = get_config()
    return config.model_dump()


@app.post("/reload")
async def reload(request: Request, runtime: Runtime = Depends(get_runtime)):
    """Hot-reload config.yaml without container restart.

    Stops the current scheduler, reloads config, rebuilds the enabled tools,
    invalidates the model cache, and starts a new scheduler. Broker limits
    apply to subscribers only at startup.
    """
    try:
        new_config = reload_config()
        runtime.apply_config(new_config)

        request.app.state.scheduler.shutdown(wait=False)
        new_scheduler = setup_scheduler(new_config, runtime)
        new_scheduler.start()
        request.app.state.scheduler = new_scheduler

        return {
            "status": "reloaded",
            "models": len(new_config.models),
            "tools": new_config.tools,
            "scheduled_goals": len(new_config.scheduled_goals),
        }
    except Exception as e:
        logger.error(f"Reload failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Reload failed: {e}")
