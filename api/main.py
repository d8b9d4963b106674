"""
FastAPI Application — inbound webhook, trigger API and execution queries.

Provides:
- Webhook endpoint for inbound messages (plain or Evolution API payloads)
- Flow import / export / test trigger
- Execution query, reset and cancel for operators
- Forced timer firing and queue diagnostics
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from channels.base import MessagingGateway
from channels.memory_adapter import create_gateway
from config.settings import Settings, get_settings
from core.engine import FlowEngine
from core.errors import (
    ExecutionNotFoundError, FlowNotFoundError, GraphError, TriggerConflictError,
)
from database.errors import ActiveExecutionExistsError
from database.session import close_db, init_db
from database.store_factory import create_store
from job_queue.consumer import ActionDispatchWorker, DelayedJobPromoter, TimerConsumer
from job_queue.message_queue import create_message_queue
from models.schemas import ExecutionStatus, ManualTrigger, TimerFired

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class _CamelRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ManualTriggerRequest(_CamelRequest):
    contact_id: str
    start_node_id: Optional[str] = None
    restart: bool = True


class CancelRequest(_CamelRequest):
    reason: str = "cancelled_by_operator"


class FireTimerRequest(_CamelRequest):
    node_id: Optional[str] = None
    job_id: Optional[str] = None


def get_engine(request: Request) -> FlowEngine:
    return request.app.state.engine


router = APIRouter()


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@router.get("/health")
async def health(request: Request):
    gateway: MessagingGateway = request.app.state.gateway
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "flows_indexed": len(request.app.state.engine.triggers),
        "gateway": await gateway.health_check(),
    }


@router.get("/api/v1/queue/stats")
async def queue_stats(engine: FlowEngine = Depends(get_engine)):
    return await engine.queue_stats()


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS — Inbound messages
# ══════════════════════════════════════════════════════════════

@router.post("/webhooks/messages")
async def inbound_message(request: Request, engine: FlowEngine = Depends(get_engine)):
    body = await request.json()
    if not isinstance(body, dict):
        return JSONResponse(status_code=400, content={"detail": "Expected a JSON object"})

    event = request.app.state.gateway.handle_inbound(body)
    if event is None:
        return {"status": "ignored"}

    execution = await engine.handle(event)
    if execution is None:
        return {"status": "dropped", "contactId": event.contact_id}
    return {"status": "processed", "execution": execution.to_wire()}


# ══════════════════════════════════════════════════════════════
#  FLOWS
# ══════════════════════════════════════════════════════════════

@router.post("/api/v1/flows", status_code=201)
async def import_flow(definition: dict[str, Any], engine: FlowEngine = Depends(get_engine)):
    flow = await engine.import_flow(definition)
    return flow.to_wire()


@router.get("/api/v1/flows")
async def list_flows(active_only: bool = Query(False, alias="activeOnly"),
                     engine: FlowEngine = Depends(get_engine)):
    return [f.to_wire() for f in await engine.list_flows(active_only=active_only)]


@router.get("/api/v1/flows/{flow_id}")
async def get_flow(flow_id: str, engine: FlowEngine = Depends(get_engine)):
    return (await engine.get_flow(flow_id)).to_wire()


@router.get("/api/v1/flows/{flow_id}/export")
async def export_flow(flow_id: str, engine: FlowEngine = Depends(get_engine)):
    return await engine.export_flow(flow_id)


@router.delete("/api/v1/flows/{flow_id}", status_code=204)
async def delete_flow(flow_id: str, engine: FlowEngine = Depends(get_engine)):
    await engine.delete_flow(flow_id)


@router.post("/api/v1/flows/{flow_id}/test")
async def test_flow(flow_id: str, req: ManualTriggerRequest, engine: FlowEngine = Depends(get_engine)):
    execution = await engine.handle(ManualTrigger(
        flow_id=flow_id,
        contact_id=req.contact_id,
        start_node_id=req.start_node_id,
        restart=req.restart,
    ))
    return execution.to_wire()


# ══════════════════════════════════════════════════════════════
#  EXECUTIONS
# ══════════════════════════════════════════════════════════════

@router.get("/api/v1/executions")
async def list_executions(
    flow_id: Optional[str] = Query(None, alias="flowId"),
    status: Optional[ExecutionStatus] = None,
    contact_id: Optional[str] = Query(None, alias="contactId"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    engine: FlowEngine = Depends(get_engine),
):
    executions = await engine.list_executions(
        flow_id=flow_id, status=status, contact_id=contact_id, limit=limit, offset=offset,
    )
    return [e.to_wire() for e in executions]


@router.get("/api/v1/executions/{execution_id}")
async def get_execution(execution_id: str, engine: FlowEngine = Depends(get_engine)):
    return (await engine.get_execution(execution_id)).to_wire()


@router.post("/api/v1/executions/{execution_id}/reset")
async def reset_execution(execution_id: str, restart: bool = False,
                          engine: FlowEngine = Depends(get_engine)):
    return (await engine.reset(execution_id, restart=restart)).to_wire()


@router.post("/api/v1/executions/{execution_id}/cancel")
async def cancel_execution(execution_id: str, req: Optional[CancelRequest] = None,
                           engine: FlowEngine = Depends(get_engine)):
    reason = req.reason if req else CancelRequest().reason
    return (await engine.cancel(execution_id, reason=reason)).to_wire()


@router.post("/api/v1/timers/{execution_id}/fire")
async def fire_timer(execution_id: str, req: Optional[FireTimerRequest] = None,
                     engine: FlowEngine = Depends(get_engine)):
    await engine.get_execution(execution_id)
    req = req or FireTimerRequest()
    execution = await engine.handle(TimerFired(
        execution_id=execution_id, node_id=req.node_id, job_id=req.job_id,
    ))
    if execution is None:
        return {"status": "dropped", "executionId": execution_id}
    return {"status": "fired", "execution": execution.to_wire()}


# ══════════════════════════════════════════════════════════════
#  Error mapping
# ══════════════════════════════════════════════════════════════

def _error(status_code: int):
    async def handler(request: Request, exc: Exception):
        logger.warning("api_error", path=request.url.path, error=str(exc), status=status_code)
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    return handler


# ══════════════════════════════════════════════════════════════
#  App
# ══════════════════════════════════════════════════════════════

def create_app(
    settings: Settings = None,
    engine: FlowEngine = None,
    gateway: MessagingGateway = None,
) -> FastAPI:
    """Wire store, queue, gateway, engine and workers into a FastAPI app."""
    settings = settings or get_settings()
    if engine is None:
        store = create_store({"store_backend": settings.database.store_backend})
        queue = create_message_queue({
            "backend": settings.queue.backend,
            "redis_url": settings.queue.redis_url,
            "delayed_promote_interval": settings.queue.delayed_promote_interval,
        })
        engine = FlowEngine(store=store, queue=queue, settings=settings)
    gateway = gateway or create_gateway(settings.gateway)

    action_worker = ActionDispatchWorker(gateway, engine.store, engine.queue, settings)
    timer_consumer = TimerConsumer(engine, engine.queue, settings)
    promoter = DelayedJobPromoter(engine.queue, interval_seconds=settings.queue.delayed_promote_interval)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.database.store_backend == "sql":
            await init_db(settings.database.url)
        await engine.queue.connect()
        await engine.load_flows()
        await action_worker.start_background()
        await timer_consumer.start_background()
        await promoter.start_background()
        recovered = await engine.recover()

        logger.info("flow_engine_started",
                    store=type(engine.store).__name__,
                    queue_backend=type(engine.queue).__name__,
                    gateway=gateway.name,
                    recovered=recovered)
        yield

        await promoter.stop()
        await timer_consumer.stop()
        await action_worker.stop()
        await engine.queue.close()
        await gateway.close()
        await engine.close()
        await engine.store.close()
        if settings.database.store_backend == "sql":
            await close_db()
        logger.info("flow_engine_stopped")

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Conversational flow execution engine",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.gateway = gateway
    app.state.action_worker = action_worker

    app.add_exception_handler(FlowNotFoundError, _error(404))
    app.add_exception_handler(ExecutionNotFoundError, _error(404))
    app.add_exception_handler(TriggerConflictError, _error(409))
    app.add_exception_handler(ActiveExecutionExistsError, _error(409))
    app.add_exception_handler(GraphError, _error(422))
    app.add_exception_handler(ValidationError, _error(422))

    app.include_router(router)
    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
