"""
Flow Engine — wires the store, queue, adapters, runner and dispatcher
together and exposes the operator surface.

  handle(event)                     inbound ingress (message / manual / timer)
  import_flow / export_flow / delete_flow / list_flows / get_flow
  list_executions / get_execution
  cancel(execution_id, reason)      → ABANDONED, pending timer removed
  reset(execution_id, restart)      → PROCESSING at START, history cleared
  recover()                         re-advance PROCESSING runs after a crash
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional, Union

from config.settings import Settings, get_settings
from core.classification import Classifier
from core.dispatcher import Dispatcher
from core.errors import ExecutionNotFoundError, FlowNotFoundError, GraphError
from core.executors import NodeExecutors
from core.runner import ExecutionRunner, update_with_retry
from core.triggers import TriggerIndex
from database.store_base import BaseExecutionStore
from database.store_factory import get_store
from integrations.ai_provider import AIClient
from integrations.http_client import HttpClient
from job_queue.message_queue import MessageQueue, get_message_queue
from models.schemas import (
    ContextData, ExecutionStatus, Flow, FlowExecution, InboundEvent,
)

logger = structlog.get_logger()


class FlowEngine:
    """
    Usage:
        engine = FlowEngine(store, queue)
        await engine.load_flows()
        await engine.import_flow({...})
        await engine.handle(MessageReceived(contact_id="5511...", text="oi"))
    """

    def __init__(
        self,
        store: BaseExecutionStore = None,
        queue: MessageQueue = None,
        http_client: HttpClient = None,
        ai_client: AIClient = None,
        settings: Settings = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or get_store()
        self.queue = queue or get_message_queue()
        self.http_client = http_client or HttpClient(
            default_timeout=self.settings.engine.default_http_timeout,
        )
        self.ai_client = ai_client or AIClient(
            self.settings.ai, timeout=self.settings.engine.default_ai_timeout,
        )
        self.classifier = Classifier(self.ai_client, self.settings.ai)
        self.executors = NodeExecutors(self.http_client, self.ai_client, self.classifier, self.settings)
        self.runner = ExecutionRunner(self.store, self.queue, self.executors, self.settings)
        self.triggers = TriggerIndex()
        self.dispatcher = Dispatcher(self.store, self.runner, self.triggers, self.settings)

    async def handle(self, event: InboundEvent) -> Optional[FlowExecution]:
        return await self.dispatcher.handle(event)

    # ══════════════════════════════════════════════════════════
    #  Flow definitions
    # ══════════════════════════════════════════════════════════

    async def load_flows(self) -> int:
        flows = await self.store.list_flows(active_only=True)
        self.triggers.rebuild(flows)
        return len(flows)

    async def import_flow(self, definition: Union[Flow, dict[str, Any]]) -> Flow:
        """Create or replace a flow. Keyword clashes are rejected before saving."""
        flow = definition if isinstance(definition, Flow) else Flow.model_validate(definition)
        if flow.is_active and flow.start_node is None:
            raise GraphError(f"Active flow {flow.id} has no START node")
        self.triggers.validate(flow)

        existing = await self.store.get_flow(flow.id)
        if existing is not None:
            flow.version = existing.version + 1
            flow.created_at = existing.created_at
        flow.updated_at = datetime.now(timezone.utc)

        saved = await self.store.save_flow(flow)
        await self.load_flows()
        logger.info("flow_imported", flow_id=saved.id, name=saved.name, version=saved.version)
        return saved

    async def export_flow(self, flow_id: str) -> dict[str, Any]:
        return (await self.get_flow(flow_id)).export()

    async def get_flow(self, flow_id: str) -> Flow:
        flow = await self.store.get_flow(flow_id)
        if flow is None:
            raise FlowNotFoundError(flow_id)
        return flow

    async def list_flows(self, active_only: bool = False) -> list[Flow]:
        return await self.store.list_flows(active_only=active_only)

    async def delete_flow(self, flow_id: str) -> None:
        if not await self.store.delete_flow(flow_id):
            raise FlowNotFoundError(flow_id)
        await self.load_flows()
        logger.info("flow_deleted", flow_id=flow_id)

    # ══════════════════════════════════════════════════════════
    #  Executions
    # ══════════════════════════════════════════════════════════

    async def get_execution(self, execution_id: str) -> FlowExecution:
        execution = await self.store.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def list_executions(
        self,
        flow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        contact_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[FlowExecution]:
        return await self.store.list_executions(
            flow_id=flow_id, status=status, contact_id=contact_id, limit=limit, offset=offset,
        )

    async def cancel(self, execution_id: str, reason: str = "cancelled_by_operator") -> FlowExecution:
        """
        Abandon an active execution. Does not wait for the contact lock, so an
        in-flight advance sees the cancellation at its next step.
        """
        await self.get_execution(execution_id)
        execution = await self.runner.abandon(execution_id, reason=reason)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def reset(self, execution_id: str, restart: bool = False) -> FlowExecution:
        """
        Rewind an execution to its flow's START node with a clean context.
        Identity and contact linkage are preserved. `restart=True` runs it
        immediately from START.
        """
        execution = await self.get_execution(execution_id)
        flow = await self.get_flow(execution.flow_id)
        start = flow.start_node
        if start is None:
            raise GraphError(f"Flow {flow.id} has no START node")

        pending_jobs: list[str] = []

        def mutate(latest: FlowExecution) -> bool:
            pending_jobs.clear()
            pending = latest.context_data.metadata.get("pendingTimer") or {}
            if pending.get("jobId"):
                pending_jobs.append(pending["jobId"])
            previous = latest.status
            latest.status = ExecutionStatus.PROCESSING
            latest.current_node_id = start.id
            latest.completed_at = None
            latest.context_data = ContextData(metadata={
                "resetAt": datetime.now(timezone.utc).isoformat(),
                "previousStatus": previous.value,
            })
            return True

        reset = await update_with_retry(self.store, execution_id, mutate, self.runner.retry_attempts)
        if reset is None:
            raise ExecutionNotFoundError(execution_id)
        for job_id in pending_jobs:
            await self.queue.cancel_delayed(job_id)
        logger.info("execution_reset",
                    execution_id=execution_id,
                    previous_status=reset.context_data.metadata.get("previousStatus"),
                    restart=restart)

        if restart:
            async with self.dispatcher.contact_lock(reset.contact_id):
                return await self.runner.advance(reset, flow=flow)
        return reset

    async def recover(self) -> int:
        """Re-advance executions left PROCESSING by a crash."""
        stale = await self.store.list_executions(status=ExecutionStatus.PROCESSING, limit=1000)
        recovered = 0
        for execution in stale:
            async with self.dispatcher.contact_lock(execution.contact_id):
                latest = await self.store.get_execution(execution.id)
                if latest is None or latest.status != ExecutionStatus.PROCESSING:
                    continue
                await self.runner.advance(latest)
                recovered += 1
        if recovered:
            logger.info("executions_recovered", count=recovered)
        return recovered

    async def queue_stats(self) -> dict[str, int]:
        return await self.queue.stats()

    async def close(self) -> None:
        await self.http_client.close()
