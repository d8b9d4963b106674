"""
Dispatcher / Resolver — the engine's single ingress for inbound events.

  MessageReceived  → resume the contact's WAITING execution, or start the
                     flow whose START trigger matches the text
  ManualTrigger    → start a (test) execution at a chosen node, bypassing triggers
  TimerFired       → wake the named execution at its current node, no input

Resolve-or-create is serialized per contact by an in-process lock and, across
processes, by the store's one-active-execution-per-contact constraint; a
conflict reported by the store is retried, never resolved by a duplicate.
"""
from __future__ import annotations

import asyncio
import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional

from config.settings import Settings, get_settings
from core.errors import FlowNotFoundError, GraphError, TriggerConflictError
from core.runner import ExecutionRunner
from core.triggers import TriggerIndex
from database.errors import ActiveExecutionExistsError
from database.store_base import BaseExecutionStore
from models.schemas import (
    ExecutionStatus, Flow, FlowExecution, InboundEvent, ManualTrigger,
    MessageReceived, TimerFired,
)

logger = structlog.get_logger()


class Dispatcher:

    def __init__(
        self,
        store: BaseExecutionStore,
        runner: ExecutionRunner,
        triggers: TriggerIndex,
        settings: Settings = None,
    ):
        self.store = store
        self.runner = runner
        self.triggers = triggers
        settings = settings or get_settings()
        self.retry_attempts = max(settings.engine.lock_retry_attempts, 1)
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def contact_lock(self, contact_id: str) -> AsyncIterator[None]:
        """Hold the contact's lock; it is dropped once no task holds or awaits it."""
        lock = self._locks.setdefault(contact_id, asyncio.Lock())
        self._lock_users[contact_id] = self._lock_users.get(contact_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[contact_id] - 1
            if remaining:
                self._lock_users[contact_id] = remaining
            else:
                del self._lock_users[contact_id]
                del self._locks[contact_id]

    async def handle(self, event: InboundEvent) -> Optional[FlowExecution]:
        if isinstance(event, MessageReceived):
            return await self.handle_message(event)
        if isinstance(event, ManualTrigger):
            return await self.handle_manual(event)
        if isinstance(event, TimerFired):
            return await self.handle_timer(event)
        raise TypeError(f"Unsupported event: {type(event).__name__}")

    # ══════════════════════════════════════════════════════════
    #  MessageReceived
    # ══════════════════════════════════════════════════════════

    async def handle_message(self, event: MessageReceived) -> Optional[FlowExecution]:
        async with self.contact_lock(event.contact_id):
            for attempt in range(self.retry_attempts):
                try:
                    return await self._resolve_message(event)
                except ActiveExecutionExistsError as e:
                    if attempt == self.retry_attempts - 1:
                        raise
                    logger.warning("active_execution_conflict",
                                   contact_id=event.contact_id,
                                   existing_id=e.existing_id,
                                   attempt=attempt + 1)
        return None

    async def _resolve_message(self, event: MessageReceived) -> Optional[FlowExecution]:
        active = await self.store.find_active_execution(event.contact_id)

        if active is not None and active.status == ExecutionStatus.PROCESSING:
            # a crashed run; finish its pending steps before handling the message
            logger.warning("stale_processing_execution",
                           execution_id=active.id,
                           contact_id=event.contact_id,
                           node_id=active.current_node_id)
            active = await self.runner.advance(active)

        if active is not None and active.status == ExecutionStatus.WAITING:
            logger.info("execution_resumed",
                        execution_id=active.id,
                        contact_id=event.contact_id,
                        node_id=active.current_node_id)
            return await self.runner.advance(active, trigger_input=event.text)

        try:
            flow = self.triggers.match(event.text)
        except TriggerConflictError as e:
            logger.warning("trigger_conflict",
                           contact_id=event.contact_id,
                           flow_ids=e.flow_ids,
                           error=str(e))
            return None

        if flow is None:
            logger.debug("message_unmatched", contact_id=event.contact_id)
            return None
        if not await self._cooldown_elapsed(flow, event.contact_id):
            return None
        if flow.start_node is None:
            logger.warning("flow_without_start_node", flow_id=flow.id)
            return None

        execution = await self.store.create_execution(FlowExecution(
            flow_id=flow.id,
            contact_id=event.contact_id,
            status=ExecutionStatus.PROCESSING,
            current_node_id=flow.start_node.id,
        ))
        logger.info("execution_created",
                    execution_id=execution.id,
                    flow_id=flow.id,
                    contact_id=event.contact_id)
        return await self.runner.advance(execution, trigger_input=event.text, flow=flow)

    async def _cooldown_elapsed(self, flow: Flow, contact_id: str) -> bool:
        if not flow.cooldown_hours:
            return True
        last = await self.store.last_completed_execution(contact_id, flow.id)
        if last is None or last.completed_at is None:
            return True
        elapsed = datetime.now(timezone.utc) - last.completed_at
        if elapsed < timedelta(hours=flow.cooldown_hours):
            logger.info("flow_in_cooldown",
                        flow_id=flow.id,
                        contact_id=contact_id,
                        cooldown_hours=flow.cooldown_hours)
            return False
        return True

    # ══════════════════════════════════════════════════════════
    #  ManualTrigger
    # ══════════════════════════════════════════════════════════

    async def handle_manual(self, event: ManualTrigger) -> FlowExecution:
        flow = await self.store.get_flow(event.flow_id)
        if flow is None:
            raise FlowNotFoundError(event.flow_id)
        node_id = event.start_node_id or (flow.start_node.id if flow.start_node else None)
        if not node_id or flow.get_node(node_id) is None:
            raise GraphError(f"Start node not found in flow {flow.id}: {node_id}", node_id or "")

        async with self.contact_lock(event.contact_id):
            for attempt in range(self.retry_attempts):
                active = await self.store.find_active_execution(event.contact_id)
                if active is not None and not event.restart and active.flow_id == flow.id:
                    return active

                while active is not None:
                    await self.runner.abandon(active.id, reason="superseded_by_manual_trigger")
                    active = await self.store.find_active_execution(event.contact_id)

                execution = FlowExecution(
                    flow_id=flow.id,
                    contact_id=event.contact_id,
                    status=ExecutionStatus.PROCESSING,
                    current_node_id=node_id,
                )
                execution.context_data.variables["isTest"] = True
                execution.context_data.metadata["isTest"] = True
                try:
                    execution = await self.store.create_execution(execution)
                except ActiveExecutionExistsError:
                    if attempt == self.retry_attempts - 1:
                        raise
                    continue

                logger.info("manual_execution_created",
                            execution_id=execution.id,
                            flow_id=flow.id,
                            contact_id=event.contact_id,
                            node_id=node_id)
                return await self.runner.advance(execution, flow=flow)
        raise ActiveExecutionExistsError(event.contact_id)

    # ══════════════════════════════════════════════════════════
    #  TimerFired
    # ══════════════════════════════════════════════════════════

    async def handle_timer(self, event: TimerFired) -> Optional[FlowExecution]:
        execution = await self.store.get_execution(event.execution_id)
        if execution is None:
            logger.warning("timer_dropped", execution_id=event.execution_id, reason="not_found")
            return None

        async with self.contact_lock(execution.contact_id):
            execution = await self.store.get_execution(event.execution_id)
            reason = self._stale_timer_reason(execution, event)
            if reason:
                logger.warning("timer_dropped",
                               execution_id=event.execution_id,
                               node_id=event.node_id,
                               job_id=event.job_id,
                               reason=reason)
                return None

            logger.info("timer_fired",
                        execution_id=execution.id,
                        node_id=execution.current_node_id,
                        job_id=event.job_id)
            return await self.runner.advance(execution, timer_fired=True)

    @staticmethod
    def _stale_timer_reason(execution: Optional[FlowExecution], event: TimerFired) -> str:
        if execution is None:
            return "not_found"
        if execution.status != ExecutionStatus.WAITING:
            return f"status_{execution.status.value.lower()}"
        if event.node_id and event.node_id != execution.current_node_id:
            return "node_changed"
        pending = execution.context_data.metadata.get("pendingTimer") or {}
        if event.job_id is not None and pending.get("jobId") != event.job_id:
            return "job_superseded"
        return ""
