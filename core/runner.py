"""
Execution Runner — the state machine core.

  advance(execution, trigger_input?, timer_fired?) -> FlowExecution

Walks the graph from `current_node_id`, one node per iteration:

  reload (observe cancellation) → run executor → apply delta →
  pick next node → persist (compare-and-set) → enqueue side effects

Stops when a node suspends (WAITING), the path ends (COMPLETED) or the
graph is broken (ABANDONED). Every iteration is one atomic save, so a crash
resumes from the last persisted node; outbound actions are enqueued only
after the step that produced them is persisted.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Callable, Optional

from config.settings import Settings, get_settings
from core.errors import GraphError, NodeExecutionError
from core.executors import Directive, NodeContext, NodeExecutors, NodeResult
from database.errors import StaleExecutionError
from database.store_base import BaseExecutionStore
from job_queue.message_queue import MessageQueue, QueueJob, Queues
from models.schemas import (
    ExecutedNode, ExecutionStatus, Edge, Flow, FlowExecution, Node, NodeType,
    OutboundAction, ROUTE_FALSE, ROUTE_TIMEOUT, ROUTE_TRUE, UserResponse,
    coerce_variable,
)

logger = structlog.get_logger()

_RECOVERABLE_NODE_TYPES = {NodeType.HTTP.value, NodeType.AI.value}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Edge selection
# ──────────────────────────────────────────────────────────────

def _keyed(edges: list[Edge], key: str) -> Optional[Edge]:
    return next((e for e in edges if e.route_key == key), None)


def default_edge(edges: list[Edge]) -> Optional[Edge]:
    """First unkeyed edge; else the first edge not reserved for timeouts; else the first."""
    if not edges:
        return None
    return (
        _keyed(edges, "")
        or next((e for e in edges if e.route_key != ROUTE_TIMEOUT), None)
        or edges[0]
    )


def select_edge(flow: Flow, node: Node, result: NodeResult) -> Optional[Edge]:
    """Pick the outgoing edge for an advancing node. None means the path ends."""
    edges = flow.outgoing(node.id)
    if not edges:
        return None

    if result.branch is not None:
        edge = _keyed(edges, ROUTE_TRUE if result.branch else ROUTE_FALSE)
        if edge or result.branch:
            return edge
        return _keyed(edges, "")

    if result.route:
        edge = _keyed(edges, result.route.strip().lower())
        if edge:
            return edge
        if result.route_required:
            fallback = _keyed(edges, "")
            if fallback is None:
                raise GraphError(f"No edge for route '{result.route}'", node.id)
            return fallback

    return default_edge(edges)


# ──────────────────────────────────────────────────────────────
#  Compare-and-set helper
# ──────────────────────────────────────────────────────────────

async def update_with_retry(
    store: BaseExecutionStore,
    execution_id: str,
    mutate: Callable[[FlowExecution], bool],
    attempts: int = 3,
) -> Optional[FlowExecution]:
    """
    Reload → mutate → save, retrying on version conflicts.
    `mutate` returns False to leave the record untouched. Returns the saved
    execution, the unchanged one, or None if it does not exist.
    """
    for attempt in range(attempts):
        latest = await store.get_execution(execution_id)
        if latest is None:
            return None
        if not mutate(latest):
            return latest
        try:
            return await store.save_execution(latest)
        except StaleExecutionError:
            if attempt == attempts - 1:
                raise
            logger.debug("execution_update_retry", execution_id=execution_id, attempt=attempt + 1)
    return None


class _Step:
    """A fully applied iteration, ready to persist."""

    def __init__(self, execution: FlowExecution, timer_job: Optional[QueueJob], cancel_job_id: Optional[str]):
        self.execution = execution
        self.timer_job = timer_job
        self.cancel_job_id = cancel_job_id


class ExecutionRunner:

    def __init__(
        self,
        store: BaseExecutionStore,
        queue: MessageQueue,
        executors: NodeExecutors,
        settings: Settings = None,
    ):
        self.store = store
        self.queue = queue
        self.executors = executors
        settings = settings or get_settings()
        self.max_steps = settings.engine.max_steps_per_advance
        self.retry_attempts = max(settings.engine.lock_retry_attempts, 1)
        self.max_delivery_attempts = settings.queue.max_attempts

    # ══════════════════════════════════════════════════════════
    #  Advance loop
    # ══════════════════════════════════════════════════════════

    async def advance(
        self,
        execution: FlowExecution,
        trigger_input: Optional[str] = None,
        timer_fired: bool = False,
        flow: Optional[Flow] = None,
    ) -> FlowExecution:
        flow = flow or await self.store.get_flow(execution.flow_id)
        if flow is None:
            return await self.abandon(execution.id, error=f"Flow not found: {execution.flow_id}")

        resumed = execution.status == ExecutionStatus.WAITING
        first = True
        steps = 0

        while True:
            latest = await self.store.get_execution(execution.id)
            if latest is None or latest.is_terminal:
                logger.info("execution_stopped_externally",
                            execution_id=execution.id,
                            status=latest.status.value if latest else None)
                return latest or execution
            if latest.version != execution.version:
                if (latest.current_node_id, latest.status) != (execution.current_node_id, execution.status):
                    logger.warning("execution_moved_concurrently",
                                   execution_id=execution.id,
                                   node_id=latest.current_node_id)
                    return latest
                execution = latest

            node = flow.get_node(execution.current_node_id)
            try:
                if node is None:
                    raise GraphError(f"Node not found: {execution.current_node_id}", execution.current_node_id)
                steps += 1
                if steps > self.max_steps:
                    raise GraphError(f"Step budget of {self.max_steps} exceeded", node.id)

                ctx = NodeContext(
                    execution=execution,
                    node=node,
                    trigger_input=trigger_input if first else None,
                    resumed=resumed and first,
                    timer_fired=timer_fired and first,
                )
                result = await self._run_node(ctx)
                saved = await self._commit(flow, ctx, result)
            except GraphError as e:
                return await self.abandon(
                    execution.id, error=str(e), node_id=e.node_id,
                    node_type=node.type if node else "",
                )

            if saved is None:
                return await self.store.get_execution(execution.id) or execution

            await self._publish_actions(saved, node, result)
            execution = saved
            first = False

            if execution.status != ExecutionStatus.PROCESSING:
                event = "execution_suspended" if execution.status == ExecutionStatus.WAITING else "execution_completed"
                logger.info(event,
                            execution_id=execution.id,
                            flow_id=execution.flow_id,
                            contact_id=execution.contact_id,
                            node_id=execution.current_node_id)
                return execution

    async def _run_node(self, ctx: NodeContext) -> NodeResult:
        try:
            return await self.executors.run(ctx)
        except GraphError:
            raise
        except NodeExecutionError as e:
            error = str(e)
        except Exception as e:
            # external-call nodes never halt the conversation; anything else is a broken node
            if str(ctx.node.type).upper() not in _RECOVERABLE_NODE_TYPES:
                raise GraphError(f"{type(e).__name__}: {e}", ctx.node.id) from e
            error = f"{type(e).__name__}: {e}"

        logger.warning("node_execution_failed",
                       execution_id=ctx.execution.id,
                       node_id=ctx.node.id,
                       node_type=ctx.node.type,
                       error=error)
        return NodeResult(metadata_entries=[("errors", ctx.error_entry(error))])

    # ══════════════════════════════════════════════════════════
    #  Applying a step
    # ══════════════════════════════════════════════════════════

    def _apply(self, flow: Flow, ctx: NodeContext, result: NodeResult, base: FlowExecution) -> _Step:
        node = ctx.node
        updated = base.model_copy(deep=True)
        data = updated.context_data

        if not ctx.resumed:
            data.executed_nodes.append(ExecutedNode(node_id=node.id, node_type=node.type))
        for key, value in result.variables.items():
            data.variables[key] = coerce_variable(value)
        if result.user_response is not None:
            data.user_responses.append(UserResponse(node_id=node.id, response=result.user_response))
        for key, entry in result.metadata_entries:
            data.metadata.setdefault(key, []).append(entry)
        data.metadata.update(result.metadata_updates)

        pending = data.metadata.get("pendingTimer")
        timer_job: Optional[QueueJob] = None
        cancel_job_id: Optional[str] = None

        if result.directive == Directive.SUSPEND:
            updated.status = ExecutionStatus.WAITING
            if result.timer:
                if pending:
                    cancel_job_id = pending.get("jobId")
                timer_job = QueueJob.for_timer(
                    updated.id, node.id, result.timer.delay_seconds, timer_kind=result.timer.kind,
                )
                data.metadata["pendingTimer"] = {
                    "jobId": timer_job.job_id,
                    "nodeId": node.id,
                    "kind": result.timer.kind,
                    "fireAt": timer_job.scheduled_at,
                }
            return _Step(updated, timer_job, cancel_job_id)

        if pending:
            # a no-op once the job fired; removes it when the fire was forced
            cancel_job_id = pending.get("jobId")
            data.metadata.pop("pendingTimer", None)

        edge = None if result.directive == Directive.COMPLETE else select_edge(flow, node, result)
        if edge is None:
            updated.status = ExecutionStatus.COMPLETED
            updated.completed_at = _utcnow()
            return _Step(updated, None, cancel_job_id)

        if flow.get_node(edge.target) is None:
            raise GraphError(f"Edge {edge.id} points to missing node {edge.target}", node.id)
        updated.current_node_id = edge.target
        updated.status = ExecutionStatus.PROCESSING
        return _Step(updated, None, cancel_job_id)

    async def _commit(self, flow: Flow, ctx: NodeContext, result: NodeResult) -> Optional[FlowExecution]:
        """
        Persist one step. On a version conflict the step is re-applied to the
        latest record if it is still active at the same node; otherwise it is
        discarded (cancelled or reset underneath us) and None is returned.
        """
        base = ctx.execution
        for attempt in range(self.retry_attempts):
            step = self._apply(flow, ctx, result, base)
            if step.timer_job:
                # before the save: an orphaned timer is dropped as stale, a lost one strands the run
                await self.queue.publish_delayed(step.timer_job)
            try:
                saved = await self.store.save_execution(step.execution)
            except StaleExecutionError:
                if step.timer_job:
                    await self.queue.cancel_delayed(step.timer_job.job_id)
                latest = await self.store.get_execution(base.id)
                if (
                    latest is None
                    or not latest.is_active
                    or latest.current_node_id != base.current_node_id
                    or attempt == self.retry_attempts - 1
                ):
                    logger.warning("execution_step_discarded",
                                   execution_id=base.id,
                                   node_id=ctx.node.id)
                    return None
                base = latest
                continue

            if step.cancel_job_id:
                await self.queue.cancel_delayed(step.cancel_job_id)
            logger.debug("execution_step_persisted",
                         execution_id=saved.id,
                         node_id=ctx.node.id,
                         next_node_id=saved.current_node_id,
                         status=saved.status.value)
            return saved
        return None

    async def _publish_actions(self, execution: FlowExecution, node: Node, result: NodeResult) -> None:
        for kind, payload in result.actions:
            action = OutboundAction(
                execution_id=execution.id,
                node_id=node.id,
                contact_id=execution.contact_id,
                kind=kind,
                payload=payload,
                max_attempts=self.max_delivery_attempts,
            )
            await self.queue.publish(Queues.ACTIONS, QueueJob.for_action(action))

    # ══════════════════════════════════════════════════════════
    #  Terminal transitions
    # ══════════════════════════════════════════════════════════

    async def abandon(
        self,
        execution_id: str,
        error: str = "",
        node_id: str = "",
        node_type: str = "",
        reason: str = "",
    ) -> Optional[FlowExecution]:
        """Mark an active execution ABANDONED and drop its pending timer."""
        cancelled: list[str] = []
        changed: list[bool] = []

        def mutate(execution: FlowExecution) -> bool:
            cancelled.clear()
            changed.clear()
            if not execution.is_active:
                return False
            changed.append(True)
            metadata = execution.context_data.metadata
            if error:
                node = node_id or execution.current_node_id
                metadata.setdefault("errors", []).append({
                    "nodeId": node,
                    "nodeType": node_type,
                    "timestamp": _utcnow().isoformat(),
                    "error": error,
                })
            if reason:
                metadata["cancelledAt"] = _utcnow().isoformat()
                metadata["cancelReason"] = reason
            pending = metadata.pop("pendingTimer", None)
            if pending and pending.get("jobId"):
                cancelled.append(pending["jobId"])
            execution.status = ExecutionStatus.ABANDONED
            execution.completed_at = _utcnow()
            return True

        saved = await update_with_retry(self.store, execution_id, mutate, self.retry_attempts)
        for job_id in cancelled:
            await self.queue.cancel_delayed(job_id)
        if changed and saved is not None:
            log = logger.error if error else logger.info
            log("execution_abandoned",
                execution_id=execution_id,
                node_id=node_id or saved.current_node_id,
                error=error or None,
                reason=reason or None)
        return saved
