"""
InMemoryExecutionStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlExecutionStore
  - Safe under asyncio: every operation completes without awaiting,
    so check-then-write sequences are atomic on a single event loop
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from database.errors import ActiveExecutionExistsError, StaleExecutionError
from database.store_base import BaseExecutionStore
from models.schemas import ExecutionStatus, Flow, FlowExecution

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryExecutionStore(BaseExecutionStore):
    """
    In-memory store with the same interface as SqlExecutionStore.
    Hands out deep copies so callers never mutate stored state directly.
    """

    def __init__(self):
        self._flows: dict[str, Flow] = {}                   # id → flow
        self._executions: dict[str, FlowExecution] = {}     # id → execution

        # Index
        self._active_by_contact: dict[str, str] = {}        # contact_id → execution_id
        logger.info("inmemory_store_initialized")

    # ── Flows ─────────────────────────────────────────────

    async def save_flow(self, flow: Flow) -> Flow:
        existing = self._flows.get(flow.id)
        stored = flow.model_copy(deep=True)
        stored.updated_at = _utcnow()
        if existing:
            stored.created_at = existing.created_at
            stored.version = existing.version + 1
        self._flows[flow.id] = stored
        return stored.model_copy(deep=True)

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        flow = self._flows.get(flow_id)
        return flow.model_copy(deep=True) if flow else None

    async def list_flows(self, active_only: bool = False) -> list[Flow]:
        flows = [f for f in self._flows.values() if f.is_active or not active_only]
        flows.sort(key=lambda f: (f.priority, f.created_at))
        return [f.model_copy(deep=True) for f in flows]

    async def delete_flow(self, flow_id: str) -> bool:
        return self._flows.pop(flow_id, None) is not None

    # ── Executions ────────────────────────────────────────

    def _check_active_slot(self, execution: FlowExecution) -> None:
        if not execution.is_active:
            return
        holder = self._active_by_contact.get(execution.contact_id)
        if holder and holder != execution.id:
            raise ActiveExecutionExistsError(execution.contact_id, holder)

    def _index(self, execution: FlowExecution) -> None:
        holder = self._active_by_contact.get(execution.contact_id)
        if execution.is_active:
            self._active_by_contact[execution.contact_id] = execution.id
        elif holder == execution.id:
            del self._active_by_contact[execution.contact_id]

    async def create_execution(self, execution: FlowExecution) -> FlowExecution:
        self._check_active_slot(execution)
        stored = execution.model_copy(deep=True)
        stored.version = 1
        stored.updated_at = _utcnow()
        self._executions[stored.id] = stored
        self._index(stored)
        logger.debug("execution_stored", execution_id=stored.id, contact_id=stored.contact_id)
        return stored.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> Optional[FlowExecution]:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def save_execution(self, execution: FlowExecution) -> FlowExecution:
        current = self._executions.get(execution.id)
        if current is None:
            raise StaleExecutionError(execution.id, execution.version)
        if current.version != execution.version:
            raise StaleExecutionError(execution.id, execution.version, current.version)
        self._check_active_slot(execution)

        stored = execution.model_copy(deep=True)
        stored.version = current.version + 1
        stored.updated_at = _utcnow()
        self._executions[stored.id] = stored
        self._index(stored)
        return stored.model_copy(deep=True)

    def _for_contact(self, contact_id: str, statuses: tuple) -> list[FlowExecution]:
        found = [
            e for e in self._executions.values()
            if e.contact_id == contact_id and e.status in statuses
        ]
        found.sort(key=lambda e: e.updated_at, reverse=True)
        return found

    async def find_active_execution(self, contact_id: str) -> Optional[FlowExecution]:
        found = self._for_contact(contact_id, (ExecutionStatus.WAITING, ExecutionStatus.PROCESSING))
        return found[0].model_copy(deep=True) if found else None

    async def find_waiting_execution(self, contact_id: str) -> Optional[FlowExecution]:
        found = self._for_contact(contact_id, (ExecutionStatus.WAITING,))
        return found[0].model_copy(deep=True) if found else None

    async def last_completed_execution(self, contact_id: str, flow_id: str) -> Optional[FlowExecution]:
        found = [
            e for e in self._for_contact(contact_id, (ExecutionStatus.COMPLETED,))
            if e.flow_id == flow_id and e.completed_at
        ]
        if not found:
            return None
        found.sort(key=lambda e: e.completed_at, reverse=True)
        return found[0].model_copy(deep=True)

    async def list_executions(
        self,
        flow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        contact_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[FlowExecution]:
        found = list(self._executions.values())
        if flow_id:
            found = [e for e in found if e.flow_id == flow_id]
        if status:
            found = [e for e in found if e.status == status]
        if contact_id:
            found = [e for e in found if e.contact_id == contact_id]
        found.sort(key=lambda e: e.updated_at, reverse=True)
        return [e.model_copy(deep=True) for e in found[offset:offset + limit]]

    async def append_metadata_entry(self, execution_id: str, key: str, entry: dict[str, Any]) -> bool:
        execution = self._executions.get(execution_id)
        if execution is None:
            return False
        metadata = execution.context_data.metadata
        metadata[key] = [*metadata.get(key, []), entry]
        execution.version += 1
        execution.updated_at = _utcnow()
        return True

    def get_stats(self) -> dict[str, Any]:
        by_status: dict[str, int] = {}
        for e in self._executions.values():
            by_status[e.status.value] = by_status.get(e.status.value, 0) + 1
        return {
            "backend": "memory",
            "flows": len(self._flows),
            "executions": len(self._executions),
            "by_status": by_status,
        }
