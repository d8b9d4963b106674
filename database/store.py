"""
SqlExecutionStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Concurrency primitives map to plain SQL:
  - compare-and-set   → UPDATE ... WHERE id = :id AND version = :expected
  - one active/contact → UNIQUE(active_contact_key), IntegrityError on clash
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update, and_
from sqlalchemy.exc import IntegrityError

from database.errors import ActiveExecutionExistsError, StaleExecutionError
from database.models import FlowRow, FlowExecutionRow
from database.session import get_session
from database.store_base import BaseExecutionStore
from models.schemas import ContextData, ExecutionStatus, Flow, FlowExecution

logger = structlog.get_logger()

_ACTIVE = (ExecutionStatus.WAITING.value, ExecutionStatus.PROCESSING.value)
_APPEND_RETRIES = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlExecutionStore(BaseExecutionStore):
    """
    Persistent execution store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Flow operations ────────────────────────────────────

    async def save_flow(self, flow: Flow) -> Flow:
        wire = flow.export()
        async with get_session() as db:
            row = await db.get(FlowRow, flow.id)
            if row:
                row.version = row.version + 1
            else:
                row = FlowRow(id=flow.id, version=flow.version, created_at=flow.created_at)
                db.add(row)
            row.name = flow.name
            row.nodes = wire["nodes"]
            row.edges = wire["edges"]
            row.is_active = flow.is_active
            row.trigger_keyword = flow.trigger_keyword
            row.priority = flow.priority
            row.cooldown_hours = flow.cooldown_hours
            row.updated_at = _utcnow()
            await db.flush()
            return self._row_to_flow(row)

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        async with get_session() as db:
            row = await db.get(FlowRow, flow_id)
            return self._row_to_flow(row) if row else None

    async def list_flows(self, active_only: bool = False) -> list[Flow]:
        async with get_session() as db:
            stmt = select(FlowRow).order_by(FlowRow.priority, FlowRow.created_at)
            if active_only:
                stmt = stmt.where(FlowRow.is_active.is_(True))
            result = await db.execute(stmt)
            return [self._row_to_flow(r) for r in result.scalars()]

    async def delete_flow(self, flow_id: str) -> bool:
        async with get_session() as db:
            row = await db.get(FlowRow, flow_id)
            if not row:
                return False
            await db.delete(row)
            return True

    # ── Execution operations ───────────────────────────────

    async def create_execution(self, execution: FlowExecution) -> FlowExecution:
        stored = execution.model_copy(deep=True)
        stored.version = 1
        stored.updated_at = _utcnow()
        try:
            async with get_session() as db:
                db.add(FlowExecutionRow(id=stored.id, **self._execution_values(stored)))
                await db.flush()
        except IntegrityError as e:
            raise ActiveExecutionExistsError(execution.contact_id) from e
        return stored

    async def get_execution(self, execution_id: str) -> Optional[FlowExecution]:
        async with get_session() as db:
            row = await db.get(FlowExecutionRow, execution_id)
            return self._row_to_execution(row) if row else None

    async def save_execution(self, execution: FlowExecution) -> FlowExecution:
        stored = execution.model_copy(deep=True)
        stored.version = execution.version + 1
        stored.updated_at = _utcnow()
        try:
            async with get_session() as db:
                stmt = (
                    update(FlowExecutionRow)
                    .where(and_(
                        FlowExecutionRow.id == execution.id,
                        FlowExecutionRow.version == execution.version,
                    ))
                    .values(**self._execution_values(stored))
                )
                result = await db.execute(stmt)
                if result.rowcount == 0:
                    row = await db.get(FlowExecutionRow, execution.id)
                    raise StaleExecutionError(
                        execution.id, execution.version, row.version if row else -1,
                    )
        except IntegrityError as e:
            raise ActiveExecutionExistsError(execution.contact_id) from e
        return stored

    async def _first(self, stmt) -> Optional[FlowExecution]:
        async with get_session() as db:
            result = await db.execute(stmt.limit(1))
            row = result.scalars().first()
            return self._row_to_execution(row) if row else None

    async def find_active_execution(self, contact_id: str) -> Optional[FlowExecution]:
        return await self._first(
            select(FlowExecutionRow)
            .where(and_(
                FlowExecutionRow.contact_id == contact_id,
                FlowExecutionRow.status.in_(_ACTIVE),
            ))
            .order_by(FlowExecutionRow.updated_at.desc())
        )

    async def find_waiting_execution(self, contact_id: str) -> Optional[FlowExecution]:
        return await self._first(
            select(FlowExecutionRow)
            .where(and_(
                FlowExecutionRow.contact_id == contact_id,
                FlowExecutionRow.status == ExecutionStatus.WAITING.value,
            ))
            .order_by(FlowExecutionRow.updated_at.desc())
        )

    async def last_completed_execution(self, contact_id: str, flow_id: str) -> Optional[FlowExecution]:
        return await self._first(
            select(FlowExecutionRow)
            .where(and_(
                FlowExecutionRow.contact_id == contact_id,
                FlowExecutionRow.flow_id == flow_id,
                FlowExecutionRow.status == ExecutionStatus.COMPLETED.value,
                FlowExecutionRow.completed_at.is_not(None),
            ))
            .order_by(FlowExecutionRow.completed_at.desc())
        )

    async def list_executions(
        self,
        flow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        contact_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[FlowExecution]:
        async with get_session() as db:
            stmt = select(FlowExecutionRow)
            if flow_id:
                stmt = stmt.where(FlowExecutionRow.flow_id == flow_id)
            if status:
                stmt = stmt.where(FlowExecutionRow.status == ExecutionStatus(status).value)
            if contact_id:
                stmt = stmt.where(FlowExecutionRow.contact_id == contact_id)
            stmt = stmt.order_by(FlowExecutionRow.updated_at.desc()).offset(offset).limit(limit)
            result = await db.execute(stmt)
            return [self._row_to_execution(r) for r in result.scalars()]

    async def append_metadata_entry(self, execution_id: str, key: str, entry: dict[str, Any]) -> bool:
        for _ in range(_APPEND_RETRIES):
            async with get_session() as db:
                row = await db.get(FlowExecutionRow, execution_id)
                if not row:
                    return False
                context = dict(row.context_data or {})
                metadata = dict(context.get("metadata") or {})
                metadata[key] = [*metadata.get(key, []), entry]
                context["metadata"] = metadata
                result = await db.execute(
                    update(FlowExecutionRow)
                    .where(and_(
                        FlowExecutionRow.id == execution_id,
                        FlowExecutionRow.version == row.version,
                    ))
                    .values(context_data=context, version=row.version + 1, updated_at=_utcnow())
                )
                if result.rowcount:
                    return True
        logger.warning("metadata_append_contended", execution_id=execution_id, key=key)
        return False

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _execution_values(execution: FlowExecution) -> dict[str, Any]:
        return {
            "flow_id": execution.flow_id,
            "contact_id": execution.contact_id,
            "status": execution.status.value,
            "current_node_id": execution.current_node_id,
            "context_data": execution.context_data.to_wire(),
            "version": execution.version,
            "active_contact_key": execution.contact_id if execution.is_active else None,
            "started_at": execution.started_at,
            "updated_at": execution.updated_at,
            "created_at": execution.created_at,
            "completed_at": execution.completed_at,
        }

    @staticmethod
    def _row_to_flow(row: FlowRow) -> Flow:
        return Flow.model_validate({
            "id": row.id,
            "name": row.name or "",
            "nodes": row.nodes or [],
            "edges": row.edges or [],
            "isActive": row.is_active,
            "triggerKeyword": row.trigger_keyword,
            "priority": row.priority,
            "cooldownHours": row.cooldown_hours,
            "version": row.version,
            "createdAt": _aware(row.created_at),
            "updatedAt": _aware(row.updated_at),
        })

    @staticmethod
    def _row_to_execution(row: FlowExecutionRow) -> FlowExecution:
        return FlowExecution(
            id=row.id,
            flow_id=row.flow_id,
            contact_id=row.contact_id,
            status=ExecutionStatus(row.status),
            current_node_id=row.current_node_id,
            context_data=ContextData.model_validate(row.context_data or {}),
            version=row.version,
            started_at=_aware(row.started_at),
            updated_at=_aware(row.updated_at),
            created_at=_aware(row.created_at),
            completed_at=_aware(row.completed_at),
        )
