"""
Abstract Execution Store — Interface for all storage backends.

Implementations:
  - SqlExecutionStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryExecutionStore (dict-based, single-process, no persistence)

The store is the single source of truth for suspension/resumption and
the only shared mutable resource across concurrent executions. It
guarantees:
  - at most one WAITING/PROCESSING execution per contact
    (ActiveExecutionExistsError on violation)
  - compare-and-set writes keyed by execution id + version
    (StaleExecutionError on mismatch)
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import ExecutionStatus, Flow, FlowExecution


class BaseExecutionStore(ABC):
    """Interface that all execution store backends must implement."""

    # ── Flows ─────────────────────────────────────────────────

    @abstractmethod
    async def save_flow(self, flow: Flow) -> Flow:
        """Insert or replace a flow definition (bumps its version on replace)."""
        ...

    @abstractmethod
    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        ...

    @abstractmethod
    async def list_flows(self, active_only: bool = False) -> list[Flow]:
        ...

    @abstractmethod
    async def delete_flow(self, flow_id: str) -> bool:
        ...

    # ── Executions ────────────────────────────────────────────

    @abstractmethod
    async def create_execution(self, execution: FlowExecution) -> FlowExecution:
        """Persist a new execution. Raises ActiveExecutionExistsError."""
        ...

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Optional[FlowExecution]:
        ...

    @abstractmethod
    async def save_execution(self, execution: FlowExecution) -> FlowExecution:
        """
        Compare-and-set on `execution.version`. Returns the stored copy with
        the version incremented and `updated_at` refreshed.
        Raises StaleExecutionError / ActiveExecutionExistsError.
        """
        ...

    @abstractmethod
    async def find_active_execution(self, contact_id: str) -> Optional[FlowExecution]:
        """Most recently updated WAITING or PROCESSING execution of a contact."""
        ...

    @abstractmethod
    async def find_waiting_execution(self, contact_id: str) -> Optional[FlowExecution]:
        ...

    @abstractmethod
    async def last_completed_execution(self, contact_id: str, flow_id: str) -> Optional[FlowExecution]:
        ...

    @abstractmethod
    async def list_executions(
        self,
        flow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        contact_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[FlowExecution]:
        """Newest first (by updated_at)."""
        ...

    @abstractmethod
    async def append_metadata_entry(self, execution_id: str, key: str, entry: dict[str, Any]) -> bool:
        """Atomically append `entry` to the list at contextData.metadata[key]."""
        ...

    async def close(self) -> None:
        pass
