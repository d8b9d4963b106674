"""Flow engine exception hierarchy."""
from __future__ import annotations


class FlowEngineError(Exception):
    """Base exception for all engine operations."""


class GraphError(FlowEngineError):
    """
    Unrecoverable problem with the flow graph: dangling edge, missing node,
    unknown node type, missing required config, no selectable branch.
    The runner marks the execution ABANDONED.
    """

    def __init__(self, message: str, node_id: str = ""):
        self.node_id = node_id
        super().__init__(message)


class NodeExecutionError(FlowEngineError):
    """
    Recoverable transport failure inside an HTTP or AI node. Logged into
    execution metadata; the execution advances along the default edge.
    """

    def __init__(self, message: str, node_id: str = "", node_type: str = ""):
        self.node_id = node_id
        self.node_type = node_type
        super().__init__(message)


class TriggerConflictError(FlowEngineError):
    """Two flows at the same priority claim the same inbound text or keyword."""

    def __init__(self, message: str, flow_ids: list[str] = None):
        self.flow_ids = flow_ids or []
        super().__init__(message)


class FlowNotFoundError(FlowEngineError):
    def __init__(self, flow_id: str):
        self.flow_id = flow_id
        super().__init__(f"Flow not found: {flow_id}")


class ExecutionNotFoundError(FlowEngineError):
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")
