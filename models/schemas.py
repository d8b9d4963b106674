"""
Core data models for the flow engine.
These are the universal types shared across all modules.

Wire format (JSON / API) uses camelCase names (contactId, currentNodeId,
contextData, ...); Python attributes are snake_case.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class NodeType(str, Enum):
    START = "START"
    MESSAGE = "MESSAGE"
    MEDIA = "MEDIA"
    ACTION = "ACTION"
    TIMER = "TIMER"
    HTTP = "HTTP"
    AI = "AI"
    CONDITION = "CONDITION"
    END = "END"


class TriggerType(str, Enum):
    KEYWORD_EXACT = "KEYWORD_EXACT"
    KEYWORD_CONTAINS = "KEYWORD_CONTAINS"
    KEYWORD_STARTS_WITH = "KEYWORD_STARTS_WITH"
    ANY_RESPONSE = "ANY_RESPONSE"
    TIMER = "TIMER"
    WEBHOOK = "WEBHOOK"
    MANUAL = "MANUAL"


class ExecutionStatus(str, Enum):
    PROCESSING = "PROCESSING"
    WAITING = "WAITING"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"


ACTIVE_STATUSES = (ExecutionStatus.PROCESSING, ExecutionStatus.WAITING)


class ActionKind(str, Enum):
    MESSAGE = "MESSAGE"
    MEDIA = "MEDIA"


class MediaType(str, Enum):
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    DOCUMENT = "DOCUMENT"
    AUDIO = "AUDIO"


class WaitType(str, Enum):
    WAIT_RESPONSE = "WAIT_RESPONSE"
    WAIT_INPUT = "WAIT_INPUT"
    WAIT_TIME = "WAIT_TIME"


class AIProvider(str, Enum):
    OPENAI = "OPENAI"
    GEMINI = "GEMINI"
    ANTHROPIC = "ANTHROPIC"


class ClassificationMode(str, Enum):
    NONE = "NONE"
    SENTIMENT = "SENTIMENT"
    KEYWORDS = "KEYWORDS"
    CUSTOM = "CUSTOM"


class ConditionOperator(str, Enum):
    EQUALS = "EQUALS"
    CONTAINS = "CONTAINS"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    EXISTS = "EXISTS"
    REGEX = "REGEX"


# Well-known route keys on outgoing edges
ROUTE_TRUE = "true"
ROUTE_FALSE = "false"
ROUTE_TIMEOUT = "timeout"


class WireModel(BaseModel):
    """Base for models exchanged as camelCase JSON."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def coerce_variable(value: Any) -> Any:
    """Restrict a context variable to JSON kinds; anything else is stringified."""
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, dict):
        return {str(k): coerce_variable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [coerce_variable(v) for v in value]
    return str(value)


# ──────────────────────────────────────────────────────────────
#  Flow definition — authored externally, read-only to the engine
# ──────────────────────────────────────────────────────────────

class Node(WireModel):
    id: str
    type: str                                 # NodeType value; unknown types fail at run time
    config: dict[str, Any] = {}
    label: str = ""
    position: Optional[dict[str, float]] = None


class Edge(WireModel):
    id: str = Field(default_factory=_new_id)
    source: str
    target: str
    source_handle: Optional[str] = None
    label: Optional[str] = None

    @property
    def route_key(self) -> str:
        """Discriminator used to pick among several outgoing edges ('' = unkeyed)."""
        return (self.source_handle or self.label or "").strip().lower()


class Flow(WireModel):
    """
    A directed graph of typed nodes executed once per contact.

    `priority` orders flows whose START triggers match the same message
    (lower wins). `cooldown_hours` blocks re-entry for a contact that
    completed this flow recently.
    """
    id: str = Field(default_factory=_new_id)
    name: str = ""
    nodes: list[Node] = []
    edges: list[Edge] = []
    is_active: bool = True
    trigger_keyword: Optional[str] = None
    priority: int = 100
    cooldown_hours: Optional[float] = None
    version: int = 1
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def get_node(self, node_id: str) -> Optional[Node]:
        return next((n for n in self.nodes if n.id == node_id), None)

    def outgoing(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.source == node_id]

    @property
    def start_node(self) -> Optional[Node]:
        return next((n for n in self.nodes if n.type == NodeType.START), None)

    def export(self) -> dict[str, Any]:
        """Portable definition: everything needed to re-import the flow."""
        return self.model_dump(
            mode="json", by_alias=True,
            exclude={"created_at", "updated_at"},
        )


# ──────────────────────────────────────────────────────────────
#  Execution state
# ──────────────────────────────────────────────────────────────

class UserResponse(WireModel):
    node_id: str
    response: str
    timestamp: datetime = Field(default_factory=_utcnow)


class ExecutedNode(WireModel):
    node_id: str
    node_type: str
    timestamp: datetime = Field(default_factory=_utcnow)


class ContextData(WireModel):
    variables: dict[str, Any] = {}
    user_responses: list[UserResponse] = []
    executed_nodes: list[ExecutedNode] = []
    metadata: dict[str, Any] = {}


class FlowExecution(WireModel):
    """One run of a Flow for one contact — the unit of mutable state."""
    id: str = Field(default_factory=_new_id)
    flow_id: str
    contact_id: str
    status: ExecutionStatus = ExecutionStatus.PROCESSING
    current_node_id: str
    context_data: ContextData = Field(default_factory=ContextData)
    version: int = 0                          # compare-and-set counter
    started_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not self.is_active


class OutboundAction(WireModel):
    """Job record owned by the Action Dispatch Queue until delivered or exhausted."""
    action_id: str = Field(default_factory=lambda: f"act_{uuid.uuid4().hex[:12]}")
    execution_id: str
    node_id: str
    contact_id: str
    kind: ActionKind
    payload: dict[str, Any] = {}
    attempt: int = 0
    max_attempts: int = 3


# ──────────────────────────────────────────────────────────────
#  Inbound events — the engine's sole ingress
# ──────────────────────────────────────────────────────────────

class MessageReceived(WireModel):
    contact_id: str
    text: str


class ManualTrigger(WireModel):
    flow_id: str
    contact_id: str
    start_node_id: Optional[str] = None
    restart: bool = True                      # False reuses an active run of the same flow


class TimerFired(WireModel):
    execution_id: str
    node_id: Optional[str] = None
    job_id: Optional[str] = None              # None = operator-forced, matches any pending timer


InboundEvent = Union[MessageReceived, ManualTrigger, TimerFired]
