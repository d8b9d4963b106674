"""Shared test fixtures for the flow engine."""
import httpx
import pytest
import pytest_asyncio
from typing import Any
from unittest.mock import AsyncMock

from channels.memory_adapter import InMemoryGateway
from config.settings import Settings
from core.engine import FlowEngine
from database.store_factory import reset_store
from database.store_memory import InMemoryExecutionStore
from integrations.http_client import HttpClient
from job_queue.message_queue import InMemoryMessageQueue, Queues, reset_message_queue
from models.schemas import Edge, Flow, Node


def build_flow(
    flow_id: str,
    nodes: list[tuple[str, str, dict[str, Any]]],
    edges: list[tuple],
    **fields,
) -> Flow:
    """
    Compact flow builder: nodes as (id, type, config), edges as
    (source, target) or (source, target, source_handle).
    """
    return Flow(
        id=flow_id,
        name=fields.pop("name", flow_id),
        nodes=[Node(id=nid, type=ntype, config=cfg) for nid, ntype, cfg in nodes],
        edges=[
            Edge(id=f"{e[0]}->{e[1]}", source=e[0], target=e[1],
                 source_handle=e[2] if len(e) > 2 else None)
            for e in edges
        ],
        **fields,
    )


@pytest.fixture(autouse=True)
def _reset_singletons():
    reset_store()
    reset_message_queue()
    yield
    reset_store()
    reset_message_queue()


@pytest.fixture
def settings() -> Settings:
    s = Settings()
    s.queue.retry_backoff_base = 0
    s.queue.rate_per_second = 1000.0
    s.queue.rate_burst = 1000
    return s


@pytest.fixture
def store() -> InMemoryExecutionStore:
    return InMemoryExecutionStore()


@pytest.fixture
def queue() -> InMemoryMessageQueue:
    # not connected: tests promote delayed jobs explicitly
    return InMemoryMessageQueue()


@pytest.fixture
def gateway() -> InMemoryGateway:
    return InMemoryGateway()


@pytest.fixture
def http_calls() -> list[httpx.Request]:
    return []


@pytest.fixture
def http_responder():
    """Mutable holder for the response the mock transport returns."""
    return {"status": 200, "json": {"ok": True}}


@pytest.fixture
def http_client(http_calls, http_responder) -> HttpClient:
    def handler(request: httpx.Request) -> httpx.Response:
        http_calls.append(request)
        if http_responder.get("raise"):
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(http_responder["status"], json=http_responder["json"])

    return HttpClient(transport=httpx.MockTransport(handler), retry_wait_multiplier=0, retry_wait_max=0)


@pytest.fixture
def ai_client() -> AsyncMock:
    client = AsyncMock()
    client.complete = AsyncMock(return_value="Resposta gerada")
    return client


@pytest_asyncio.fixture
async def engine(store, queue, http_client, ai_client, settings):
    eng = FlowEngine(store=store, queue=queue, http_client=http_client, ai_client=ai_client, settings=settings)
    yield eng
    await eng.close()


async def drain_actions(queue: InMemoryMessageQueue) -> list[dict[str, Any]]:
    """Pop every queued outbound action payload, in publish order."""
    payloads = []
    while True:
        job = await queue.get_nowait(Queues.ACTIONS)
        if job is None:
            return payloads
        payloads.append(job.payload)


@pytest.fixture
def greeting_flow() -> Flow:
    """START --"oi"--> MESSAGE("Olá!") --> ACTION(WAIT_RESPONSE, saveAs=q) --> END"""
    return build_flow(
        "greeting",
        nodes=[
            ("start", "START", {"triggerType": "KEYWORD_EXACT", "keyword": "oi"}),
            ("hello", "MESSAGE", {"text": "Olá!"}),
            ("ask", "ACTION", {"actionType": "WAIT_RESPONSE", "saveResponseAs": "q"}),
            ("end", "END", {}),
        ],
        edges=[("start", "hello"), ("hello", "ask"), ("ask", "end")],
    )
