"""Tests for the execution runner: graph walking, suspension, edges and graph errors."""
import pytest

from conftest import build_flow, drain_actions
from core.errors import GraphError
from core.executors import NodeResult
from core.runner import default_edge, select_edge
from integrations.ai_provider import AIProviderError
from job_queue.consumer import TimerConsumer
from job_queue.message_queue import Queues
from models.schemas import (
    ContextData, Edge, ExecutionStatus, FlowExecution, MessageReceived, TimerFired,
)


def texts(payloads):
    return [p["payload"].get("text") for p in payloads]


async def start_at(engine, flow, node_id, contact_id="c1", variables=None):
    """Create a PROCESSING execution at `node_id` and advance it."""
    execution = await engine.store.create_execution(FlowExecution(
        flow_id=flow.id,
        contact_id=contact_id,
        current_node_id=node_id,
        context_data=ContextData(variables=variables or {}),
    ))
    return await engine.runner.advance(execution, flow=flow)


# ══════════════════════════════════════════════════════════════
#  Edge selection
# ══════════════════════════════════════════════════════════════

class TestEdgeSelection:
    def edges(self, *specs):
        return [Edge(id=f"e{i}", source="n", target=t, source_handle=h) for i, (t, h) in enumerate(specs)]

    def test_default_prefers_unkeyed(self):
        edges = self.edges(("a", "timeout"), ("b", None))
        assert default_edge(edges).target == "b"

    def test_default_skips_timeout_when_all_keyed(self):
        edges = self.edges(("a", "timeout"), ("b", "yes"))
        assert default_edge(edges).target == "b"

    def test_default_empty(self):
        assert default_edge([]) is None

    def test_route_key_uses_label_and_is_case_insensitive(self):
        edge = Edge(source="n", target="x", label=" Billing ")
        assert edge.route_key == "billing"

    def test_false_branch_falls_back_to_unkeyed(self):
        flow = build_flow("f", [("n", "CONDITION", {}), ("a", "END", {}), ("b", "END", {})],
                          [("n", "a", "true"), ("n", "b")])
        node = flow.get_node("n")
        assert select_edge(flow, node, NodeResult(branch=False)).target == "b"
        assert select_edge(flow, node, NodeResult(branch=True)).target == "a"

    def test_true_branch_without_true_edge_ends(self):
        flow = build_flow("f", [("n", "CONDITION", {}), ("b", "END", {})], [("n", "b", "false")])
        assert select_edge(flow, flow.get_node("n"), NodeResult(branch=True)) is None

    def test_required_route_without_fallback_raises(self):
        flow = build_flow("f", [("n", "AI", {}), ("a", "END", {})], [("n", "a", "support")])
        with pytest.raises(GraphError):
            select_edge(flow, flow.get_node("n"), NodeResult(route="billing", route_required=True))

    def test_optional_route_miss_uses_default(self):
        flow = build_flow("f", [("n", "ACTION", {}), ("a", "END", {})], [("n", "a")])
        assert select_edge(flow, flow.get_node("n"), NodeResult(route="timeout")).target == "a"


# ══════════════════════════════════════════════════════════════
#  Linear flows
# ══════════════════════════════════════════════════════════════

class TestGreetingFlow:
    @pytest.mark.asyncio
    async def test_oi_then_teste_completes(self, engine, queue, greeting_flow):
        await engine.import_flow(greeting_flow)

        first = await engine.handle(MessageReceived(contact_id="5511988887777", text="oi"))
        assert first.status == ExecutionStatus.WAITING
        assert first.current_node_id == "ask"

        done = await engine.handle(MessageReceived(contact_id="5511988887777", text="teste"))
        assert done.id == first.id
        assert done.status == ExecutionStatus.COMPLETED
        assert done.completed_at is not None
        assert done.context_data.variables["q"] == "teste"
        assert [r.response for r in done.context_data.user_responses] == ["oi", "teste"]
        assert [n.node_id for n in done.context_data.executed_nodes] == ["start", "hello", "ask", "end"]
        assert texts(await drain_actions(queue)) == ["Olá!"]

    @pytest.mark.asyncio
    async def test_unmatched_message_creates_nothing(self, engine, store, greeting_flow):
        await engine.import_flow(greeting_flow)
        assert await engine.handle(MessageReceived(contact_id="c1", text="bom dia")) is None
        assert await store.list_executions(contact_id="c1") == []

    @pytest.mark.asyncio
    async def test_actions_carry_execution_and_node(self, engine, queue, greeting_flow):
        await engine.import_flow(greeting_flow)
        execution = await engine.handle(MessageReceived(contact_id="c1", text="OI"))
        [action] = await drain_actions(queue)
        assert action["executionId"] == execution.id
        assert action["nodeId"] == "hello"
        assert action["contactId"] == "c1"
        assert action["kind"] == "MESSAGE"


class TestRecoverableErrors:
    @pytest.mark.asyncio
    async def test_http_failure_advances_with_error_entry(self, engine, queue, http_responder):
        http_responder["raise"] = True
        flow = build_flow("crm", [
            ("start", "START", {"triggerType": "ANY_RESPONSE"}),
            ("http", "HTTP", {"url": "https://crm.example.com/hook", "method": "POST", "saveResponseAs": "crm"}),
            ("after", "MESSAGE", {"text": "Seguimos"}),
            ("wait", "ACTION", {}),
        ], [("start", "http"), ("http", "after"), ("after", "wait")])
        await engine.import_flow(flow)

        execution = await engine.handle(MessageReceived(contact_id="c1", text="olá"))

        assert execution.status == ExecutionStatus.WAITING
        assert execution.current_node_id == "wait"
        assert "crm" not in execution.context_data.variables
        [error] = execution.context_data.metadata["errors"]
        assert error["nodeId"] == "http"
        assert error["nodeType"] == "HTTP"
        assert error["error"]
        assert texts(await drain_actions(queue)) == ["Seguimos"]

    @pytest.mark.asyncio
    async def test_malformed_http_config_is_recorded_and_advances(self, engine, http_calls):
        flow = build_flow("crm", [
            ("http", "HTTP", {"url": "https://crm.example.com", "retryOnFailure": True, "maxRetries": "x"}),
            ("next", "ACTION", {}),
        ], [("http", "next")])
        execution = await start_at(engine, flow, "http")
        assert execution.status == ExecutionStatus.WAITING
        assert execution.current_node_id == "next"
        [error] = execution.context_data.metadata["errors"]
        assert error["nodeType"] == "HTTP"
        assert error["error"].startswith("ValueError")
        assert http_calls == []

    @pytest.mark.asyncio
    async def test_malformed_sentiment_config_advances_without_route(self, engine, ai_client):
        ai_client.complete.return_value = "go"
        flow = build_flow("ai", [
            ("ai", "AI", {
                "userPrompt": "x",
                "sendResponse": False,
                "classificationMode": "SENTIMENT",
                "classificationConfig": {"sentimentThreshold": "high", "positiveKeywords": ["go"]},
            }),
            ("next", "ACTION", {}),
        ], [("ai", "next")])
        execution = await start_at(engine, flow, "ai")
        assert execution.status == ExecutionStatus.WAITING
        assert execution.current_node_id == "next"
        assert execution.context_data.metadata["aiClassification"]["result"] is None

    @pytest.mark.asyncio
    async def test_http_success_saves_response(self, engine, http_responder):
        http_responder["json"] = {"status": "vip"}
        flow = build_flow("crm", [
            ("http", "HTTP", {"url": "https://crm.example.com", "saveResponseAs": "crm"}),
            ("cond", "CONDITION", {"condition": {"variable": "crm.status", "operator": "EQUALS", "value": "vip"}}),
            ("vip", "ACTION", {}),
        ], [("http", "cond"), ("cond", "vip", "true")])
        execution = await start_at(engine, flow, "http")
        assert execution.current_node_id == "vip"
        assert execution.context_data.variables["crm"] == {"status": "vip"}


# ══════════════════════════════════════════════════════════════
#  Branching
# ══════════════════════════════════════════════════════════════

class TestConditionBranching:
    @pytest.fixture
    def age_flow(self):
        return build_flow("age", [
            ("cond", "CONDITION", {"condition": {"variable": "age", "operator": "GREATER_THAN", "value": "18"}}),
            ("adult", "MESSAGE", {"text": "adulto"}),
            ("minor", "MESSAGE", {"text": "menor"}),
        ], [("cond", "adult", "true"), ("cond", "minor", "false")])

    @pytest.mark.asyncio
    async def test_true_edge(self, engine, queue, age_flow):
        execution = await start_at(engine, age_flow, "cond", variables={"age": "21"})
        assert execution.status == ExecutionStatus.COMPLETED
        assert texts(await drain_actions(queue)) == ["adulto"]

    @pytest.mark.asyncio
    async def test_non_numeric_takes_false_edge(self, engine, queue, age_flow):
        await start_at(engine, age_flow, "cond", variables={"age": "abc"})
        assert texts(await drain_actions(queue)) == ["menor"]

    @pytest.mark.asyncio
    async def test_ai_route_to_labelled_edge(self, engine, queue, ai_client):
        ai_client.complete.return_value = "Ótimo, excelente!"
        flow = build_flow("ai", [
            ("ai", "AI", {
                "userPrompt": "x",
                "sendResponse": False,
                "classificationMode": "SENTIMENT",
                "classificationConfig": {"positiveKeywords": ["ótimo", "excelente"], "negativeKeywords": ["ruim"]},
            }),
            ("happy", "MESSAGE", {"text": "feliz"}),
            ("sad", "MESSAGE", {"text": "triste"}),
        ], [("ai", "happy", "positive"), ("ai", "sad", "negative")])
        execution = await start_at(engine, flow, "ai")
        assert execution.context_data.metadata["aiClassification"]["result"] == "positive"
        assert texts(await drain_actions(queue)) == ["feliz"]

    @pytest.mark.asyncio
    async def test_unmatched_sentiment_takes_default_edge(self, engine, queue, ai_client):
        ai_client.complete.return_value = "ok"
        flow = build_flow("ai", [
            ("ai", "AI", {
                "userPrompt": "x",
                "sendResponse": False,
                "classificationMode": "SENTIMENT",
                "classificationConfig": {"positiveKeywords": ["ótimo"], "negativeKeywords": ["ruim"]},
            }),
            ("happy", "MESSAGE", {"text": "feliz"}),
            ("sad", "MESSAGE", {"text": "triste"}),
        ], [("ai", "happy", "positive"), ("ai", "sad", "negative")])
        execution = await start_at(engine, flow, "ai")
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.context_data.metadata["aiClassification"]["result"] == "neutral"
        assert "errors" not in execution.context_data.metadata
        assert texts(await drain_actions(queue)) == ["feliz"]

    @pytest.mark.asyncio
    async def test_keyword_route_without_edge_abandons(self, engine, ai_client):
        ai_client.complete.return_value = "falar com o financeiro"
        flow = build_flow("ai", [
            ("ai", "AI", {
                "userPrompt": "x",
                "classificationMode": "KEYWORDS",
                "classificationConfig": {"keywordRoutes": [{"keywords": ["financeiro"], "routeLabel": "billing"}]},
            }),
            ("support", "END", {}),
        ], [("ai", "support", "support")])
        execution = await start_at(engine, flow, "ai")
        assert execution.status == ExecutionStatus.ABANDONED
        assert "billing" in execution.context_data.metadata["errors"][-1]["error"]

    @pytest.mark.asyncio
    async def test_ai_failure_takes_default_edge(self, engine, ai_client):
        ai_client.complete.side_effect = AIProviderError("timeout", "OPENAI")
        flow = build_flow("ai", [
            ("ai", "AI", {"userPrompt": "x", "classificationMode": "KEYWORDS"}),
            ("next", "ACTION", {}),
        ], [("ai", "next")])
        execution = await start_at(engine, flow, "ai")
        assert execution.status == ExecutionStatus.WAITING
        assert execution.current_node_id == "next"
        assert execution.context_data.metadata["errors"][0]["nodeType"] == "AI"


# ══════════════════════════════════════════════════════════════
#  Graph errors
# ══════════════════════════════════════════════════════════════

class TestGraphErrors:
    @pytest.mark.asyncio
    async def test_dangling_edge_abandons(self, engine, queue):
        flow = build_flow("bad", [("msg", "MESSAGE", {"text": "x"})], [("msg", "ghost")])
        execution = await start_at(engine, flow, "msg")
        assert execution.status == ExecutionStatus.ABANDONED
        assert execution.completed_at is not None
        assert execution.context_data.metadata["errors"][0]["nodeId"] == "msg"
        assert await drain_actions(queue) == []

    @pytest.mark.asyncio
    async def test_unknown_node_type_abandons(self, engine):
        flow = build_flow("bad", [("n", "SPREADSHEET", {})], [])
        execution = await start_at(engine, flow, "n")
        assert execution.status == ExecutionStatus.ABANDONED
        assert execution.context_data.metadata["errors"][0]["nodeType"] == "SPREADSHEET"

    @pytest.mark.asyncio
    async def test_missing_current_node_abandons(self, engine):
        flow = build_flow("bad", [("a", "END", {})], [])
        execution = await start_at(engine, flow, "nowhere")
        assert execution.status == ExecutionStatus.ABANDONED

    @pytest.mark.asyncio
    async def test_step_budget(self, engine):
        engine.runner.max_steps = 5
        flow = build_flow("loop", [
            ("a", "MESSAGE", {"text": "a"}), ("b", "MESSAGE", {"text": "b"}),
        ], [("a", "b"), ("b", "a")])
        execution = await start_at(engine, flow, "a")
        assert execution.status == ExecutionStatus.ABANDONED
        assert "Step budget" in execution.context_data.metadata["errors"][-1]["error"]

    @pytest.mark.asyncio
    async def test_unexpected_executor_error_abandons(self, engine, store):
        flow = build_flow("form", [
            ("start", "START", {"triggerType": "KEYWORD_EXACT", "keyword": "oi"}),
            ("ask", "ACTION", {"expectedInput": {"type": "TEXT", "validation": {"minLength": "x"}}}),
            ("end", "END", {}),
        ], [("start", "ask"), ("ask", "end")])
        await engine.import_flow(flow)

        waiting = await engine.handle(MessageReceived(contact_id="c1", text="oi"))
        assert waiting.status == ExecutionStatus.WAITING

        result = await engine.handle(MessageReceived(contact_id="c1", text="hello"))

        assert result.status == ExecutionStatus.ABANDONED
        [error] = result.context_data.metadata["errors"]
        assert error["nodeId"] == "ask"
        assert error["error"].startswith("ValueError")
        assert await store.find_active_execution("c1") is None

    @pytest.mark.asyncio
    async def test_recover_survives_broken_node(self, engine, store):
        flow = build_flow("form", [
            ("start", "START", {"triggerType": "KEYWORD_EXACT", "keyword": "oi"}),
            ("ai", "AI", {
                "userPrompt": "x",
                "classificationMode": "KEYWORDS",
                "classificationConfig": {"keywordRoutes": ["suporte", "financeiro"]},
            }),
            ("end", "END", {}),
        ], [("start", "ai"), ("ai", "end")])
        await engine.import_flow(flow)
        await store.create_execution(FlowExecution(flow_id="form", contact_id="c1", current_node_id="ai"))

        assert await engine.recover() == 1
        [execution] = await store.list_executions(contact_id="c1")
        assert execution.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_missing_flow_abandons(self, engine, store):
        execution = await store.create_execution(FlowExecution(flow_id="gone", contact_id="c1", current_node_id="x"))
        result = await engine.runner.advance(execution)
        assert result.status == ExecutionStatus.ABANDONED


# ══════════════════════════════════════════════════════════════
#  Timers and timeouts
# ══════════════════════════════════════════════════════════════

class TestTimeouts:
    @pytest.fixture
    def survey_flow(self):
        return build_flow("survey", [
            ("start", "START", {"triggerType": "KEYWORD_EXACT", "keyword": "pesquisa"}),
            ("ask", "ACTION", {"actionType": "WAIT_RESPONSE", "timeout": 60, "saveResponseAs": "nota"}),
            ("thanks", "END", {"message": "Obrigado!"}),
            ("late", "END", {"message": "Tempo esgotado"}),
        ], [("start", "ask"), ("ask", "late", "timeout"), ("ask", "thanks")])

    @pytest.mark.asyncio
    async def test_suspend_schedules_timeout(self, engine, queue, survey_flow):
        await engine.import_flow(survey_flow)
        execution = await engine.handle(MessageReceived(contact_id="c1", text="pesquisa"))

        pending = execution.context_data.metadata["pendingTimer"]
        [job] = queue.delayed
        assert pending["jobId"] == job.job_id
        assert pending["nodeId"] == "ask"
        assert pending["kind"] == "timeout"
        assert job.target_queue == Queues.TIMERS

    @pytest.mark.asyncio
    async def test_timeout_takes_timeout_edge(self, engine, queue, settings, survey_flow):
        await engine.import_flow(survey_flow)
        execution = await engine.handle(MessageReceived(contact_id="c1", text="pesquisa"))

        await queue.promote_delayed(now=queue.delayed[0].scheduled_ts + 1)
        job = await queue.get_nowait(Queues.TIMERS)
        await TimerConsumer(engine, queue, settings).handle_job(job)

        done = await engine.get_execution(execution.id)
        assert done.status == ExecutionStatus.COMPLETED
        assert "nota" not in done.context_data.variables
        assert "pendingTimer" not in done.context_data.metadata
        assert done.context_data.metadata["timeouts"][0]["nodeId"] == "ask"
        assert texts(await drain_actions(queue)) == ["Tempo esgotado"]

    @pytest.mark.asyncio
    async def test_reply_cancels_timeout(self, engine, queue, survey_flow):
        await engine.import_flow(survey_flow)
        await engine.handle(MessageReceived(contact_id="c1", text="pesquisa"))

        done = await engine.handle(MessageReceived(contact_id="c1", text="10"))

        assert done.status == ExecutionStatus.COMPLETED
        assert done.context_data.variables["nota"] == "10"
        assert queue.delayed == []
        assert texts(await drain_actions(queue)) == ["Obrigado!"]

    @pytest.mark.asyncio
    async def test_stale_timer_dropped(self, engine, survey_flow):
        await engine.import_flow(survey_flow)
        execution = await engine.handle(MessageReceived(contact_id="c1", text="pesquisa"))

        assert await engine.handle(TimerFired(execution_id=execution.id, job_id="job_other")) is None
        assert await engine.handle(TimerFired(execution_id=execution.id, node_id="thanks")) is None
        assert await engine.handle(TimerFired(execution_id="missing")) is None
        assert (await engine.get_execution(execution.id)).status == ExecutionStatus.WAITING

    @pytest.mark.asyncio
    async def test_forced_timer_without_job_id(self, engine, survey_flow):
        await engine.import_flow(survey_flow)
        execution = await engine.handle(MessageReceived(contact_id="c1", text="pesquisa"))
        done = await engine.handle(TimerFired(execution_id=execution.id))
        assert done.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_timer_after_completion_dropped(self, engine, queue, survey_flow):
        await engine.import_flow(survey_flow)
        execution = await engine.handle(MessageReceived(contact_id="c1", text="pesquisa"))
        job_id = execution.context_data.metadata["pendingTimer"]["jobId"]
        await engine.handle(MessageReceived(contact_id="c1", text="9"))
        assert await engine.handle(TimerFired(execution_id=execution.id, node_id="ask", job_id=job_id)) is None


class TestTimerNode:
    @pytest.fixture
    def drip_flow(self):
        return build_flow("drip", [
            ("start", "START", {"triggerType": "KEYWORD_EXACT", "keyword": "quero"}),
            ("wait", "TIMER", {"delayMinutes": 5}),
            ("follow", "MESSAGE", {"text": "Ainda por aí?"}),
        ], [("start", "wait"), ("wait", "follow")])

    @pytest.mark.asyncio
    async def test_timer_waits_then_continues(self, engine, queue, drip_flow):
        await engine.import_flow(drip_flow)
        execution = await engine.handle(MessageReceived(contact_id="c1", text="quero"))
        assert execution.status == ExecutionStatus.WAITING
        assert execution.current_node_id == "wait"

        during = await engine.handle(MessageReceived(contact_id="c1", text="alô?"))
        assert during.status == ExecutionStatus.WAITING
        assert [r.response for r in during.context_data.user_responses] == ["quero"]
        assert len(queue.delayed) == 1

        job_id = during.context_data.metadata["pendingTimer"]["jobId"]
        done = await engine.handle(TimerFired(execution_id=execution.id, node_id="wait", job_id=job_id))
        assert done.status == ExecutionStatus.COMPLETED
        assert [n.node_id for n in done.context_data.executed_nodes] == ["start", "wait", "follow"]
        assert texts(await drain_actions(queue)) == ["Ainda por aí?"]


class TestExternalCancellation:
    @pytest.mark.asyncio
    async def test_cancel_while_waiting(self, engine, queue, greeting_flow):
        await engine.import_flow(greeting_flow)
        execution = await engine.handle(MessageReceived(contact_id="c1", text="oi"))

        cancelled = await engine.cancel(execution.id, reason="operator request")

        assert cancelled.status == ExecutionStatus.ABANDONED
        assert cancelled.context_data.metadata["cancelReason"] == "operator request"
        # the next message no longer resumes it
        assert await engine.handle(MessageReceived(contact_id="c1", text="teste")) is None

    @pytest.mark.asyncio
    async def test_cancel_removes_pending_timer(self, engine, queue):
        flow = build_flow("t", [
            ("start", "START", {"triggerType": "ANY_RESPONSE"}),
            ("wait", "TIMER", {"delaySeconds": 30}),
        ], [("start", "wait")])
        await engine.import_flow(flow)
        execution = await engine.handle(MessageReceived(contact_id="c1", text="x"))
        assert len(queue.delayed) == 1

        cancelled = await engine.cancel(execution.id)
        assert queue.delayed == []
        assert "pendingTimer" not in cancelled.context_data.metadata

    @pytest.mark.asyncio
    async def test_cancel_terminal_is_noop(self, engine, store):
        execution = await store.create_execution(FlowExecution(
            flow_id="f", contact_id="c1", current_node_id="a", status=ExecutionStatus.COMPLETED,
        ))
        result = await engine.cancel(execution.id)
        assert result.status == ExecutionStatus.COMPLETED
        assert "cancelReason" not in result.context_data.metadata
