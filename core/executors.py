"""
Node Executors — one handler per node type.

Each handler reads the execution context and the node config and returns a
NodeResult: a context delta, outbound actions to enqueue, and a directive
(advance / suspend / complete). Handlers never write execution state; the
ExecutionRunner applies the result.

  START      records the triggering message, advances
  MESSAGE    interpolates `text`, enqueues a MESSAGE action
  MEDIA      enqueues a MEDIA action (invalid URL → error entry, advance)
  ACTION     suspends until input (WAIT_RESPONSE / WAIT_INPUT) or a timer (WAIT_TIME)
  TIMER      suspends until its delay elapses
  HTTP       generic request; failure → NodeExecutionError (recoverable)
  AI         completion + optional classification route; failure → NodeExecutionError
  CONDITION  evaluates {variable, operator, value} → true / false branch
  END        optional final message, completes
"""
from __future__ import annotations

import json
import re
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from config.settings import Settings
from core.classification import Classifier
from core.errors import GraphError, NodeExecutionError
from integrations.ai_provider import AIClient, AIProviderError
from integrations.http_client import HttpCallError, HttpClient
from models.schemas import (
    ActionKind, ClassificationMode, FlowExecution, MediaType, Node, NodeType,
    ROUTE_TIMEOUT, WaitType,
)
from utils.conditions import evaluate_condition
from utils.interpolation import get_variable, has_variable, interpolate, stringify

logger = structlog.get_logger()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _number(value: Any, field_name: str, node_id: str) -> float:
    if value in (None, ""):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise GraphError(f"Node config '{field_name}' is not a number: {value!r}", node_id) from e


# ──────────────────────────────────────────────────────────────
#  Results
# ──────────────────────────────────────────────────────────────

class Directive(str, Enum):
    ADVANCE = "advance"
    SUSPEND = "suspend"
    COMPLETE = "complete"


@dataclass
class TimerRequest:
    """Ask the runner to schedule a TimerFired for this node."""
    delay_seconds: float
    kind: str = "timer"                       # timer | timeout


@dataclass
class NodeResult:
    directive: Directive = Directive.ADVANCE
    variables: dict[str, Any] = field(default_factory=dict)
    user_response: Optional[str] = None
    metadata_entries: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    metadata_updates: dict[str, Any] = field(default_factory=dict)
    actions: list[tuple[ActionKind, dict[str, Any]]] = field(default_factory=list)
    route: Optional[str] = None               # route label for edge selection
    route_required: bool = False              # no keyed or unkeyed edge → graph error
    branch: Optional[bool] = None             # CONDITION outcome
    timer: Optional[TimerRequest] = None


@dataclass
class NodeContext:
    execution: FlowExecution
    node: Node
    trigger_input: Optional[str] = None
    resumed: bool = False                     # node was WAITING and is being woken up
    timer_fired: bool = False                 # wake-up came from a timer, not a message

    @property
    def variables(self) -> dict[str, Any]:
        return self.execution.context_data.variables

    @property
    def config(self) -> dict[str, Any]:
        return self.node.config or {}

    def error_entry(self, message: str) -> dict[str, Any]:
        return {
            "nodeId": self.node.id,
            "nodeType": self.node.type,
            "timestamp": _now_iso(),
            "error": message,
        }


# ──────────────────────────────────────────────────────────────
#  Input validation for ACTION nodes
# ──────────────────────────────────────────────────────────────

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_CHARS = re.compile(r"[\s()+\-.]")


def validate_input(text: str, expected: Optional[dict[str, Any]]) -> Optional[str]:
    """Return an error message if `text` does not satisfy `expectedInput`, else None."""
    if not expected:
        return None

    input_type = str(expected.get("type", "ANY")).upper()
    value = text.strip()

    if input_type == "TEXT" and not value:
        return "Expected a non-empty text"
    if input_type == "NUMBER":
        try:
            float(value.replace(",", "."))
        except ValueError:
            return "Expected a number"
    if input_type == "EMAIL" and not _EMAIL.match(value):
        return "Expected an email address"
    if input_type == "PHONE":
        digits = _PHONE_CHARS.sub("", value)
        if not digits.isdigit() or not 8 <= len(digits) <= 15:
            return "Expected a phone number"

    rules = expected.get("validation") or {}
    min_length = rules.get("minLength")
    max_length = rules.get("maxLength")
    if min_length is not None and len(value) < int(min_length):
        return f"Expected at least {min_length} characters"
    if max_length is not None and len(value) > int(max_length):
        return f"Expected at most {max_length} characters"
    pattern = rules.get("pattern")
    if pattern:
        try:
            if not re.search(pattern, value):
                return "Input does not match the expected format"
        except re.error:
            logger.warning("invalid_validation_pattern", pattern=pattern)
    return None


# ──────────────────────────────────────────────────────────────
#  Executors
# ──────────────────────────────────────────────────────────────

class NodeExecutors:
    """Dispatch point: one coroutine per NodeType, selected by `run()`."""

    def __init__(
        self,
        http_client: HttpClient,
        ai_client: AIClient,
        classifier: Classifier,
        settings: Settings,
    ):
        self.http = http_client
        self.ai = ai_client
        self.classifier = classifier
        self.settings = settings
        self._handlers: dict[str, Callable[[NodeContext], Awaitable[NodeResult]]] = {
            NodeType.START.value: self.start,
            NodeType.MESSAGE.value: self.message,
            NodeType.MEDIA.value: self.media,
            NodeType.ACTION.value: self.action,
            NodeType.TIMER.value: self.timer,
            NodeType.HTTP.value: self.http_request,
            NodeType.AI.value: self.ai_completion,
            NodeType.CONDITION.value: self.condition,
            NodeType.END.value: self.end,
        }

    async def run(self, ctx: NodeContext) -> NodeResult:
        handler = self._handlers.get(str(ctx.node.type).upper())
        if handler is None:
            raise GraphError(f"Unknown node type: {ctx.node.type}", ctx.node.id)
        return await handler(ctx)

    # ── Pass-through nodes ────────────────────────────────

    async def start(self, ctx: NodeContext) -> NodeResult:
        return NodeResult(user_response=ctx.trigger_input)

    async def message(self, ctx: NodeContext) -> NodeResult:
        if "text" not in ctx.config:
            raise GraphError("MESSAGE node requires 'text'", ctx.node.id)
        text = interpolate(str(ctx.config.get("text") or ""), ctx.variables)
        if not text.strip():
            logger.warning("empty_message_skipped", node_id=ctx.node.id)
            return NodeResult()
        return NodeResult(actions=[(ActionKind.MESSAGE, {"text": text})])

    async def media(self, ctx: NodeContext) -> NodeResult:
        cfg = ctx.config
        url = interpolate(str(cfg.get("url") or cfg.get("mediaUrl") or "").strip(), ctx.variables)
        if url.startswith("/") and not url.startswith("//"):
            url = self.settings.public_base_url.rstrip("/") + url

        if not url.lower().startswith(("http://", "https://")):
            logger.warning("invalid_media_url", node_id=ctx.node.id, url=url)
            return NodeResult(metadata_entries=[
                ("errors", ctx.error_entry(f"Invalid media URL: {url!r}")),
            ])

        media_type = str(cfg.get("mediaType") or MediaType.IMAGE.value).upper()
        if media_type not in MediaType.__members__:
            media_type = MediaType.IMAGE.value

        payload: dict[str, Any] = {"mediaType": media_type, "url": url}
        if cfg.get("caption"):
            payload["caption"] = interpolate(str(cfg["caption"]), ctx.variables)
        if cfg.get("fileName"):
            payload["fileName"] = interpolate(str(cfg["fileName"]), ctx.variables)
        return NodeResult(actions=[(ActionKind.MEDIA, payload)])

    async def condition(self, ctx: NodeContext) -> NodeResult:
        condition = ctx.config.get("condition") or ctx.config
        result = evaluate_condition(condition, ctx.variables)
        logger.debug("condition_evaluated", node_id=ctx.node.id, result=result)
        return NodeResult(branch=result)

    async def end(self, ctx: NodeContext) -> NodeResult:
        result = NodeResult(directive=Directive.COMPLETE)
        message = ctx.config.get("message")
        if message:
            text = interpolate(str(message), ctx.variables)
            if text.strip():
                result.actions.append((ActionKind.MESSAGE, {"text": text}))
        return result

    # ── Suspending nodes ──────────────────────────────────

    async def action(self, ctx: NodeContext) -> NodeResult:
        cfg = ctx.config
        action_type = str(cfg.get("actionType") or WaitType.WAIT_RESPONSE.value).upper()
        timeout = _number(cfg.get("timeout"), "timeout", ctx.node.id)

        if not ctx.resumed:
            if action_type == WaitType.WAIT_TIME.value:
                if timeout <= 0:
                    return NodeResult()
                return NodeResult(directive=Directive.SUSPEND, timer=TimerRequest(timeout, "timer"))
            timer = TimerRequest(timeout, "timeout") if timeout > 0 else None
            return NodeResult(directive=Directive.SUSPEND, timer=timer)

        if ctx.timer_fired:
            if action_type == WaitType.WAIT_TIME.value:
                return NodeResult()
            logger.info("action_timed_out", node_id=ctx.node.id, execution_id=ctx.execution.id)
            return NodeResult(
                route=ROUTE_TIMEOUT,
                metadata_entries=[("timeouts", {"nodeId": ctx.node.id, "timestamp": _now_iso()})],
            )

        if action_type == WaitType.WAIT_TIME.value:
            return NodeResult(directive=Directive.SUSPEND)

        text = ctx.trigger_input or ""
        error = validate_input(text, cfg.get("expectedInput"))
        if error:
            logger.info("input_validation_failed", node_id=ctx.node.id, error=error)
            return NodeResult(
                directive=Directive.SUSPEND,
                metadata_entries=[("validationErrors", {
                    "nodeId": ctx.node.id,
                    "input": text,
                    "error": error,
                    "timestamp": _now_iso(),
                })],
            )

        result = NodeResult(user_response=text)
        save_as = cfg.get("saveResponseAs")
        if save_as:
            result.variables[save_as] = text
        return result

    async def timer(self, ctx: NodeContext) -> NodeResult:
        if ctx.resumed:
            if ctx.timer_fired:
                return NodeResult()
            # messages do not wake a pending timer
            return NodeResult(directive=Directive.SUSPEND)

        cfg = ctx.config
        delay = (
            _number(cfg.get("delaySeconds"), "delaySeconds", ctx.node.id)
            + _number(cfg.get("delayMinutes"), "delayMinutes", ctx.node.id) * 60
            + _number(cfg.get("delayHours"), "delayHours", ctx.node.id) * 3600
        )
        if delay <= 0:
            return NodeResult()
        return NodeResult(directive=Directive.SUSPEND, timer=TimerRequest(delay, "timer"))

    # ── External calls ────────────────────────────────────

    async def http_request(self, ctx: NodeContext) -> NodeResult:
        cfg = ctx.config
        if not cfg.get("url"):
            raise GraphError("HTTP node requires 'url'", ctx.node.id)

        body = cfg.get("body")
        if isinstance(body, str) and body.strip():
            try:
                body = json.loads(body)
            except ValueError:
                pass  # plain text body

        raw_headers = cfg.get("headers") or {}
        if not isinstance(raw_headers, dict):
            raise GraphError("HTTP node 'headers' must be an object", ctx.node.id)

        url = interpolate(str(cfg["url"]), ctx.variables)
        headers = {str(k): stringify(v) for k, v in interpolate(raw_headers, ctx.variables).items()}
        body = interpolate(body, ctx.variables)
        timeout = _number(cfg.get("timeout"), "timeout", ctx.node.id) or self.settings.engine.default_http_timeout
        retries = int(cfg.get("maxRetries", 3)) if cfg.get("retryOnFailure") else 0

        try:
            response = await self.http.request(
                method=str(cfg.get("method") or "GET"),
                url=url,
                headers=headers,
                body=body,
                timeout=timeout,
                retries=retries,
            )
        except HttpCallError as e:
            raise NodeExecutionError(str(e), ctx.node.id, ctx.node.type) from e

        result = NodeResult()
        if cfg.get("saveResponseAs"):
            result.variables[cfg["saveResponseAs"]] = response.body
        return result

    async def ai_completion(self, ctx: NodeContext) -> NodeResult:
        cfg = ctx.config
        if not cfg.get("userPrompt"):
            raise GraphError("AI node requires 'userPrompt'", ctx.node.id)

        provider = str(cfg.get("provider") or "OPENAI").upper()
        model = cfg.get("model") or ""
        user_prompt = interpolate(str(cfg["userPrompt"]), ctx.variables)
        system_prompt = interpolate(str(cfg.get("systemPrompt") or ""), ctx.variables) or None
        context_messages = [
            {"role": "user", "content": f"{name}: {stringify(get_variable(ctx.variables, name))}"}
            for name in cfg.get("contextVariables") or []
            if has_variable(ctx.variables, name) and get_variable(ctx.variables, name) is not None
        ]

        try:
            completion = await self.ai.complete(
                provider=provider,
                model=model,
                user_prompt=user_prompt,
                system_prompt=system_prompt,
                context_messages=context_messages,
                temperature=cfg.get("temperature"),
                max_tokens=cfg.get("maxTokens"),
            )
        except AIProviderError as e:
            raise NodeExecutionError(str(e), ctx.node.id, ctx.node.type) from e

        result = NodeResult()
        if cfg.get("saveResponseAs"):
            result.variables[cfg["saveResponseAs"]] = completion
        if cfg.get("sendResponse", True) and completion.strip():
            result.actions.append((ActionKind.MESSAGE, {"text": completion}))

        mode = str(cfg.get("classificationMode") or ClassificationMode.NONE.value).upper()
        if mode != ClassificationMode.NONE.value:
            responses = ctx.execution.context_data.user_responses
            label = await self.classifier.classify(
                mode,
                cfg.get("classificationConfig") or {},
                completion,
                last_user_response=responses[-1].response if responses else "",
                provider=provider,
                model=model,
            )
            result.metadata_updates["aiClassification"] = {
                "nodeId": ctx.node.id,
                "mode": mode,
                "result": label,
                "timestamp": _now_iso(),
            }
            if label:
                result.route = label
                # an unmatched sentiment falls through to the default edge
                result.route_required = mode in (ClassificationMode.KEYWORDS.value, ClassificationMode.CUSTOM.value)
            logger.info("ai_response_classified", node_id=ctx.node.id, mode=mode, result=label)
        return result
