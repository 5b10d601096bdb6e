"""
Built-in node handlers: start, message, quickReply, input, condition, apiCall,
handoff.

Deliveries and integration calls go through tenacity retry loops bounded by
the delivery / integration settings. Handlers mutate `session.variables` on
the coordinator's working copy only, and an apiCall merges its response only
after a confirmed success.
"""
from __future__ import annotations

import asyncio
import json
import re
import structlog
from typing import Any, Callable, Optional

from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception,
    stop_after_attempt, wait_exponential,
)

from backend.connector import IntegrationClient
from channels.base import MessageDeliverer
from config.settings import DeliveryConfig, IntegrationConfig, get_settings
from core.errors import (
    DeliveryError, IntegrationError, InvalidConditionError,
    NoOutgoingEdgeError, TransientError, UnmatchedReplyError,
)
from handlers.base import (
    Advance, Complete, Fail, HandlerRegistry, HandlerResult, NodeHandler, Suspend,
)
from models.schemas import InboundEvent, Node, NodeType, Session
from utils.conditions import evaluate_condition, parse_condition

logger = structlog.get_logger()

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")


def interpolate(template: str, variables: dict[str, Any]) -> str:
    """Replace {{var}} placeholders with session variables (missing → "")."""
    def replacer(match):
        value = variables.get(match.group(1))
        return "" if value is None else str(value)
    return _PLACEHOLDER.sub(replacer, template or "")


def flatten_response(namespace: str, response: Any) -> dict[str, Any]:
    """
    Flatten a JSON response into scalar session variables under a namespace.
    {"user": {"name": "A"}} with namespace "crm" → {"crm.user.name": "A"}.
    Lists are kept as JSON text.
    """
    flat: dict[str, Any] = {}

    def walk(prefix: str, value: Any):
        if isinstance(value, dict):
            if not value:
                flat[prefix] = "{}"
            for key in sorted(value):
                walk(f"{prefix}.{key}", value[key])
        elif isinstance(value, (list, tuple)):
            flat[prefix] = json.dumps(value, sort_keys=True, default=str)
        elif value is None or isinstance(value, (str, int, float, bool)):
            flat[prefix] = value
        else:
            flat[prefix] = str(value)

    walk(namespace, response)
    return flat


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, TransientError) and exc.retryable


def _retry_logger(event: str, node: Node, session: Session) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState):
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(event,
                       session_id=session.id,
                       node_id=node.id,
                       attempt=retry_state.attempt_number,
                       error=str(exc))
    return before_sleep


def _buttons(node: Node) -> list[dict[str, Any]]:
    buttons = []
    for idx, btn in enumerate(node.data.get("buttons") or []):
        if isinstance(btn, str):
            btn = {"id": btn, "title": btn}
        buttons.append({
            "id": str(btn.get("id") or f"btn-{idx}"),
            "title": str(btn.get("title") or btn.get("id") or ""),
        })
    return buttons


# ──────────────────────────────────────────────────────────────
#  Delivery mixin — shared by message / quickReply / input / handoff
# ──────────────────────────────────────────────────────────────

class _DeliveringHandler(NodeHandler):

    def __init__(self, deliverer: MessageDeliverer, config: DeliveryConfig = None):
        self.deliverer = deliverer
        self.config = config or get_settings().delivery

    async def _deliver(self, node: Node, session: Session, content: str,
                       buttons: list[dict[str, Any]] = None) -> Optional[Fail]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(self.config.max_attempts, 1)),
            wait=wait_exponential(multiplier=self.config.backoff_base, max=self.config.backoff_max),
            retry=retry_if_exception(_is_retryable),
            before_sleep=_retry_logger("delivery_retry", node, session),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self.deliverer.deliver(
                        session.conversation_id, content, buttons,
                        metadata={"node_id": node.id, "flow_id": session.flow_id,
                                  "session_id": session.id},
                    )
        except DeliveryError as e:
            e.node_id = node.id
            return Fail(e)
        return None


# ──────────────────────────────────────────────────────────────
#  start
# ──────────────────────────────────────────────────────────────

class StartHandler(NodeHandler):
    node_type = NodeType.START.value

    async def handle(self, node, session, graph):
        if not graph.outgoing(node.id):
            return Fail(NoOutgoingEdgeError(
                "Flow ended - no connected nodes after start", node_id=node.id,
            ))
        return Advance()


# ──────────────────────────────────────────────────────────────
#  message
# ──────────────────────────────────────────────────────────────

class MessageHandler(_DeliveringHandler):
    node_type = NodeType.MESSAGE.value

    async def handle(self, node, session, graph):
        text = node.data.get("message") or node.data.get("content") or ""
        content = interpolate(text, session.variables)
        if not content:
            logger.warning("empty_message_skipped", session_id=session.id, node_id=node.id)
            return Advance()
        failure = await self._deliver(node, session, content)
        return failure or Advance()


# ──────────────────────────────────────────────────────────────
#  quickReply
# ──────────────────────────────────────────────────────────────

class QuickReplyHandler(_DeliveringHandler):
    node_type = NodeType.QUICK_REPLY.value

    def __init__(self, deliverer: MessageDeliverer, config: DeliveryConfig = None,
                 unmatched_policy: str = "complete"):
        super().__init__(deliverer, config)
        self.unmatched_policy = unmatched_policy

    async def handle(self, node, session, graph):
        body = interpolate(node.data.get("body") or "Please select an option:", session.variables)
        failure = await self._deliver(node, session, body, _buttons(node))
        return failure or Suspend("awaiting_choice")

    async def resume(self, node, session, graph, event: InboundEvent):
        choice = self.match_choice(node, event)
        if choice is None or graph.next_edge(node.id, choice) is None:
            logger.info("quick_reply_unmatched",
                        session_id=session.id,
                        node_id=node.id,
                        selected_handle=event.selected_handle,
                        policy=self.unmatched_policy)
            if self.unmatched_policy == "fail":
                return Fail(UnmatchedReplyError(
                    f"reply does not match any branch of '{node.id}'", node_id=node.id,
                ))
            return Complete("unmatched_reply")

        session.variables[f"{node.id}.choice"] = choice
        return Advance(choice)

    @staticmethod
    def match_choice(node: Node, event: InboundEvent) -> Optional[str]:
        """Button id from selected_handle, else from the text matched against ids and titles."""
        buttons = _buttons(node)
        if event.selected_handle:
            for btn in buttons:
                if btn["id"] == event.selected_handle:
                    return btn["id"]
            return None
        text = (event.text or "").strip().lower()
        if not text:
            return None
        for btn in buttons:
            if text == btn["id"].lower() or text == btn["title"].lower():
                return btn["id"]
        return None


# ──────────────────────────────────────────────────────────────
#  condition
# ──────────────────────────────────────────────────────────────

class ConditionHandler(NodeHandler):
    node_type = NodeType.CONDITION.value

    async def handle(self, node, session, graph):
        try:
            condition = parse_condition(node.data.get("condition", ""))
        except InvalidConditionError as e:
            e.node_id = node.id
            return Fail(e)
        result = evaluate_condition(condition, session.variables, graph.flow.variables)
        logger.debug("condition_evaluated",
                     session_id=session.id,
                     node_id=node.id,
                     field=condition.field,
                     operator=condition.operator,
                     result=result)
        return Advance("true" if result else "false")


# ──────────────────────────────────────────────────────────────
#  apiCall
# ──────────────────────────────────────────────────────────────

class ApiCallHandler(NodeHandler):
    node_type = NodeType.API_CALL.value

    def __init__(self, client: IntegrationClient, config: IntegrationConfig = None):
        self.client = client
        self.config = config or get_settings().integration

    async def handle(self, node, session, graph):
        endpoint = node.data.get("url") or node.data.get("endpoint") or ""
        if not endpoint:
            return Fail(IntegrationError(
                f"apiCall node '{node.id}' has no url", node_id=node.id, retryable=False,
            ))
        method = str(node.data.get("method") or "GET").upper()
        timeout = float(node.data.get("timeout") or self.config.timeout_seconds)
        namespace = node.data.get("saveAs") or node.id
        payload = self._build_payload(node, session)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(self.config.max_attempts, 1)),
            wait=wait_exponential(multiplier=self.config.backoff_base, max=self.config.backoff_max),
            retry=retry_if_exception(_is_retryable),
            before_sleep=_retry_logger("integration_retry", node, session),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._call_once(endpoint, payload, timeout, method)
        except IntegrationError as e:
            e.node_id = node.id
            return Fail(e)

        session.variables.update(flatten_response(namespace, response))
        logger.info("integration_merged",
                    session_id=session.id,
                    node_id=node.id,
                    namespace=namespace)
        return Advance()

    async def _call_once(self, endpoint: str, payload: dict, timeout: float, method: str) -> Any:
        try:
            return await asyncio.wait_for(
                self.client.call(endpoint, payload, timeout=timeout, method=method),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise IntegrationError(f"timeout after {timeout}s calling {endpoint}", retryable=True)

    @staticmethod
    def _build_payload(node: Node, session: Session) -> dict[str, Any]:
        body = node.data.get("body")
        if isinstance(body, dict):
            return {
                k: interpolate(v, session.variables) if isinstance(v, str) else v
                for k, v in body.items()
            }
        return {
            "conversation_id": session.conversation_id,
            "session_id": session.id,
            "variables": dict(session.variables),
        }


# ──────────────────────────────────────────────────────────────
#  input
# ──────────────────────────────────────────────────────────────

class InputHandler(_DeliveringHandler):
    """Asks a free-text question and stores the reply under data.variable."""
    node_type = NodeType.INPUT.value

    async def handle(self, node, session, graph):
        prompt = interpolate(node.data.get("message") or "", session.variables)
        if prompt:
            failure = await self._deliver(node, session, prompt)
            if failure:
                return failure
        return Suspend("awaiting_input")

    async def resume(self, node, session, graph, event: InboundEvent):
        variable = node.data.get("variable") or node.data.get("saveAs") or f"{node.id}.input"
        reply = event.text if event.text is not None else event.selected_handle
        session.variables[variable] = reply or ""
        logger.debug("input_received", session_id=session.id, node_id=node.id, variable=variable)
        return Advance()


# ──────────────────────────────────────────────────────────────
#  handoff
# ──────────────────────────────────────────────────────────────

class HandoffHandler(_DeliveringHandler):
    """Hands the conversation to a human agent and ends bot control."""
    node_type = NodeType.HANDOFF.value

    async def handle(self, node, session, graph):
        message = interpolate(node.data.get("message") or "", session.variables)
        if message:
            failure = await self._deliver(node, session, message)
            if failure:
                return failure
        session.variables["handoff.requested"] = True
        session.variables["handoff.assign_to"] = node.data.get("assignTo") or "available"
        if node.data.get("agentId"):
            session.variables["handoff.agent_id"] = str(node.data["agentId"])
        if node.data.get("queueName"):
            session.variables["handoff.queue"] = str(node.data["queueName"])
        logger.info("handoff_requested",
                    session_id=session.id,
                    node_id=node.id,
                    assign_to=session.variables["handoff.assign_to"])
        return Advance()


def create_default_registry(
    deliverer: MessageDeliverer,
    integration: IntegrationClient,
    delivery_config: DeliveryConfig = None,
    integration_config: IntegrationConfig = None,
    unmatched_policy: str = None,
) -> HandlerRegistry:
    """Registry with every built-in node type."""
    settings = get_settings()
    delivery_config = delivery_config or settings.delivery
    integration_config = integration_config or settings.integration
    unmatched_policy = unmatched_policy or settings.engine.unmatched_reply_policy

    registry = HandlerRegistry()
    registry.register(StartHandler())
    registry.register(MessageHandler(deliverer, delivery_config))
    registry.register(QuickReplyHandler(deliverer, delivery_config, unmatched_policy))
    registry.register(InputHandler(deliverer, delivery_config))
    registry.register(ConditionHandler())
    registry.register(ApiCallHandler(integration, integration_config))
    registry.register(HandoffHandler(deliverer, delivery_config))
    return registry
