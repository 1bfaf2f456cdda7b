"""
Agent Orchestration Service

Runs one conversational turn of an intelligent-agent node:

1. Route inference (lexical, optionally escalated to an LLM classifier)
2. Early exit with a canned redirect when the route demands a handoff
3. Prompt assembly: agent prompt, structured slot state, long-term memory
   and a rolling digest of older history
4. Tool-enabled generation (workspace capabilities, ``finish``, ``search_memory``)
5. Reply sanitization, bubble chunking and paced delivery
6. Background memory recording
"""
import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from app.core.exceptions import GenerationError, MemoryConfigurationError
from app.schemas.agent import AgentConversationState, AgentRoute, AgentRouteDecision
from app.schemas.memory import MemorySettings
from app.services import agent_guardrails_service as guardrails
from app.services.capability_execution_service import execute_capability
from app.services.flow_variables import get_path, render_value
from app.services.graph_execution_engine import normalize_node_type
from app.services.llm_tool_service import AgentTool, GenerationRequest
from app.services.memory.embedding_service import generate_embedding
from app.services.memory.memory_service import load_memory_context, record_memory, resolve_scope_key, truncate_text
from app.services.message_chunking_service import DEFAULT_BUBBLE_MAX_CHARS, DEFAULT_MAX_BUBBLES, split_into_bubbles

logger = logging.getLogger(__name__)

STATE_KEY = "_agent_state"
HISTORY_KEY = "_agent_history"
DIGEST_KEY = "_agent_digest"
TURNS_KEY = "_agent_turns"
PRIVATE_KEYS = (STATE_KEY, HISTORY_KEY, DIGEST_KEY, TURNS_KEY)

DEFAULT_INPUT_VARIABLE = "incoming_message"
DEFAULT_RESPONSE_VARIABLE = "agent_response"
DEFAULT_MAX_HISTORY_MESSAGES = 12
DEFAULT_MAX_CONVERSATION_TURNS = 20
DIGEST_MAX_CHARS = 1200
DIGEST_ENTRY_MAX_CHARS = 160

GENERATION_FAILURE_MESSAGE = "Sorry, I'm having trouble answering right now. Please try again in a moment."
DEFAULT_SYSTEM_PROMPT = "You are a helpful customer service assistant. Answer briefly and clearly."
ROUTE_INSTRUCTIONS = (
    "If the customer must be transferred, end your reply with one marker: "
    "[ROUTE: support], [ROUTE: billing] or [ROUTE: exit]. "
    "Call the `finish` tool when the conversation goal has been reached."
)
CLASSIFIER_PROMPT = (
    "Classify the customer's message into one route: support (technical problems), "
    "billing (invoices, payments), exit (wants to end the conversation), "
    "commercial (new plans, sales) or unknown. "
    'Answer only with JSON: {"route": "<route>", "confidence": <0..1>}'
)

_TOOL_NAME_INVALID = re.compile(r"[^a-zA-Z0-9_-]")


@dataclass
class AgentTurnResult:
    completed: bool
    reply: str
    route: AgentRoute = AgentRoute.UNKNOWN
    bubbles: List[str] = field(default_factory=list)
    tools_called: List[str] = field(default_factory=list)
    completion_reason: Optional[str] = None


@dataclass
class AgentMemory:
    store: Any
    config: MemorySettings
    agent_id: str
    scope_key: str


def _int_setting(data: dict, key: str, default: int) -> int:
    try:
        value = int(data.get(key) or default)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def memory_settings_from_node(node_data: dict, default_provider: str) -> MemorySettings:
    """Reads an ai-memory-config node; blank fields fall back to the defaults."""
    values = {
        key: value for key, value in (node_data or {}).items()
        if key in MemorySettings.model_fields and value not in (None, "")
    }
    provider = node_data.get("memory_provider") or values.get("provider") or default_provider
    values["provider"] = str(provider).strip().lower()
    return MemorySettings(**values)


def fold_history(history: List[dict], digest: str, max_messages: int):
    """Keeps the newest ``max_messages`` and folds the rest into the digest (tail kept)."""
    if len(history) <= max_messages:
        return history, digest
    overflow, kept = history[:-max_messages], history[-max_messages:]
    entries = [f"{m.get('role')}: {truncate_text(str(m.get('content') or ''), DIGEST_ENTRY_MAX_CHARS)}" for m in overflow]
    combined = "\n".join(part for part in [digest] + entries if part)
    return kept, combined[-DIGEST_MAX_CHARS:]


def tool_name_for(slug: str) -> str:
    name = _TOOL_NAME_INVALID.sub("_", slug or "capability")
    return name[:64] or "capability"


def _agent_slot(variables: dict, key: str) -> dict:
    slot = variables.get(key)
    if not isinstance(slot, dict):
        slot = variables[key] = {}
    return slot


def clear_agent_state(variables: dict, node_id: str) -> None:
    for key in PRIVATE_KEYS:
        slot = variables.get(key)
        if isinstance(slot, dict):
            slot.pop(node_id, None)
            if not slot:
                variables.pop(key, None)


class AgentOrchestrator:
    def __init__(self, runtime, llm_service, capability_service):
        self.runtime = runtime
        self.settings = runtime.settings
        self.llm_service = llm_service
        self.capability_service = capability_service

    # -- routing ----------------------------------------------------------------

    async def classify_route(self, text: str, model: str) -> Optional[AgentRouteDecision]:
        try:
            result = await self.llm_service.generate(GenerationRequest(
                model=model,
                system_prompt=CLASSIFIER_PROMPT,
                messages=[{"role": "user", "content": text}],
                temperature=0,
                json_output=True,
            ))
            payload = json.loads(result.text or "{}")
            route = AgentRoute(str(payload.get("route", "unknown")).strip().lower())
            confidence = max(0.0, min(1.0, float(payload.get("confidence", 0))))
        except (GenerationError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Intent classifier failed, keeping lexical route: %s", e)
            return None
        return AgentRouteDecision(
            route=route,
            confidence=confidence,
            should_exit_flow=guardrails.should_exit(route, confidence),
            source="classifier",
        )

    async def decide_route(self, text: str, data: dict, model: str) -> AgentRouteDecision:
        decision = guardrails.infer_route(text)
        if decision.confidence < self.settings.AGENT_CLASSIFIER_CONFIDENCE_FLOOR and data.get("intent_classification"):
            classified = await self.classify_route(text, model)
            if classified is not None:
                return classified
        return decision

    # -- memory -----------------------------------------------------------------

    def resolve_memory(self, ctx) -> Optional[AgentMemory]:
        config_node = next(
            (n for n in ctx.graph.wired_nodes(ctx.node_id, "memory")
             if normalize_node_type(n.get("type")) == "ai-memory-config"),
            None,
        )
        if config_node is None:
            return None
        try:
            config = memory_settings_from_node(config_node.get("data") or {}, self.settings.MEMORY_DEFAULT_PROVIDER)
            store = self.runtime.get_memory_store(config)
        except (MemoryConfigurationError, ValueError) as e:
            logger.error("Agent '%s' runs without memory: %s", ctx.node_id, e)
            return None
        return AgentMemory(
            store=store,
            config=config,
            agent_id=str(ctx.data.get("agent_id") or ctx.node_id),
            scope_key=resolve_scope_key(config, ctx.variables, ctx.session.session_id, ctx.workspace.id),
        )

    async def load_memory_summary(self, ctx, memory: AgentMemory, query: str) -> str:
        try:
            embedding = None
            if memory.config.embeddings_enabled:
                embedding = await generate_embedding(self.runtime, query, memory.config.embedding_model)
            context = await load_memory_context(
                memory.store, memory.config, ctx.workspace.id, memory.agent_id, memory.scope_key, query,
                query_embedding=embedding, similarity_threshold=self.settings.MEMORY_SIMILARITY_THRESHOLD,
            )
            return context.summary
        except Exception as e:
            logger.warning("Memory retrieval failed for agent '%s': %s", memory.agent_id, e)
            return ""

    # -- tools ------------------------------------------------------------------

    def _capability_tool(self, capability) -> AgentTool:
        async def handler(params: dict):
            return await execute_capability(capability, params)

        return AgentTool(
            name=tool_name_for(capability.slug),
            description=capability.description or capability.name or capability.slug,
            parameters=capability.input_schema or {"type": "object", "properties": {}},
            handler=handler,
        )

    def resolve_capabilities(self, ctx) -> list:
        wired = [n for n in ctx.graph.wired_nodes(ctx.node_id, "tools") if normalize_node_type(n.get("type")) == "capability"]
        if not wired:
            return self.capability_service.get_workspace_capabilities(ctx.db, ctx.workspace.id)
        capabilities = []
        for node in wired:
            data = node.get("data") or {}
            capability = None
            if data.get("capability_id"):
                capability = self.capability_service.get_capability(ctx.db, data["capability_id"])
            elif data.get("capability_slug"):
                capability = self.capability_service.get_capability_by_slug(ctx.db, data["capability_slug"], ctx.workspace.id)
            if capability is not None and capability.is_active:
                capabilities.append(capability)
        return capabilities

    def build_tools(self, ctx, memory: Optional[AgentMemory], turn_flags: dict) -> List[AgentTool]:
        tools = [self._capability_tool(capability) for capability in self.resolve_capabilities(ctx)]

        async def finish(params: dict):
            turn_flags["finished"] = True
            return {"status": "finished", "reason": params.get("reason")}

        tools.append(AgentTool(
            name="finish",
            description="Ends the conversation with this agent once the customer's goal has been reached.",
            parameters={"type": "object", "properties": {"reason": {"type": "string"}}},
            handler=finish,
        ))

        if memory is not None:
            async def search_memory(params: dict):
                summary = await self.load_memory_summary(ctx, memory, str(params.get("query") or ""))
                return {"memories": summary or "No relevant memories found."}

            tools.append(AgentTool(
                name="search_memory",
                description="Searches long-term memory about this customer.",
                parameters={
                    "type": "object",
                    "properties": {"query": {"type": "string", "description": "What to look for"}},
                    "required": ["query"],
                },
                handler=search_memory,
            ))
        return tools

    # -- delivery ---------------------------------------------------------------

    async def deliver(self, ctx, bubbles: List[str]) -> None:
        delay_ms = self.settings.AGENT_BUBBLE_DELAY_MS
        for index, bubble in enumerate(bubbles):
            if index and delay_ms > 0:
                await asyncio.sleep(delay_ms / 1000)
            await ctx.send(bubble)

    def build_system_prompt(self, ctx, state: AgentConversationState, memory_summary: str, digest: str) -> str:
        sections = [str(ctx.render(ctx.data.get("system_prompt") or DEFAULT_SYSTEM_PROMPT)), ROUTE_INSTRUCTIONS]
        fragment = guardrails.build_state_prompt_fragment(state)
        if fragment:
            sections.append(fragment)
        if memory_summary:
            sections.append(f"Relevant long-term memory:\n{memory_summary}")
        if digest:
            sections.append(f"Summary of earlier conversation:\n{digest}")
        return "\n\n".join(sections)

    # -- turn -------------------------------------------------------------------

    async def run_turn(self, ctx) -> AgentTurnResult:
        data = ctx.data
        variables = ctx.variables
        node_id = ctx.node_id
        model = data.get("model") or self.settings.AGENT_LLM_MODEL
        input_variable = str(data.get("user_input_variable") or DEFAULT_INPUT_VARIABLE).replace("{{", "").replace("}}", "").strip()
        response_variable = data.get("response_variable") or DEFAULT_RESPONSE_VARIABLE
        user_text = render_value(get_path(variables, input_variable)).strip()

        decision = await self.decide_route(user_text, data, model)
        variables["agent_route"] = decision.route.value

        if decision.should_exit_flow:
            reply = guardrails.build_redirect_message(decision.route)
            logger.info("[%s] Agent '%s' routed to %s (%.2f, %s)", ctx.session.session_id, node_id,
                        decision.route.value, decision.confidence, decision.source)
            await ctx.send(reply)
            ctx.set_variable(response_variable, reply)
            clear_agent_state(variables, node_id)
            return AgentTurnResult(completed=True, reply=reply, route=decision.route, bubbles=[reply],
                                   completion_reason="route")

        state = guardrails.merge_agent_state(_agent_slot(variables, STATE_KEY).get(node_id), user_text, decision.route)
        history = list(_agent_slot(variables, HISTORY_KEY).get(node_id) or [])
        digest = _agent_slot(variables, DIGEST_KEY).get(node_id) or ""

        memory = self.resolve_memory(ctx)
        memory_summary = ""
        if memory is not None:
            memory_summary = await self.load_memory_summary(ctx, memory, guardrails.build_memory_query(user_text, history, state))

        turn_flags: Dict[str, bool] = {"finished": False}
        system_prompt = self.build_system_prompt(ctx, state, memory_summary, digest)
        messages = history + [{"role": "user", "content": user_text}]
        tools_called: List[str] = []
        generation_failed = False
        try:
            result = await self.llm_service.generate(GenerationRequest(
                model=model,
                system_prompt=system_prompt,
                messages=messages,
                tools=self.build_tools(ctx, memory, turn_flags),
                temperature=data.get("temperature"),
            ))
            raw_reply = result.text
            tools_called = result.tools_called
        except GenerationError as e:
            logger.error("[%s] Agent '%s' generation failed: %s", ctx.session.session_id, node_id, e)
            raw_reply = GENERATION_FAILURE_MESSAGE
            generation_failed = True

        reply_route = guardrails.detect_route_in_reply(raw_reply)
        guard = guardrails.sanitize_reply(raw_reply, reply_route if reply_route != AgentRoute.UNKNOWN else decision.route)
        bubbles = split_into_bubbles(
            guard.text,
            max_chars=_int_setting(data, "bubble_max_chars", DEFAULT_BUBBLE_MAX_CHARS),
            max_bubbles=_int_setting(data, "max_bubbles", DEFAULT_MAX_BUBBLES),
        )
        await self.deliver(ctx, bubbles)

        history.extend([{"role": "user", "content": user_text}, {"role": "assistant", "content": guard.text}])
        history, digest = fold_history(history, digest, _int_setting(data, "max_history_messages", DEFAULT_MAX_HISTORY_MESSAGES))
        turns = int(_agent_slot(variables, TURNS_KEY).get(node_id) or 0) + 1
        ctx.set_variable(response_variable, guard.text)

        if memory is not None and not generation_failed:
            self.runtime.spawn_background(
                record_memory(
                    memory.store, memory.config, self.runtime, ctx.workspace.id, memory.agent_id, memory.scope_key,
                    user_text, guard.text, system_prompt=data.get("system_prompt"), model=model,
                    llm_service=self.llm_service,
                ),
                name=f"memory-record:{node_id}",
            )

        completion_reason = None
        if turn_flags["finished"]:
            completion_reason = "finish"
        elif guardrails.should_exit(reply_route, 1.0):
            completion_reason = "route"
            variables["agent_route"] = reply_route.value
        elif turns >= _int_setting(data, "max_conversation_turns", DEFAULT_MAX_CONVERSATION_TURNS):
            completion_reason = "max_turns"

        if completion_reason:
            logger.info("[%s] Agent '%s' completed (%s)", ctx.session.session_id, node_id, completion_reason)
            clear_agent_state(variables, node_id)
        else:
            _agent_slot(variables, STATE_KEY)[node_id] = state.model_dump(mode="json")
            _agent_slot(variables, HISTORY_KEY)[node_id] = history
            _agent_slot(variables, DIGEST_KEY)[node_id] = digest
            _agent_slot(variables, TURNS_KEY)[node_id] = turns

        return AgentTurnResult(
            completed=completion_reason is not None,
            reply=guard.text,
            route=reply_route if completion_reason == "route" else decision.route,
            bubbles=bubbles,
            tools_called=tools_called,
            completion_reason=completion_reason,
        )
