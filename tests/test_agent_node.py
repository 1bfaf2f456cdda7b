from unittest.mock import AsyncMock, Mock

import pytest

from app.core.exceptions import GenerationError
from app.schemas.flow_session import AwaitingInputType
from app.services import flow_session_service
from app.services.agent_guardrails_service import DEFAULT_FALLBACK_MESSAGE, REDIRECT_MESSAGES
from app.services.agent_orchestration_service import (
    GENERATION_FAILURE_MESSAGE,
    HISTORY_KEY,
    TURNS_KEY,
    fold_history,
    memory_settings_from_node,
)
from app.schemas.agent import AgentRoute
from app.services.flow_execution_service import FlowExecutionService
from app.services.llm_tool_service import GenerationResult
from app.services.memory.memory_service import COMPILER_PROMPT
from app.services.webhook_ingestion_service import WebhookIngestionService
from tests.conftest import evolution_payload, link, start_node

SESSION_KEY = "evolution_jid_5511999990000@s.whatsapp.net"


@pytest.fixture
def llm():
    service = Mock()
    service.generate = AsyncMock(return_value=GenerationResult(text="Hello! How can I help you today?"))
    return service


@pytest.fixture
def ingestion(db, runtime, llm):
    engine = FlowExecutionService(db, runtime)
    engine.llm_service = llm
    return WebhookIngestionService(db, runtime, engine=engine)


def agent_workspace(make_workspace, agent_data=None, extra_nodes=(), extra_connections=()):
    nodes = [
        start_node(),
        {"id": "agent", "type": "intelligent-agent", "data": dict(agent_data or {"system_prompt": "You sell fiber internet."})},
        {"id": "after", "type": "message", "data": {"text": "Agent done ({{agent_route}})"}},
    ] + list(extra_nodes)
    connections = [link("start", "agent"), link("agent", "after")] + list(extra_connections)
    return make_workspace(nodes, connections)


def agent_calls(llm):
    return [c.args[0] for c in llm.generate.call_args_list if c.args[0].system_prompt != COMPILER_PROMPT]


@pytest.mark.asyncio
async def test_agent_replies_and_waits_for_next_message(db, ingestion, llm, make_workspace, sent_messages):
    workspace = agent_workspace(make_workspace)

    result = await ingestion.process_webhook(workspace.id, evolution_payload("hi there"))

    assert result.status == "started"
    assert sent_messages == ["Hello! How can I help you today?"]
    session = flow_session_service.get_session(db, SESSION_KEY)
    assert session.awaiting_input_type == AwaitingInputType.AGENT.value
    assert session.awaiting_input_details["variable_to_save"] == "incoming_message"
    assert session.flow_variables[TURNS_KEY]["agent"] == 1
    assert session.flow_variables[HISTORY_KEY]["agent"][0] == {"role": "user", "content": "hi there"}
    assert session.flow_variables["agent_response"] == "Hello! How can I help you today?"
    request = agent_calls(llm)[0]
    assert request.system_prompt.startswith("You sell fiber internet.")
    assert {tool.name for tool in request.tools} == {"finish"}


@pytest.mark.asyncio
async def test_confident_support_route_exits_agent(db, ingestion, llm, make_workspace, sent_messages):
    workspace = agent_workspace(make_workspace)
    await ingestion.process_webhook(workspace.id, evolution_payload("hi there"))

    result = await ingestion.process_webhook(workspace.id, evolution_payload("My router died and I have no internet"))

    assert result.status == "resumed"
    assert sent_messages[1:] == [REDIRECT_MESSAGES[AgentRoute.SUPPORT], "Agent done (support)"]
    assert len(agent_calls(llm)) == 1
    session = flow_session_service.get_session(db, SESSION_KEY)
    assert HISTORY_KEY not in session.flow_variables


@pytest.mark.asyncio
async def test_blocked_reply_is_never_forwarded(ingestion, llm, make_workspace, sent_messages):
    llm.generate.return_value = GenerationResult(text="As an AI language model, I cannot help with that.")
    workspace = agent_workspace(make_workspace)

    await ingestion.process_webhook(workspace.id, evolution_payload("hi there"))

    assert sent_messages == [DEFAULT_FALLBACK_MESSAGE]


@pytest.mark.asyncio
async def test_finish_tool_completes_the_agent(ingestion, llm, make_workspace, sent_messages):
    async def generate(request):
        finish = next(tool for tool in request.tools if tool.name == "finish")
        await finish.handler({"reason": "goal reached"})
        return GenerationResult(text="All set, your installation is booked.", tools_called=["finish"])

    llm.generate.side_effect = generate
    workspace = agent_workspace(make_workspace)

    await ingestion.process_webhook(workspace.id, evolution_payload("hi there"))

    assert sent_messages[0] == "All set, your installation is booked."
    assert sent_messages[1].startswith("Agent done")


@pytest.mark.asyncio
async def test_long_reply_is_split_into_bubbles(ingestion, llm, make_workspace, sent_messages):
    reply = "First sentence is here. Second sentence follows it. Third one closes the thought."
    llm.generate.return_value = GenerationResult(text=reply)
    workspace = agent_workspace(make_workspace, {"bubble_max_chars": 30, "max_bubbles": 5})

    await ingestion.process_webhook(workspace.id, evolution_payload("hi there"))

    assert len(sent_messages) == 3
    assert all(len(bubble) <= 30 for bubble in sent_messages)
    assert " ".join(sent_messages) == reply


@pytest.mark.asyncio
async def test_generation_failure_sends_apology(db, ingestion, llm, make_workspace, sent_messages):
    llm.generate.side_effect = GenerationError("provider down")
    workspace = agent_workspace(make_workspace)

    await ingestion.process_webhook(workspace.id, evolution_payload("hi there"))

    assert sent_messages == [GENERATION_FAILURE_MESSAGE]
    assert flow_session_service.get_session(db, SESSION_KEY).awaiting_input_type == AwaitingInputType.AGENT.value


@pytest.mark.asyncio
async def test_wired_memory_is_recorded_and_recalled(ingestion, llm, runtime, make_workspace, sent_messages):
    workspace = agent_workspace(
        make_workspace,
        extra_nodes=[{"id": "memory", "type": "ai-memory-config", "data": {"memory_provider": "In-Memory"}}],
        extra_connections=[link("memory", "agent", target_handle="memory")],
    )

    await ingestion.process_webhook(workspace.id, evolution_payload("hello, my name is Joana"))
    await runtime.drain()
    await ingestion.process_webhook(workspace.id, evolution_payload("what plans do you have?"))

    first, second = agent_calls(llm)
    assert "search_memory" in {tool.name for tool in first.tools}
    assert "User name: Joana" in second.system_prompt


@pytest.mark.asyncio
async def test_unknown_memory_provider_runs_without_memory(ingestion, llm, make_workspace, sent_messages):
    workspace = agent_workspace(
        make_workspace,
        extra_nodes=[{"id": "memory", "type": "ai-memory-config", "data": {"memory_provider": "cassandra"}}],
        extra_connections=[link("memory", "agent", target_handle="memory")],
    )

    await ingestion.process_webhook(workspace.id, evolution_payload("hi there"))

    assert sent_messages == ["Hello! How can I help you today?"]
    assert {tool.name for tool in agent_calls(llm)[0].tools} == {"finish"}


def test_memory_settings_from_node_defaults():
    config = memory_settings_from_node({"memory_provider": "Redis", "retention_days": 30, "connection_string": ""}, "postgres")
    assert config.provider == "redis"
    assert config.retention_days == 30
    assert config.connection_string is None
    assert memory_settings_from_node({}, "postgres").provider == "postgres"


def test_fold_history_keeps_newest_messages():
    history = [{"role": "user", "content": f"message {i}"} for i in range(5)]

    kept, digest = fold_history(history, "", 2)

    assert [m["content"] for m in kept] == ["message 3", "message 4"]
    assert digest.splitlines() == ["user: message 0", "user: message 1", "user: message 2"]
