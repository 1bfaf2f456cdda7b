import json

import httpx
import pytest

from app.core.exceptions import ChannelSendError
from app.schemas.flow_session import AwaitingInputType
from app.services import channel_service, flow_session_service
from app.services.channel_service import SendResult
from app.services.flow_execution_service import (
    DISCARDED, PAUSED, PAUSED_FLAG, SUSPENDED, TERMINATED, FlowExecutionService,
)
from app.services.node_executors import NODE_EXECUTORS, get_executor
from app.services.node_executors.base import DEFAULT_EXECUTOR
from app.services.node_executors.logic import evaluate_condition, is_within_time_window
from tests.conftest import link


def _session(db, workspace, node_id, variables=None):
    session = flow_session_service.new_session("evolution_jid_test", workspace.id, "evolution")
    session.flow_variables = dict(variables or {})
    session.current_node_id = node_id
    return session


@pytest.fixture
def engine(db, runtime):
    return FlowExecutionService(db, runtime)


def test_registry_covers_every_node_kind():
    for node_type in ("start", "message", "input", "date-input", "file-upload", "rating-input", "option",
                      "condition", "switch", "time-of-day", "set-variable", "delay", "log-console", "end-flow",
                      "code-execution", "api-call", "capability", "ai-text-generation", "intelligent-agent",
                      "whatsapp-text", "whatsapp-media", "dialogy-send-message"):
        assert node_type in NODE_EXECUTORS
    assert get_executor("ai-memory-config") is DEFAULT_EXECUTOR


@pytest.mark.asyncio
async def test_end_flow_deletes_session(db, engine, make_workspace, sent_messages):
    workspace = make_workspace(
        [
            {"id": "hello", "type": "message", "data": {"text": "Hi {{contact_name}}"}},
            {"id": "end", "type": "end-flow", "data": {}},
        ],
        [link("hello", "end")],
    )
    session = _session(db, workspace, "hello", {"contact_name": "Ana"})

    outcome = await engine.execute_flow(session, workspace)

    assert outcome == TERMINATED
    assert sent_messages == ["Hi Ana"]
    assert flow_session_service.get_session(db, "evolution_jid_test") is None


@pytest.mark.asyncio
async def test_input_node_suspends_with_awaiting_details(db, engine, make_workspace, sent_messages):
    workspace = make_workspace(
        [{"id": "ask", "type": "input", "data": {"prompt_text": "Your name?", "variable_to_save": "name"}}],
        [],
    )
    session = _session(db, workspace, "ask")

    outcome = await engine.execute_flow(session, workspace)

    assert outcome == SUSPENDED
    stored = flow_session_service.get_session(db, "evolution_jid_test")
    assert stored.current_node_id == "ask"
    assert stored.awaiting_input_type == AwaitingInputType.INPUT.value
    assert stored.awaiting_input_details["variable_to_save"] == "name"
    assert sent_messages == ["Your name?"]


@pytest.mark.asyncio
async def test_dead_end_pauses_session(db, engine, make_workspace, sent_messages):
    workspace = make_workspace([{"id": "hello", "type": "message", "data": {"text": "Hello"}}], [])
    session = _session(db, workspace, "hello")

    outcome = await engine.execute_flow(session, workspace)

    assert outcome == PAUSED
    stored = flow_session_service.get_session(db, "evolution_jid_test")
    assert stored.current_node_id is None
    assert stored.awaiting_input_type is None
    assert stored.flow_variables[PAUSED_FLAG] is True
    assert flow_session_service.is_paused(stored)


@pytest.mark.asyncio
async def test_missing_node_discards_session(db, engine, make_workspace):
    workspace = make_workspace([], [])
    session = _session(db, workspace, "ghost")
    flow_session_service.save_session(db, session)

    outcome = await engine.execute_flow(session, workspace)

    assert outcome == DISCARDED
    assert flow_session_service.get_session(db, "evolution_jid_test") is None


@pytest.mark.asyncio
async def test_semantic_wiring_is_not_followed(db, engine, make_workspace, sent_messages):
    workspace = make_workspace(
        [
            {"id": "hello", "type": "message", "data": {"text": "Hello"}},
            {"id": "memory", "type": "ai-memory-config", "data": {}},
        ],
        [link("hello", "memory", target_handle="memory")],
    )
    session = _session(db, workspace, "hello")

    assert await engine.execute_flow(session, workspace) == PAUSED
    assert session.steps == ["hello"]


@pytest.mark.asyncio
@pytest.mark.parametrize("appointment,expected", [("15/03/2024", "after"), ("2023-12-31", "before")])
async def test_condition_is_date_after(db, engine, make_workspace, sent_messages, appointment, expected):
    workspace = make_workspace(
        [
            {"id": "check", "type": "condition", "data": {
                "variable": "{{appointment}}", "operator": "isDateAfter", "value": "01/01/2024", "data_type": "date",
            }},
            {"id": "after", "type": "message", "data": {"text": "after"}},
            {"id": "before", "type": "message", "data": {"text": "before"}},
        ],
        [link("check", "after", "true"), link("check", "before", "false")],
    )
    session = _session(db, workspace, "check", {"appointment": appointment})

    await engine.execute_flow(session, workspace)

    assert sent_messages == [expected]


@pytest.mark.asyncio
async def test_switch_falls_back_to_otherwise(db, engine, make_workspace, sent_messages):
    workspace = make_workspace(
        [
            {"id": "route", "type": "switch", "data": {
                "variable": "plan", "cases": [{"id": "case-gold", "value": "gold"}, {"id": "case-silver", "value": "silver"}],
            }},
            {"id": "gold", "type": "message", "data": {"text": "gold"}},
            {"id": "other", "type": "message", "data": {"text": "other"}},
        ],
        [link("route", "gold", "case-gold"), link("route", "other", "otherwise")],
    )
    session = _session(db, workspace, "route", {"plan": "bronze"})

    await engine.execute_flow(session, workspace)

    assert sent_messages == ["other"]


@pytest.mark.asyncio
async def test_set_variable_keeps_typed_values(db, engine, make_workspace):
    workspace = make_workspace(
        [{"id": "set", "type": "set-variable", "data": {"variable_name": "order.items", "value": "{{cart}}"}}],
        [],
    )
    session = _session(db, workspace, "set", {"cart": [1, 2, 3]})

    await engine.execute_flow(session, workspace)

    assert session.flow_variables["order"] == {"items": [1, 2, 3]}


@pytest.mark.asyncio
async def test_send_failure_saves_session_at_failing_node(db, engine, make_workspace, monkeypatch):
    async def failing_send(db, session, workspace, text):
        return SendResult(success=False, error="HTTP 500")

    monkeypatch.setattr(channel_service, "send_message", failing_send)
    workspace = make_workspace([{"id": "hello", "type": "message", "data": {"text": "Hello"}}], [])
    session = _session(db, workspace, "hello")

    with pytest.raises(ChannelSendError) as excinfo:
        await engine.execute_flow(session, workspace)

    assert excinfo.value.node_id == "hello"
    stored = flow_session_service.get_session(db, "evolution_jid_test")
    assert stored.current_node_id == "hello"
    assert stored.awaiting_input_type is None


@pytest.mark.asyncio
async def test_cycle_is_cut_by_step_limit(db, engine, make_workspace):
    workspace = make_workspace(
        [
            {"id": "a", "type": "set-variable", "data": {"variable_name": "x", "value": "1"}},
            {"id": "b", "type": "log-console", "data": {"message": "looping"}},
        ],
        [link("a", "b"), link("b", "a")],
    )
    session = _session(db, workspace, "a")

    assert await engine.execute_flow(session, workspace) == PAUSED
    assert len(session.steps) == 50


@pytest.mark.asyncio
async def test_channel_send_nodes_render_their_text(db, engine, make_workspace, sent_messages):
    workspace = make_workspace(
        [
            {"id": "wa", "type": "whatsapp-text", "data": {"text_message": "Order {{order_id}} confirmed"}},
            {"id": "dialogy", "type": "dialogy-send-message", "data": {"dialogy_message_content": "Thanks, {{name}}!"}},
        ],
        [link("wa", "dialogy")],
    )
    session = _session(db, workspace, "wa", {"order_id": 77, "name": "Ana"})

    assert await engine.execute_flow(session, workspace) == PAUSED
    assert sent_messages == ["Order 77 confirmed", "Thanks, Ana!"]


@pytest.mark.asyncio
async def test_media_node_sends_rendered_media(db, engine, make_workspace, monkeypatch):
    sent_media = []

    async def fake_send_media(db, session, workspace, media_url, media_type="image", caption=None):
        sent_media.append((media_url, media_type, caption))
        return SendResult(success=True)

    monkeypatch.setattr(channel_service, "send_media", fake_send_media)
    workspace = make_workspace(
        [
            {"id": "invoice", "type": "whatsapp-media",
             "data": {"media_url": "https://files.example.com/{{invoice}}.pdf", "media_type": "document",
                      "caption": "Invoice {{invoice}}"}},
            {"id": "empty", "type": "whatsapp-media", "data": {"media_url": "{{missing}}"}},
        ],
        [link("invoice", "empty")],
    )
    session = _session(db, workspace, "invoice", {"invoice": "INV-3"})

    assert await engine.execute_flow(session, workspace) == PAUSED
    assert sent_media == [("https://files.example.com/INV-3.pdf", "document", "Invoice INV-3")]


@pytest.mark.asyncio
async def test_media_failure_raises_channel_error(db, engine, make_workspace, monkeypatch):
    async def failing_send_media(db, session, workspace, media_url, media_type="image", caption=None):
        return SendResult(success=False, error="Unsupported media type 'gif'")

    monkeypatch.setattr(channel_service, "send_media", failing_send_media)
    workspace = make_workspace(
        [{"id": "media", "type": "whatsapp-media", "data": {"media_url": "https://x.example.com/a.gif", "media_type": "gif"}}],
        [],
    )
    session = _session(db, workspace, "media")

    with pytest.raises(ChannelSendError) as excinfo:
        await engine.execute_flow(session, workspace)
    assert excinfo.value.node_id == "media"


@pytest.mark.asyncio
async def test_media_without_evolution_falls_back_to_text(db, make_workspace, sent_messages):
    workspace = make_workspace([], [])
    session = flow_session_service.new_session("manual_test", workspace.id, None)

    result = await channel_service.send_media(db, session, workspace, "https://x.example.com/a.png", "image", "Your ticket")

    assert result.success
    assert sent_messages == ["Your ticket\nhttps://x.example.com/a.png"]


@pytest.mark.asyncio
async def test_evolution_media_payload(monkeypatch):
    captured = []
    real_client = httpx.AsyncClient

    def handler(request):
        captured.append(request)
        return httpx.Response(201, json={"key": {"id": "msg-1"}})

    monkeypatch.setattr(httpx, "AsyncClient", lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs))

    result = await channel_service.send_evolution_media(
        "https://evo.example.com/", "secret", "main", "5511999990000@s.whatsapp.net",
        "https://files.example.com/report.pdf", "document", "report.pdf",
    )

    assert result.success
    request = captured[0]
    assert str(request.url) == "https://evo.example.com/message/sendMedia/main"
    assert request.headers["apikey"] == "secret"
    assert json.loads(request.content) == {
        "number": "5511999990000", "mediatype": "document", "media": "https://files.example.com/report.pdf",
        "caption": "report.pdf", "fileName": "report.pdf",
    }
    rejected = await channel_service.send_evolution_media("https://evo.example.com", "", "main", "55@s", "u", "gif")
    assert not rejected.success and captured == [request]


def test_evaluate_condition_operators():
    assert evaluate_condition("10", ">", "9", "number")
    assert not evaluate_condition("10", ">", "9", "string")
    assert evaluate_condition("Hello World", "contains", "world")
    assert evaluate_condition("", "isEmpty", None)
    assert evaluate_condition("true", "isTrue", None, "boolean")
    assert evaluate_condition(5, "==", "5")
    assert not evaluate_condition("a", "unknownOp", "a")
    assert not evaluate_condition("not a date", "isDateBefore", "2024-01-01")


def test_time_window_wraps_midnight():
    import datetime

    assert is_within_time_window("22:00", "06:00", datetime.time(23, 30))
    assert is_within_time_window("22:00", "06:00", datetime.time(5, 59))
    assert not is_within_time_window("22:00", "06:00", datetime.time(12, 0))
    assert is_within_time_window("09:00", "18:00", datetime.time(18, 0))
    assert not is_within_time_window("9h", "18:00", datetime.time(12, 0))
