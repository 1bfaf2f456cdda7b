import datetime

import pytest

from app.core.exceptions import SessionNotFoundError, TriggerNotFoundError, WorkspaceNotFoundError
from app.schemas.flow_session import AwaitingInputType
from app.schemas.workspace import StartTrigger
from app.services import flow_log_service, flow_session_service
from app.services.webhook_ingestion_service import (
    INVALID_OPTION_MESSAGE,
    WebhookIngestionService,
    bind_input_value,
    build_initial_variables,
    extract_channel_payload,
    match_option,
)
from tests.conftest import evolution_payload, link, start_node

SESSION_KEY = "evolution_jid_5511999990000@s.whatsapp.net"


@pytest.fixture
def ingestion(db, runtime):
    return WebhookIngestionService(db, runtime)


@pytest.fixture
def menu_workspace(make_workspace):
    return make_workspace(
        [
            start_node(),
            {"id": "menu", "type": "option", "data": {
                "question_text": "How can we help?", "options": ["Sales", "Support"], "variable_to_save": "choice",
            }},
            {"id": "sales", "type": "message", "data": {"text": "Sales team here"}},
            {"id": "fallback", "type": "message", "data": {"text": "Someone will reach out about {{choice}}"}},
        ],
        [link("start", "menu"), link("menu", "sales", "Sales"), link("menu", "fallback")],
    )


@pytest.fixture
def rating_workspace(make_workspace):
    return make_workspace(
        [
            start_node([{"name": "default", "type": "webhook", "enabled": True, "session_timeout_seconds": 60}]),
            {"id": "rate", "type": "rating-input", "data": {"prompt_text": "Rate us from 1 to 5", "variable_to_save": "rating"}},
            {"id": "thanks", "type": "message", "data": {"text": "Thanks for the {{rating}}!"}},
        ],
        [link("start", "rate"), link("rate", "thanks")],
    )


# -- payload extraction ---------------------------------------------------------

def test_extracts_evolution_text_and_key():
    message = extract_channel_payload([evolution_payload("  hello  ")])
    assert message.session_key == SESSION_KEY
    assert message.text == "hello"
    assert message.flow_context == "evolution"
    assert message.ignore_reason is None


def test_ignores_messages_sent_by_the_business_number():
    assert extract_channel_payload(evolution_payload("hi", from_me=True)).ignore_reason


def test_chatwoot_agent_message_pauses_automation():
    payload = {
        "event": "message_created", "message_type": "incoming", "sender_type": "User",
        "content": "I'll take it from here", "conversation": {"id": 42},
    }
    message = extract_channel_payload(payload)
    assert message.session_key == "chatwoot_conv_42"
    assert "human intervention" in message.ignore_reason


def test_dialogy_human_queue_is_ignored():
    payload = {
        "event": "message.created", "conversation": {"id": 7, "status": "atendimentos"},
        "message": {"content": "hi", "from_me": False},
    }
    message = extract_channel_payload(payload)
    assert message.session_key == "dialogy_conv_7"
    assert message.ignore_reason


def test_unknown_payload_has_no_session_key():
    message = extract_channel_payload("plain text")
    assert message.session_key is None
    assert message.payload == {"raw_body": "plain text"}


def test_match_option_by_index_then_text():
    options = ["Sales", "Support"]
    assert match_option("2", options) == "Support"
    assert match_option(" sales ", options) == "Sales"
    assert match_option("3", options) is None
    assert match_option("billing", options) is None


def test_bind_input_value_by_shape():
    assert bind_input_value("date-input", "25/12/2024", {}) == "2024-12-25"
    assert bind_input_value("date-input", "5", {}) is None
    assert bind_input_value("rating-input", "4", {}) == 4
    assert bind_input_value("rating-input", "9", {}) is None
    assert bind_input_value("file-upload", "https://cdn.example.com/a.pdf", {}) == "https://cdn.example.com/a.pdf"
    media = {"data": {"message": {"imageMessage": {"url": "https://mmg.example.net/img"}}}}
    assert bind_input_value("file-upload", "", media) == "https://mmg.example.net/img"
    assert bind_input_value("input", "   ", {}) is None


def test_initial_variables_include_channel_fields_and_mappings():
    payload = {
        "event": "message_created", "message_type": "incoming", "content": "hi",
        "conversation": {"id": 42}, "account": {"id": 3}, "inbox": {"id": 9},
        "sender": {"id": 11, "name": "Ana", "phone_number": "+5511999990000"},
        "meta": {"campaign": "spring"},
    }
    trigger = StartTrigger(variable_mappings=[{"json_path": "meta.campaign", "flow_variable": "lead.campaign"}])

    variables = build_initial_variables(extract_channel_payload(payload), trigger, "default")

    assert variables["chatwoot_conversation_id"] == 42
    assert variables["chatwoot_account_id"] == 3
    assert variables["contact_name"] == "Ana"
    assert variables["lead"] == {"campaign": "spring"}
    assert variables["_triggerHandle"] == "default"
    assert variables["session_id"] == "chatwoot_conv_42"


# -- start / resume -------------------------------------------------------------

@pytest.mark.asyncio
async def test_first_message_starts_flow_and_waits_for_option(db, ingestion, menu_workspace, sent_messages):
    result = await ingestion.process_webhook(menu_workspace.id, evolution_payload("hi"))

    assert result.status == "started"
    assert result.session_id == SESSION_KEY
    assert sent_messages[0].startswith("How can we help?\n\n1. Sales\n2. Support")
    session = flow_session_service.get_session(db, SESSION_KEY)
    assert session.awaiting_input_type == AwaitingInputType.OPTION.value
    assert session.flow_variables["incoming_message"] == "hi"
    assert "_triggerHandle" not in session.flow_variables
    assert flow_log_service.get_logs_for_session(db, SESSION_KEY, "webhook")


@pytest.mark.asyncio
async def test_option_reply_by_index_follows_default(db, ingestion, menu_workspace, sent_messages):
    await ingestion.process_webhook(menu_workspace.id, evolution_payload("hi"))

    result = await ingestion.process_webhook(menu_workspace.id, evolution_payload("2"))

    assert result.status == "resumed"
    assert sent_messages[-1] == "Someone will reach out about Support"


@pytest.mark.asyncio
async def test_option_reply_by_text_follows_option_handle(db, ingestion, menu_workspace, sent_messages):
    await ingestion.process_webhook(menu_workspace.id, evolution_payload("hi"))

    result = await ingestion.process_webhook(menu_workspace.id, evolution_payload("SALES"))

    assert result.status == "resumed"
    assert sent_messages[-1] == "Sales team here"
    assert flow_session_service.get_session(db, SESSION_KEY).flow_variables["choice"] == "Sales"


@pytest.mark.asyncio
async def test_invalid_option_reprompts_without_advancing(db, ingestion, menu_workspace, sent_messages):
    await ingestion.process_webhook(menu_workspace.id, evolution_payload("hi"))

    result = await ingestion.process_webhook(menu_workspace.id, evolution_payload("7"))

    assert result.status == "reprompted"
    assert sent_messages[1] == INVALID_OPTION_MESSAGE
    assert sent_messages[2] == sent_messages[0]
    session = flow_session_service.get_session(db, SESSION_KEY)
    assert session.current_node_id == "menu"
    assert session.awaiting_input_type == AwaitingInputType.OPTION.value


@pytest.mark.asyncio
async def test_unbound_reply_restarts_the_flow(db, ingestion, rating_workspace, sent_messages):
    await ingestion.process_webhook(rating_workspace.id, evolution_payload("hi"))

    result = await ingestion.process_webhook(rating_workspace.id, evolution_payload("great service"))

    assert result.status == "started"
    assert sent_messages == ["Rate us from 1 to 5", "Rate us from 1 to 5"]
    assert flow_session_service.get_session(db, SESSION_KEY).flow_variables["incoming_message"] == "great service"


@pytest.mark.asyncio
async def test_bound_reply_advances_then_paused_session_ignores_messages(db, ingestion, rating_workspace, sent_messages):
    await ingestion.process_webhook(rating_workspace.id, evolution_payload("hi"))

    resumed = await ingestion.process_webhook(rating_workspace.id, evolution_payload("5"))
    ignored = await ingestion.process_webhook(rating_workspace.id, evolution_payload("hello again"))

    assert resumed.status == "resumed"
    assert sent_messages[-1] == "Thanks for the 5!"
    assert ignored.status == "paused"
    assert len(sent_messages) == 2


@pytest.mark.asyncio
async def test_expired_session_starts_over(db, ingestion, rating_workspace, sent_messages):
    await ingestion.process_webhook(rating_workspace.id, evolution_payload("hi"))
    session = flow_session_service.get_session(db, SESSION_KEY)
    session.last_interaction_at = datetime.datetime.utcnow() - datetime.timedelta(minutes=5)
    db.commit()

    result = await ingestion.process_webhook(rating_workspace.id, evolution_payload("4"))

    assert result.status == "started"
    assert "rating" not in flow_session_service.get_session(db, SESSION_KEY).flow_variables


@pytest.mark.asyncio
async def test_keyword_trigger_in_sibling_workspace(db, ingestion, make_workspace, sent_messages):
    origin = make_workspace(
        [start_node(), {"id": "hello", "type": "message", "data": {"text": "default flow"}}],
        [link("start", "hello")],
        name="Origin", organization_id="org-1",
    )
    promo = make_workspace(
        [
            start_node([{"name": "campaign", "type": "webhook", "enabled": True, "keyword": "promo, offer"}]),
            {"id": "promo", "type": "message", "data": {"text": "promo flow"}},
        ],
        [link("start", "promo", "promo")],
        name="Promo", organization_id="org-1",
    )

    result = await ingestion.process_webhook(origin.id, evolution_payload(" PROMO "))

    assert result.status == "started"
    assert sent_messages == ["promo flow"]
    assert flow_session_service.get_session(db, SESSION_KEY).workspace_id == promo.id


@pytest.mark.asyncio
async def test_api_response_binds_to_waiting_session(db, ingestion, make_workspace, sent_messages):
    workspace = make_workspace(
        [
            start_node(),
            {"id": "wait", "type": "input", "data": {
                "variable_to_save": "payment", "api_response_as_input": True,
                "api_response_path_for_value": "data.status",
            }},
            {"id": "done", "type": "message", "data": {"text": "Payment {{payment}}"}},
        ],
        [link("start", "wait"), link("wait", "done")],
    )
    await ingestion.process_webhook(workspace.id, evolution_payload("hi"))

    ignored = await ingestion.process_webhook(workspace.id, evolution_payload("did it work?"))
    bound = await ingestion.process_webhook(workspace.id, {"resume_session_id": SESSION_KEY, "data": {"status": "paid"}})

    assert ignored.status == "ignored"
    assert bound.status == "api_response_bound"
    assert sent_messages == ["Payment paid"]


@pytest.mark.asyncio
async def test_api_response_without_session_is_ignored(ingestion, menu_workspace, sent_messages):
    payload = evolution_payload("")
    payload["isApiCallResponse"] = True

    result = await ingestion.process_webhook(menu_workspace.id, payload)

    assert result.status == "ignored"
    assert sent_messages == []


@pytest.mark.asyncio
async def test_resume_of_unknown_session_raises(ingestion, menu_workspace):
    with pytest.raises(SessionNotFoundError):
        await ingestion.process_webhook(menu_workspace.id, {"resume_session_id": "nope", "result": 1})


@pytest.mark.asyncio
async def test_missing_workspace_and_trigger_raise(ingestion, make_workspace, sent_messages):
    with pytest.raises(WorkspaceNotFoundError):
        await ingestion.process_webhook("does-not-exist", evolution_payload("hi"))

    no_trigger = make_workspace([start_node(triggers=[])], [])
    with pytest.raises(TriggerNotFoundError):
        await ingestion.process_webhook(no_trigger.id, evolution_payload("hi"))

    unconnected = make_workspace([start_node()], [])
    with pytest.raises(TriggerNotFoundError):
        await ingestion.process_webhook(unconnected.id, evolution_payload("hi"))


@pytest.mark.asyncio
async def test_ignored_payload_never_touches_sessions(db, ingestion, menu_workspace, sent_messages):
    result = await ingestion.process_webhook(menu_workspace.id, evolution_payload("hi", from_me=True))

    assert result.status == "ignored"
    assert flow_session_service.get_session(db, SESSION_KEY) is None
