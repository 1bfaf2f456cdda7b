"""
Webhook Ingestion Service

Maps an inbound channel event to exactly one outcome for a flow session:

- ignore it (agent-authored message, paused session, unexpected API response)
- resume a session that is waiting for input
- bind an out-of-band API response to a session waiting for one
- start a new session from a keyword trigger or the workspace default trigger

Deliveries for one session key are serialized by the runtime's session guard,
which is held across load, execution and persistence.
"""
import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.exceptions import SessionNotFoundError, TriggerNotFoundError, WorkspaceNotFoundError
from app.models.flow_session import FlowSession
from app.models.workspace import Workspace
from app.schemas.flow_session import AwaitingInputDetails, AwaitingInputType, IngestionResult
from app.schemas.workspace import StartTrigger
from app.services import flow_log_service, flow_session_service, workspace_service
from app.services.flow_execution_service import FlowExecutionService
from app.services.flow_variables import coerce_to_date, get_path, has_path, set_path
from app.services.graph_execution_engine import DEFAULT_HANDLE, FlowGraph

logger = logging.getLogger(__name__)

INVALID_OPTION_MESSAGE = "Invalid option, please try again."
DEFAULT_API_RESPONSE_VARIABLE = "external_response_data"

EVOLUTION_TEXT_PATHS = (
    "data.message.conversation",
    "message.conversation",
    "message.body",
    "message.textMessage.text",
    "text",
    "data.message.extendedTextMessage.text",
)
MEDIA_URL_PATHS = (
    "data.message.imageMessage.url",
    "data.message.documentMessage.url",
    "data.message.videoMessage.url",
    "data.message.audioMessage.url",
    "attachments[0].data_url",
    "message.media_url",
    "message.attachment.url",
    "media_url",
)
CHATWOOT_VARIABLES = {
    "chatwoot_conversation_id": "conversation.id",
    "chatwoot_contact_id": "sender.id",
    "chatwoot_account_id": "account.id",
    "chatwoot_inbox_id": "inbox.id",
    "contact_name": "sender.name",
    "contact_phone": "sender.phone_number",
}
DIALOGY_VARIABLES = {
    "dialogy_conversation_id": "conversation.id",
    "dialogy_contact_id": "contact.id",
    "dialogy_account_id": "account.id",
    "contact_name": "contact.name",
    "contact_phone": "contact.phone_number",
}

_URL_PATTERN = re.compile(r"^https?://\S+$", re.IGNORECASE)
_RATING_PATTERN = re.compile(r"^\s*([1-5])(?:\s*/\s*5)?\s*$")


@dataclass
class ChannelMessage:
    payload: dict
    session_key: Optional[str] = None
    text: str = ""
    flow_context: Optional[str] = None
    ignore_reason: Optional[str] = None


def extract_channel_payload(body: Any) -> ChannelMessage:
    """Identifies the channel, the session key and the message text of a webhook body."""
    payload = body[0] if isinstance(body, list) and body and isinstance(body[0], dict) else body
    if not isinstance(payload, dict):
        payload = {"raw_body": payload}

    event = payload.get("event")
    conversation_id = get_path(payload, "conversation.id")

    if event == "message_created" and conversation_id is not None:
        message = ChannelMessage(payload=payload, flow_context="chatwoot",
                                 session_key=f"chatwoot_conv_{conversation_id}",
                                 text=str(payload.get("content") or "").strip())
        if payload.get("message_type") != "incoming":
            message.ignore_reason = "Outgoing Chatwoot message ignored."
        elif payload.get("sender_type") == "User":
            message.ignore_reason = "Automation paused due to human intervention."
        return message

    if event == "message.created" and conversation_id is not None:
        message = ChannelMessage(payload=payload, flow_context="dialogy",
                                 session_key=f"dialogy_conv_{conversation_id}",
                                 text=str(get_path(payload, "message.content") or "").strip())
        if get_path(payload, "message.from_me") is True:
            message.ignore_reason = "Message from agent, automation ignored."
        elif get_path(payload, "conversation.status") == "atendimentos":
            message.ignore_reason = "Conversation is being handled by a human, automation ignored."
        return message

    remote_jid = get_path(payload, "data.key.remoteJid")
    if remote_jid:
        text = ""
        for path in EVOLUTION_TEXT_PATHS:
            value = get_path(payload, path)
            if isinstance(value, str) and value.strip():
                text = value.strip()
                break
        message = ChannelMessage(payload=payload, flow_context="evolution",
                                 session_key=f"evolution_jid_{remote_jid}", text=text)
        if get_path(payload, "data.key.fromMe") is True:
            message.ignore_reason = "Message sent by this number, automation ignored."
        return message

    return ChannelMessage(payload=payload)


def match_option(reply: str, options: List[str]) -> Optional[str]:
    """1-based index first, then case-insensitive exact text."""
    reply = (reply or "").strip()
    if reply.isdigit():
        index = int(reply)
        if 1 <= index <= len(options):
            return options[index - 1]
    lowered = reply.lower()
    return next((option for option in options if option.lower() == lowered), None)


def bind_input_value(input_type: str, text: str, payload: dict) -> Optional[Any]:
    """Value for an awaited answer, or None when the reply does not have the expected shape."""
    text = (text or "").strip()
    if input_type == AwaitingInputType.DATE_INPUT.value:
        # Bare numbers would parse as epoch timestamps.
        if re.fullmatch(r"-?\d+(\.\d+)?", text):
            return None
        parsed = coerce_to_date(text)
        return parsed.date().isoformat() if parsed else None
    if input_type == AwaitingInputType.FILE_UPLOAD.value:
        if _URL_PATTERN.match(text):
            return text
        for path in MEDIA_URL_PATHS:
            value = get_path(payload, path)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None
    if input_type == AwaitingInputType.RATING_INPUT.value:
        match = _RATING_PATTERN.match(text)
        return int(match.group(1)) if match else None
    return text or None


def build_initial_variables(message: ChannelMessage, trigger: StartTrigger, handle: str) -> dict:
    payload = message.payload
    variables = {
        "incoming_message": message.text,
        "webhook_payload": payload,
        "session_id": message.session_key,
        "_triggerHandle": handle,
    }
    if message.flow_context == "evolution":
        jid = get_path(payload, "data.key.remoteJid") or get_path(payload, "sender.identifier")
        if jid:
            variables["whatsapp_sender_jid"] = jid
    channel_variables = {"chatwoot": CHATWOOT_VARIABLES, "dialogy": DIALOGY_VARIABLES}.get(message.flow_context, {})
    for variable, path in channel_variables.items():
        if has_path(payload, path):
            variables[variable] = get_path(payload, path)
    for mapping in trigger.variable_mappings:
        if has_path(payload, mapping.json_path):
            try:
                set_path(variables, mapping.flow_variable, get_path(payload, mapping.json_path))
            except ValueError as e:
                logger.warning("Trigger mapping '%s' skipped: %s", mapping.flow_variable, e)
    return variables


def webhook_triggers(start_node: Optional[dict]) -> List[StartTrigger]:
    triggers = []
    for raw in ((start_node or {}).get("data") or {}).get("triggers") or []:
        try:
            trigger = StartTrigger.model_validate(raw)
        except ValueError:
            logger.warning("Ignoring malformed start trigger: %s", raw)
            continue
        if trigger.type == "webhook" and trigger.enabled:
            triggers.append(trigger)
    return triggers


class WebhookIngestionService:
    def __init__(self, db: Session, runtime, engine: FlowExecutionService = None):
        self.db = db
        self.runtime = runtime
        self.engine = engine or FlowExecutionService(db, runtime)

    async def process_webhook(self, workspace_id: str, body: Any) -> IngestionResult:
        message = extract_channel_payload(body)
        payload = message.payload
        resume_session_id = payload.get("resume_session_id")
        is_api_response = payload.get("isApiCallResponse") is True or bool(resume_session_id)
        session_key = str(resume_session_id) if resume_session_id else message.session_key
        self._log_webhook(workspace_id, session_key, message, body)

        if message.ignore_reason:
            logger.info("[%s] %s", message.session_key, message.ignore_reason)
            return IngestionResult(status="ignored", message=message.ignore_reason, session_id=message.session_key)
        if not session_key:
            return IngestionResult(status="ignored", message="Could not determine a session key from the payload.")

        async with self.runtime.session_guard(session_key):
            return await self._process(workspace_id, session_key, message, is_api_response, bool(resume_session_id))

    def _log_webhook(self, workspace_id: str, session_key: Optional[str], message: ChannelMessage, body: Any):
        try:
            flow_log_service.save_flow_log(
                self.db, "webhook",
                {"flow_context": message.flow_context, "extracted_message": message.text, "payload": body},
                workspace_id=workspace_id, session_id=session_key,
            )
        except Exception as e:
            logger.error("Failed to save webhook log: %s", e)
            self.db.rollback()

    async def _process(self, workspace_id: str, session_key: str, message: ChannelMessage,
                       is_api_response: bool, explicit_resume: bool) -> IngestionResult:
        session = flow_session_service.get_session(self.db, session_key)
        workspace = None

        if session is not None and flow_session_service.is_expired(session):
            logger.info("[%s] Session timed out. Starting over.", session_key)
            flow_session_service.delete_session(self.db, session_key)
            session = None

        if session is not None:
            workspace = workspace_service.get_workspace(self.db, session.workspace_id)
            if workspace is None:
                logger.error("[%s] Workspace '%s' no longer exists. Deleting orphan session.", session_key, session.workspace_id)
                flow_session_service.delete_session(self.db, session_key)
                session = None

        if session is None and explicit_resume:
            raise SessionNotFoundError(f"Session to resume not found: {session_key}")

        if session is not None:
            if flow_session_service.is_paused(session):
                return IngestionResult(status="paused", message="Session is paused at a dead end; message ignored.",
                                       session_id=session_key)

            session.flow_variables["webhook_payload"] = message.payload
            if not is_api_response:
                session.flow_variables["incoming_message"] = message.text

            if session.awaiting_input_type:
                result = await self._resume(session, workspace, message, is_api_response)
                if result is not None:
                    return result
            else:
                logger.info("[%s] Session was interrupted mid-run. Restarting.", session_key)
                flow_session_service.delete_session(self.db, session_key)

        if is_api_response:
            return IngestionResult(status="ignored", message="API response ignored, no session is awaiting it.",
                                   session_id=session_key)
        return await self._start(workspace_id, session_key, message)

    # -- resume -------------------------------------------------------------------

    async def _continue(self, session: FlowSession, workspace: Workspace, next_node_id: Optional[str],
                        status: str) -> IngestionResult:
        session.awaiting_input_type = None
        session.awaiting_input_details = None
        if next_node_id is None:
            self.engine._pause(session)
            flow_session_service.save_session(self.db, session)
            return IngestionResult(status="paused", message="Flow paused at a dead end.", session_id=session.session_id)
        session.current_node_id = next_node_id
        outcome = await self.engine.execute_flow(session, workspace)
        return IngestionResult(status=status, message=f"Flow {outcome}.", session_id=session.session_id)

    async def _resume(self, session: FlowSession, workspace: Workspace, message: ChannelMessage,
                      is_api_response: bool) -> Optional[IngestionResult]:
        """Returns None when the session was discarded and a new one must start."""
        session_key = session.session_id
        try:
            details = AwaitingInputDetails.model_validate(session.awaiting_input_details or {})
        except ValueError:
            logger.warning("[%s] Corrupt awaiting details. Restarting.", session_key)
            flow_session_service.delete_session(self.db, session_key)
            return None

        graph = FlowGraph.from_workspace(workspace)
        node = graph.get_node(details.node_id)
        if node is None:
            logger.warning("[%s] Awaited node '%s' no longer exists. Restarting.", session_key, details.node_id)
            flow_session_service.delete_session(self.db, session_key)
            return None

        node_data = node.get("data") or {}
        expects_api_response = details.api_response_as_input or bool(node_data.get("api_response_as_input"))
        if expects_api_response and not is_api_response:
            return IngestionResult(status="ignored", message="Awaiting an API response; user message ignored.",
                                   session_id=session_key)

        if is_api_response:
            value = message.payload
            path = details.api_response_path_for_value or node_data.get("api_response_path_for_value")
            if path and has_path(value, path):
                value = get_path(value, path)
            set_path(session.flow_variables, details.variable_to_save or DEFAULT_API_RESPONSE_VARIABLE, value)
            return await self._continue(session, workspace, graph.find_next_node_id(node["id"], DEFAULT_HANDLE),
                                        "api_response_bound")

        awaiting_type = session.awaiting_input_type
        if awaiting_type == AwaitingInputType.OPTION.value:
            choice = match_option(message.text, details.options or [])
            if choice is None:
                await self.engine.send_text(session, workspace, INVALID_OPTION_MESSAGE, node_id=node["id"])
                session.current_node_id = node["id"]
                await self.engine.execute_flow(session, workspace)
                return IngestionResult(status="reprompted", message="Invalid option; question sent again.",
                                       session_id=session_key)
            set_path(session.flow_variables, details.variable_to_save, choice)
            next_node_id = graph.find_next_node_id(node["id"], choice) or graph.find_next_node_id(node["id"], DEFAULT_HANDLE)
            return await self._continue(session, workspace, next_node_id, "resumed")

        if awaiting_type == AwaitingInputType.AGENT.value:
            set_path(session.flow_variables, details.variable_to_save, message.text)
            return await self._continue(session, workspace, node["id"], "resumed")

        value = bind_input_value(awaiting_type, message.text, message.payload)
        if value is None:
            logger.info("[%s] Reply does not answer the awaited %s. Restarting.", session_key, awaiting_type)
            flow_session_service.delete_session(self.db, session_key)
            return None
        set_path(session.flow_variables, details.variable_to_save, value)
        return await self._continue(session, workspace, graph.find_next_node_id(node["id"], DEFAULT_HANDLE), "resumed")

    # -- start ------------------------------------------------------------------

    def resolve_trigger(self, origin: Workspace, text: str) -> Tuple[Workspace, dict, StartTrigger, str]:
        """Keyword triggers across the organization first, then the origin's default trigger."""
        lowered = (text or "").strip().lower()
        if lowered:
            candidates = [origin]
            if origin.organization_id:
                candidates = workspace_service.get_workspaces_for_organization(self.db, origin.organization_id)
            for workspace in candidates:
                start_node = FlowGraph.from_workspace(workspace).find_start_node()
                for trigger in webhook_triggers(start_node):
                    if lowered in trigger.keywords():
                        return workspace, start_node, trigger, lowered

        start_node = FlowGraph.from_workspace(origin).find_start_node()
        triggers = webhook_triggers(start_node)
        if not triggers:
            raise TriggerNotFoundError(f"Workspace '{origin.id}' has no enabled webhook trigger")
        return origin, start_node, triggers[0], triggers[0].name

    async def _start(self, workspace_id: str, session_key: str, message: ChannelMessage) -> IngestionResult:
        origin = workspace_service.get_workspace(self.db, workspace_id)
        if origin is None:
            raise WorkspaceNotFoundError(f"Workspace '{workspace_id}' not found")

        workspace, start_node, trigger, handle = self.resolve_trigger(origin, message.text)
        if FlowGraph.from_workspace(workspace).find_next_node_id(start_node["id"], handle) is None:
            raise TriggerNotFoundError(f"Start node trigger handle '{handle}' is not connected in '{workspace.name}'")

        logger.info("[%s] Starting flow '%s' via trigger handle '%s'", session_key, workspace.name, handle)
        session = flow_session_service.new_session(session_key, workspace.id, message.flow_context,
                                                   trigger.session_timeout_seconds)
        session.flow_variables = build_initial_variables(message, trigger, handle)
        session.current_node_id = start_node["id"]
        outcome = await self.engine.execute_flow(session, workspace)
        return IngestionResult(status="started", message=f"Flow {outcome}.", session_id=session_key)
