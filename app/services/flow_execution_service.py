import logging
from typing import Optional

from sqlalchemy.orm import Session

from app.core.exceptions import ChannelSendError
from app.models.flow_session import FlowSession
from app.models.workspace import Workspace
from app.services import capability_service, channel_service, flow_log_service, flow_session_service, workspace_service
from app.services.graph_execution_engine import FlowGraph, normalize_node_type
from app.services.llm_tool_service import LLMToolService
from app.services.node_executors import NodeContext, get_executor
from app.services.node_executors.base import SUSPEND, TERMINATE

logger = logging.getLogger(__name__)

PAUSED_FLAG = "__flowPaused"

SUSPENDED = "suspended"
PAUSED = "paused"
TERMINATED = "terminated"
DISCARDED = "discarded"


class FlowExecutionService:
    """
    Drives a session through its workspace graph until it has to wait.

    Every run ends in exactly one persisted state: positioned on a node and
    awaiting input, paused at a dead end, or deleted (end-flow reached or the
    session pointed at a node that no longer exists).
    """

    def __init__(self, db: Session, runtime):
        self.db = db
        self.runtime = runtime
        self.settings = runtime.settings
        self.flow_session_service = flow_session_service
        self.workspace_service = workspace_service
        self.channel_service = channel_service
        self.capability_service = capability_service
        self.flow_log_service = flow_log_service
        self.llm_service = LLMToolService(runtime)

    async def send_text(self, session: FlowSession, workspace: Workspace, text: str, node_id: Optional[str] = None):
        result = await self.channel_service.send_message(self.db, session, workspace, text)
        if not result.success:
            raise ChannelSendError(result.error or "Message delivery failed", node_id=node_id)

    async def send_media(self, session: FlowSession, workspace: Workspace, media_url: str, media_type: str = "image",
                         caption: Optional[str] = None, node_id: Optional[str] = None):
        result = await self.channel_service.send_media(self.db, session, workspace, media_url, media_type, caption)
        if not result.success:
            raise ChannelSendError(result.error or "Media delivery failed", node_id=node_id)

    def _pause(self, session: FlowSession):
        session.current_node_id = None
        session.awaiting_input_type = None
        session.awaiting_input_details = None
        session.flow_variables[PAUSED_FLAG] = True

    async def execute_flow(self, session: FlowSession, workspace: Workspace) -> str:
        graph = FlowGraph.from_workspace(workspace)
        if session.flow_variables is None:
            session.flow_variables = {}
        if session.steps is None:
            session.steps = []
        session.flow_variables.pop(PAUSED_FLAG, None)
        session.awaiting_input_type = None
        session.awaiting_input_details = None

        max_steps = self.settings.FLOW_MAX_STEPS_PER_RUN
        executed = 0
        current_node_id = session.current_node_id
        logger.info("[%s] Starting execution at node '%s'", session.session_id, current_node_id)

        while current_node_id:
            node = graph.get_node(current_node_id)
            if node is None:
                logger.error("[%s] Node '%s' not found in workspace '%s'. Deleting session.",
                             session.session_id, current_node_id, workspace.id)
                self.flow_session_service.delete_session(self.db, session.session_id)
                return DISCARDED

            if executed >= max_steps:
                logger.error("[%s] Aborting run after %s steps (possible loop at node '%s')",
                             session.session_id, executed, current_node_id)
                break
            executed += 1

            session.current_node_id = current_node_id
            session.steps.append(current_node_id)
            node_type = normalize_node_type(node.get("type"))
            logger.debug("[%s] Executing node '%s' (%s - %s)", session.session_id, current_node_id, node_type, node.get("title"))

            ctx = NodeContext(
                db=self.db, runtime=self.runtime, session=session, workspace=workspace,
                graph=graph, node=node, engine=self,
            )
            try:
                transition = await get_executor(node_type).execute(ctx)
            except ChannelSendError as e:
                logger.error("[%s] Message delivery failed at node '%s': %s", session.session_id, current_node_id, e)
                self.flow_session_service.save_session(self.db, session)
                raise

            if transition.kind == TERMINATE:
                logger.info("[%s] Flow ended at node '%s'", session.session_id, current_node_id)
                self.flow_session_service.delete_session(self.db, session.session_id)
                return TERMINATED

            if transition.kind == SUSPEND:
                session.awaiting_input_type = transition.input_type.value
                session.awaiting_input_details = transition.details.model_dump()
                self.flow_session_service.save_session(self.db, session)
                logger.info("[%s] Waiting for %s at node '%s'", session.session_id, transition.input_type.value, current_node_id)
                return SUSPENDED

            current_node_id = graph.find_next_node_id(current_node_id, transition.handle)

        self._pause(session)
        self.flow_session_service.save_session(self.db, session)
        logger.info("[%s] Execution reached a dead end. Session paused.", session.session_id)
        return PAUSED
