import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Type

from sqlalchemy.orm import Session

from app.models.flow_session import FlowSession
from app.models.workspace import Workspace
from app.schemas.flow_session import AwaitingInputDetails, AwaitingInputType
from app.services.flow_variables import get_path, resolve_template, set_path, substitute_variables
from app.services.graph_execution_engine import DEFAULT_HANDLE, FlowGraph

logger = logging.getLogger(__name__)

ADVANCE = "advance"
SUSPEND = "suspend"
TERMINATE = "terminate"


@dataclass
class Transition:
    """What the engine does after a node ran."""
    kind: str
    handle: Optional[str] = DEFAULT_HANDLE
    input_type: Optional[AwaitingInputType] = None
    details: Optional[AwaitingInputDetails] = None

    @classmethod
    def advance(cls, handle: Optional[str] = DEFAULT_HANDLE) -> "Transition":
        return cls(kind=ADVANCE, handle=handle or DEFAULT_HANDLE)

    @classmethod
    def suspend(cls, input_type: AwaitingInputType, details: AwaitingInputDetails) -> "Transition":
        return cls(kind=SUSPEND, handle=None, input_type=input_type, details=details)

    @classmethod
    def terminate(cls) -> "Transition":
        return cls(kind=TERMINATE, handle=None)


@dataclass
class NodeContext:
    db: Session
    runtime: Any
    session: FlowSession
    workspace: Workspace
    graph: FlowGraph
    node: dict
    engine: Any

    @property
    def node_id(self) -> str:
        return self.node["id"]

    @property
    def data(self) -> dict:
        return self.node.get("data") or {}

    @property
    def variables(self) -> Dict[str, Any]:
        if self.session.flow_variables is None:
            self.session.flow_variables = {}
        return self.session.flow_variables

    def render(self, template: Any) -> Any:
        return substitute_variables(template, self.variables)

    def resolve(self, template: Any) -> Any:
        return resolve_template(template, self.variables)

    def get_variable(self, path: str, default: Any = None) -> Any:
        return get_path(self.variables, path, default)

    def set_variable(self, path: Optional[str], value: Any) -> None:
        if not path:
            return
        set_path(self.variables, str(path).strip(), value)

    async def send(self, text: str) -> None:
        """Sends through the session's channel; raises ChannelSendError on failure."""
        await self.engine.send_text(self.session, self.workspace, text, node_id=self.node_id)

    async def send_media(self, media_url: str, media_type: str = "image", caption: Optional[str] = None) -> None:
        await self.engine.send_media(self.session, self.workspace, media_url, media_type, caption, node_id=self.node_id)


class NodeExecutor:
    node_type: str = ""

    async def execute(self, ctx: NodeContext) -> Transition:
        raise NotImplementedError


class DefaultNodeExecutor(NodeExecutor):
    """Unknown and configuration-only nodes pass straight through."""

    async def execute(self, ctx: NodeContext) -> Transition:
        logger.info("Node '%s' has no executor for type '%s'; advancing", ctx.node_id, ctx.node.get("type"))
        return Transition.advance()


NODE_EXECUTORS: Dict[str, NodeExecutor] = {}


def register(executor_class: Type[NodeExecutor]) -> Type[NodeExecutor]:
    NODE_EXECUTORS[executor_class.node_type] = executor_class()
    return executor_class


def get_executor(node_type: str) -> NodeExecutor:
    return NODE_EXECUTORS.get(node_type) or DEFAULT_EXECUTOR


DEFAULT_EXECUTOR = DefaultNodeExecutor()
