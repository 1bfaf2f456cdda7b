from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field
from datetime import datetime


class FlowNode(BaseModel):
    id: str
    type: str
    title: Optional[str] = None
    data: Dict[str, Any] = {}


class Connection(BaseModel):
    from_node: str = Field(alias="from")
    to: str
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")
    target_handle: Optional[str] = Field(default=None, alias="targetHandle")

    class Config:
        populate_by_name = True


class VariableMapping(BaseModel):
    json_path: str
    flow_variable: str


class StartTrigger(BaseModel):
    name: str = "default"
    type: str = "webhook"
    enabled: bool = True
    keyword: Optional[str] = None  # comma separated, matched case-insensitively
    variable_mappings: List[VariableMapping] = []
    session_timeout_seconds: int = 0

    def keywords(self) -> List[str]:
        if not self.keyword:
            return []
        return [k.strip().lower() for k in self.keyword.split(",") if k.strip()]


class WorkspaceBase(BaseModel):
    name: str
    organization_id: Optional[str] = None
    nodes: List[FlowNode] = []
    connections: List[Connection] = []
    evolution_instance_id: Optional[str] = None
    chatwoot_instance_id: Optional[str] = None
    dialogy_instance_id: Optional[str] = None


class WorkspaceCreate(WorkspaceBase):
    pass


class Workspace(WorkspaceBase):
    id: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WebhookInfo(BaseModel):
    workspace_id: str
    workspace_name: str
    triggers: List[StartTrigger] = []
