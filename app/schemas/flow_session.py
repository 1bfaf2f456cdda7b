import enum
from typing import Optional, Dict, Any, List
from pydantic import BaseModel
from datetime import datetime


class AwaitingInputType(str, enum.Enum):
    INPUT = "input"
    DATE_INPUT = "date-input"
    FILE_UPLOAD = "file-upload"
    RATING_INPUT = "rating-input"
    OPTION = "option"
    AGENT = "intelligent-agent"


class AwaitingInputDetails(BaseModel):
    node_id: str
    variable_to_save: str
    options: Optional[List[str]] = None
    api_response_as_input: bool = False
    api_response_path_for_value: Optional[str] = None


class FlowSessionBase(BaseModel):
    session_id: str
    workspace_id: str
    current_node_id: Optional[str] = None
    flow_variables: Dict[str, Any] = {}
    awaiting_input_type: Optional[AwaitingInputType] = None
    awaiting_input_details: Optional[AwaitingInputDetails] = None
    flow_context: Optional[str] = None
    session_timeout_seconds: int = 0


class FlowSession(FlowSessionBase):
    steps: List[str] = []
    last_interaction_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class IngestionResult(BaseModel):
    status: str  # ignored, paused, started, resumed, reprompted, api_response_bound
    message: str
    session_id: Optional[str] = None
