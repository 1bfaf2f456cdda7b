import enum
from typing import Optional, Dict, Any, List
from pydantic import BaseModel


class AgentRoute(str, enum.Enum):
    SUPPORT = "support"
    BILLING = "billing"
    EXIT = "exit"
    COMMERCIAL = "commercial"
    UNKNOWN = "unknown"


class AgentRouteDecision(BaseModel):
    route: AgentRoute
    confidence: float
    matched_signals: List[str] = []
    should_exit_flow: bool = False
    source: str = "lexical"  # lexical, classifier


class ReplyGuardResult(BaseModel):
    text: str
    changed: bool = False
    reason: Optional[str] = None  # blocked, empty, too_short


class AgentConversationState(BaseModel):
    last_route: Optional[AgentRoute] = None
    slots: Dict[str, Any] = {}
    updated_at: Optional[str] = None
