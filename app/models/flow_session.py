import datetime

from sqlalchemy import Column, Integer, String, JSON, DateTime
from app.core.database import Base

class FlowSession(Base):
    __tablename__ = "flow_sessions"

    session_id = Column(String, primary_key=True, index=True)  # e.g. chatwoot_conv_42
    workspace_id = Column(String(36), index=True, nullable=False)
    current_node_id = Column(String, nullable=True)  # None = idle or paused at a dead end
    flow_variables = Column(JSON, nullable=False, default=dict)
    awaiting_input_type = Column(String, nullable=True)
    awaiting_input_details = Column(JSON, nullable=True)
    flow_context = Column(String, nullable=True)  # evolution, chatwoot, dialogy
    session_timeout_seconds = Column(Integer, nullable=False, default=0)
    steps = Column(JSON, nullable=False, default=list)
    last_interaction_at = Column(DateTime, default=datetime.datetime.utcnow)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
