import datetime

from sqlalchemy import Column, Integer, String, JSON, DateTime
from app.core.database import Base

class FlowLog(Base):
    __tablename__ = "flow_logs"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String(36), index=True, nullable=True)
    session_id = Column(String, index=True, nullable=True)
    node_id = Column(String, nullable=True)
    log_type = Column(String, nullable=False)  # api-call, webhook
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
