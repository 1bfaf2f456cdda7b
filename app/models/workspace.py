import datetime
import uuid

from sqlalchemy import Column, String, JSON, DateTime
from app.core.database import Base

class Workspace(Base):
    __tablename__ = "workspaces"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    organization_id = Column(String, index=True, nullable=True)
    nodes = Column(JSON, nullable=False, default=list)  # [{id, type, title, data}]
    connections = Column(JSON, nullable=False, default=list)  # [{from, to, sourceHandle, targetHandle}]

    # Channel bindings used by the outbound sender
    evolution_instance_id = Column(String, nullable=True)
    chatwoot_instance_id = Column(String, nullable=True)
    dialogy_instance_id = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)
