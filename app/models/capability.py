import uuid

from sqlalchemy import Boolean, Column, String, Text, JSON
from app.core.database import Base

class Capability(Base):
    __tablename__ = "capabilities"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    workspace_id = Column(String(36), index=True, nullable=True)  # None = shared across workspaces
    slug = Column(String, index=True, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    input_schema = Column(JSON, nullable=True)  # JSON schema for the tool parameters
    execution_config = Column(JSON, nullable=False, default=dict)  # {"type": "api" | "function", ...}
    is_active = Column(Boolean, nullable=False, default=True)
