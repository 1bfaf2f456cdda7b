import uuid

from sqlalchemy import Column, String
from app.core.database import Base

class ChannelInstance(Base):
    __tablename__ = "channel_instances"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    kind = Column(String, nullable=False)  # evolution, chatwoot, dialogy
    name = Column(String, nullable=True)
    base_url = Column(String, nullable=False)
    api_key = Column(String, nullable=True)
    instance_name = Column(String, nullable=True)  # evolution only
