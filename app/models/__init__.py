from app.models.capability import Capability
from app.models.channel_instance import ChannelInstance
from app.models.flow_log import FlowLog
from app.models.flow_session import FlowSession
from app.models.workspace import Workspace
