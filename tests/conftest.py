import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app import models  # noqa: F401
from app.core.config import settings
from app.core.database import Base
from app.core.runtime import FlowRuntime
from app.models.workspace import Workspace
from app.services import channel_service
from app.services.channel_service import SendResult


@pytest.fixture
def db_engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(db_engine):
    TestingSession = sessionmaker(bind=db_engine, autocommit=False, autoflush=False, expire_on_commit=False)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def test_settings():
    return settings.model_copy(update={
        "AGENT_BUBBLE_DELAY_MS": 0,
        "OPENAI_API_KEY": "",
        "FLOW_MAX_STEPS_PER_RUN": 50,
    })


@pytest_asyncio.fixture
async def runtime(test_settings):
    flow_runtime = FlowRuntime(test_settings)
    yield flow_runtime
    await flow_runtime.close()


@pytest.fixture
def sent_messages(monkeypatch):
    """Captures outbound channel messages instead of calling the channel APIs."""
    sent = []

    async def fake_send_message(db, session, workspace, text):
        sent.append(text)
        return SendResult(success=True)

    monkeypatch.setattr(channel_service, "send_message", fake_send_message)
    return sent


@pytest.fixture
def make_workspace(db):
    def _make(nodes, connections, name="Test flow", organization_id=None):
        workspace = Workspace(name=name, organization_id=organization_id, nodes=nodes, connections=connections)
        db.add(workspace)
        db.commit()
        return workspace
    return _make


def start_node(triggers=None, node_id="start"):
    if triggers is None:
        triggers = [{"name": "default", "type": "webhook", "enabled": True}]
    return {"id": node_id, "type": "start", "title": "Start", "data": {"triggers": triggers}}


def link(source, target, source_handle=None, target_handle=None):
    connection = {"from": source, "to": target}
    if source_handle:
        connection["sourceHandle"] = source_handle
    if target_handle:
        connection["targetHandle"] = target_handle
    return connection


def evolution_payload(text, jid="5511999990000@s.whatsapp.net", from_me=False):
    return {
        "event": "messages.upsert",
        "data": {
            "key": {"remoteJid": jid, "fromMe": from_me},
            "message": {"conversation": text},
        },
    }
