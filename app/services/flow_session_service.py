import datetime
from typing import Optional

from sqlalchemy import inspect
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from app.models.flow_session import FlowSession

_JSON_ATTRIBUTES = ("flow_variables", "steps", "awaiting_input_details")


def get_session(db: Session, session_id: str) -> Optional[FlowSession]:
    """
    Retrieves a flow session by its session key, or None.
    """
    return db.query(FlowSession).filter(FlowSession.session_id == session_id).first()


def new_session(session_id: str, workspace_id: str, flow_context: str = None, timeout_seconds: int = 0) -> FlowSession:
    return FlowSession(
        session_id=session_id,
        workspace_id=workspace_id,
        current_node_id=None,
        flow_variables={},
        awaiting_input_type=None,
        awaiting_input_details=None,
        flow_context=flow_context,
        session_timeout_seconds=timeout_seconds or 0,
        steps=[],
        last_interaction_at=datetime.datetime.utcnow(),
        created_at=datetime.datetime.utcnow(),
    )


def save_session(db: Session, session: FlowSession) -> FlowSession:
    """
    Persists the session, bumping last_interaction_at. JSON columns are
    mutated in place by the engine, so they are flagged explicitly.
    """
    session.last_interaction_at = datetime.datetime.utcnow()
    state = inspect(session)
    if state.persistent:
        for attribute in _JSON_ATTRIBUTES:
            flag_modified(session, attribute)
    else:
        db.add(session)
    db.commit()
    return session


def delete_session(db: Session, session_id: str) -> bool:
    deleted = db.query(FlowSession).filter(FlowSession.session_id == session_id).delete()
    db.commit()
    return bool(deleted)


def is_expired(session: FlowSession, now: datetime.datetime = None) -> bool:
    if not session.session_timeout_seconds or session.session_timeout_seconds <= 0:
        return False
    if session.last_interaction_at is None:
        return False
    now = now or datetime.datetime.utcnow()
    deadline = session.last_interaction_at + datetime.timedelta(seconds=session.session_timeout_seconds)
    return deadline < now


def is_paused(session: FlowSession) -> bool:
    return session.current_node_id is None and bool((session.flow_variables or {}).get("__flowPaused"))
