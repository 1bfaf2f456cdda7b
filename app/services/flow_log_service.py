import logging

from sqlalchemy.orm import Session

from app.models.flow_log import FlowLog

logger = logging.getLogger(__name__)


def save_flow_log(db: Session, log_type: str, details: dict, workspace_id: str = None,
                  session_id: str = None, node_id: str = None) -> FlowLog:
    entry = FlowLog(
        workspace_id=workspace_id,
        session_id=session_id,
        node_id=node_id,
        log_type=log_type,
        details=details,
    )
    db.add(entry)
    db.commit()
    return entry


def get_logs_for_session(db: Session, session_id: str, log_type: str = None):
    query = db.query(FlowLog).filter(FlowLog.session_id == session_id)
    if log_type:
        query = query.filter(FlowLog.log_type == log_type)
    return query.order_by(FlowLog.id.asc()).all()
