from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.dependencies import get_db, get_runtime
from app.schemas.flow_session import FlowSession
from app.services import flow_session_service

router = APIRouter()


@router.get("/{session_id}", response_model=FlowSession)
def read_session(session_id: str, db: Session = Depends(get_db)):
    session = flow_session_service.get_session(db, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@router.delete("/{session_id}")
async def end_session(session_id: str, db: Session = Depends(get_db), runtime=Depends(get_runtime)):
    async with runtime.session_guard(session_id):
        if not flow_session_service.delete_session(db, session_id):
            raise HTTPException(status_code=404, detail="Session not found")
    return {"ok": True}
