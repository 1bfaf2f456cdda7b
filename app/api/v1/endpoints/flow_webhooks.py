import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.core.dependencies import get_db, get_runtime
from app.core.exceptions import (
    ChannelSendError, SessionNotFoundError, TriggerNotFoundError, WorkspaceNotFoundError,
)
from app.schemas.flow_session import IngestionResult
from app.schemas.workspace import WebhookInfo
from app.services import workspace_service
from app.services.graph_execution_engine import FlowGraph
from app.services.webhook_ingestion_service import WebhookIngestionService, webhook_triggers

logger = logging.getLogger(__name__)

router = APIRouter()


async def _read_body(request: Request):
    raw = await request.body()
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return {"raw_body": text}


@router.api_route("/webhook/{workspace_id}", methods=["POST", "PUT", "PATCH", "DELETE"], response_model=IngestionResult)
async def receive_webhook(
    workspace_id: str,
    request: Request,
    db: Session = Depends(get_db),
    runtime=Depends(get_runtime),
):
    body = await _read_body(request)
    try:
        return await WebhookIngestionService(db, runtime).process_webhook(workspace_id, body)
    except (WorkspaceNotFoundError, TriggerNotFoundError, SessionNotFoundError) as e:
        logger.warning("Webhook for workspace '%s' rejected: %s", workspace_id, e)
        raise HTTPException(status_code=404, detail=str(e))
    except ChannelSendError as e:
        raise HTTPException(status_code=500, detail=f"Message delivery failed: {e}")
    except Exception as e:
        logger.exception("Unexpected error handling webhook for workspace '%s'", workspace_id)
        db.rollback()
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/webhook/{workspace_id}", response_model=WebhookInfo)
def get_webhook_info(workspace_id: str, db: Session = Depends(get_db)):
    workspace = workspace_service.get_workspace(db, workspace_id)
    if workspace is None:
        raise HTTPException(status_code=404, detail="Workspace not found")
    start_node = FlowGraph.from_workspace(workspace).find_start_node()
    return WebhookInfo(workspace_id=workspace.id, workspace_name=workspace.name, triggers=webhook_triggers(start_node))
