from fastapi import APIRouter

from app.api.v1.endpoints import flow_webhooks, sessions


api_router = APIRouter()

api_router.include_router(flow_webhooks.router, prefix="/flows", tags=["flow-webhooks"])
api_router.include_router(sessions.router, prefix="/flows/sessions", tags=["flow-sessions"])
