import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.flow_session import FlowSession
from app.models.workspace import Workspace
from app.services import workspace_service

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    success: bool
    error: Optional[str] = None


async def _post(url: str, headers: dict, payload: dict) -> SendResult:
    async with httpx.AsyncClient(timeout=settings.HTTP_REQUEST_TIMEOUT_SECONDS) as client:
        try:
            response = await client.post(url, headers=headers, json=payload)
            response.raise_for_status()
            return SendResult(success=True)
        except httpx.HTTPStatusError as e:
            logger.error("Channel API returned %s: %s", e.response.status_code, e.response.text)
            return SendResult(success=False, error=f"HTTP {e.response.status_code}: {e.response.text}")
        except httpx.RequestError as e:
            logger.error("Channel API request failed: %s", e)
            return SendResult(success=False, error=f"Request failed: {e}")


async def send_evolution_message(base_url: str, api_key: str, instance_name: str, recipient_jid: str, text: str) -> SendResult:
    """
    Sends a text message through an Evolution API (WhatsApp) instance.
    """
    if not all([base_url, instance_name, recipient_jid]):
        return SendResult(success=False, error="Missing Evolution API parameters (base_url, instance_name, recipient)")
    url = f"{base_url.rstrip('/')}/message/sendText/{instance_name}"
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["apikey"] = api_key
    payload = {"number": recipient_jid.split("@")[0], "text": text}
    return await _post(url, headers, payload)


SUPPORTED_MEDIA_TYPES = ("image", "video", "document", "audio")


async def send_evolution_media(base_url: str, api_key: str, instance_name: str, recipient_jid: str,
                               media_url: str, media_type: str = "image", caption: Optional[str] = None) -> SendResult:
    """
    Sends an image, video, audio or document by URL through an Evolution API instance.
    """
    if not all([base_url, instance_name, recipient_jid]):
        return SendResult(success=False, error="Missing Evolution API parameters (base_url, instance_name, recipient)")
    if media_type not in SUPPORTED_MEDIA_TYPES:
        return SendResult(success=False, error=f"Unsupported media type '{media_type}'")
    if not media_url:
        return SendResult(success=False, error="Missing media URL")
    url = f"{base_url.rstrip('/')}/message/sendMedia/{instance_name}"
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["apikey"] = api_key
    payload = {"number": recipient_jid.split("@")[0], "mediatype": media_type, "media": media_url}
    if caption:
        payload["caption"] = caption
        if media_type == "document":
            payload["fileName"] = caption
    return await _post(url, headers, payload)


async def send_chatwoot_message(base_url: str, api_access_token: str, account_id, conversation_id, text: str) -> SendResult:
    if not all([base_url, api_access_token, account_id, conversation_id]):
        return SendResult(success=False, error="Missing Chatwoot parameters (base_url, token, account_id, conversation_id)")
    url = f"{base_url.rstrip('/')}/api/v1/accounts/{account_id}/conversations/{conversation_id}/messages"
    headers = {"Content-Type": "application/json", "api_access_token": api_access_token}
    payload = {"content": text, "message_type": "outgoing", "private": False}
    return await _post(url, headers, payload)


async def send_dialogy_message(base_url: str, api_key: str, chat_id, text: str) -> SendResult:
    if not all([base_url, api_key, chat_id]):
        return SendResult(success=False, error="Missing Dialogy parameters (base_url, api_key, chat_id)")
    url = f"{base_url.rstrip('/')}/api/agent/messages"
    headers = {"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"}
    payload = {"chatId": chat_id, "content": text}
    return await _post(url, headers, payload)


async def send_message(db: Session, session: FlowSession, workspace: Workspace, text: str) -> SendResult:
    """
    Delivers one text message to the channel the session came from.

    Sessions without a channel context (manual or test triggers) only log the message.
    """
    if not text or not text.strip():
        return SendResult(success=True)

    variables = session.flow_variables or {}
    channel = session.flow_context

    if channel == "evolution":
        instance = workspace_service.get_channel_instance(db, workspace.evolution_instance_id)
        if not instance:
            return SendResult(success=False, error="Workspace has no Evolution instance configured")
        return await send_evolution_message(
            instance.base_url, instance.api_key, instance.instance_name,
            str(variables.get("whatsapp_sender_jid") or ""), text,
        )

    if channel == "chatwoot":
        instance = workspace_service.get_channel_instance(db, workspace.chatwoot_instance_id)
        if not instance:
            return SendResult(success=False, error="Workspace has no Chatwoot instance configured")
        return await send_chatwoot_message(
            instance.base_url, instance.api_key,
            variables.get("chatwoot_account_id"), variables.get("chatwoot_conversation_id"), text,
        )

    if channel == "dialogy":
        instance = workspace_service.get_channel_instance(db, workspace.dialogy_instance_id)
        if not instance:
            return SendResult(success=False, error="Workspace has no Dialogy instance configured")
        return await send_dialogy_message(
            instance.base_url, instance.api_key, variables.get("dialogy_conversation_id"), text,
        )

    logger.info("[%s] (no channel) %s", session.session_id, text)
    return SendResult(success=True)


async def send_media(db: Session, session: FlowSession, workspace: Workspace, media_url: str,
                     media_type: str = "image", caption: Optional[str] = None) -> SendResult:
    """
    Delivers a media message. Only Evolution sessions carry real attachments;
    other channels get the caption and the link as a text message.
    """
    if session.flow_context == "evolution":
        instance = workspace_service.get_channel_instance(db, workspace.evolution_instance_id)
        if not instance:
            return SendResult(success=False, error="Workspace has no Evolution instance configured")
        variables = session.flow_variables or {}
        return await send_evolution_media(
            instance.base_url, instance.api_key, instance.instance_name,
            str(variables.get("whatsapp_sender_jid") or ""), media_url, media_type, caption,
        )

    text = "\n".join(part for part in (caption, media_url) if part)
    return await send_message(db, session, workspace, text)
