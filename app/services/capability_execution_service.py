"""
Capability execution service.
Routes capability calls (agent tools and capability nodes) to an executor
based on ``execution_config.type``.
"""
import base64
import json
import logging
from typing import Any, Dict

import httpx

from app.core.config import settings
from app.services.flow_variables import resolve_template, substitute_variables

logger = logging.getLogger(__name__)


def _pairs(value) -> Dict[str, str]:
    """Accepts {"k": "v"} or [{"key": "k", "value": "v"}] and returns a dict."""
    if isinstance(value, dict):
        return {str(k): v for k, v in value.items()}
    pairs = {}
    for item in value or []:
        if isinstance(item, dict) and item.get("key"):
            pairs[str(item["key"])] = item.get("value", "")
    return pairs


async def http_request(params: dict) -> Any:
    """Builtin function capability: a plain HTTP request described by its parameters."""
    method = str(params.get("method") or "GET").upper()
    url = params.get("url")
    if not url:
        return {"error": "http_request requires a 'url' parameter"}
    async with httpx.AsyncClient(timeout=settings.HTTP_REQUEST_TIMEOUT_SECONDS) as client:
        try:
            response = await client.request(
                method, url,
                headers=_pairs(params.get("headers")),
                params=_pairs(params.get("query")),
                json=params.get("body") if method not in ("GET", "DELETE") else None,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            return {"error": f"HTTP {e.response.status_code}: {e.response.text}"}
        except httpx.RequestError as e:
            return {"error": f"HTTP request failed: {e}"}
    try:
        return response.json()
    except ValueError:
        return {"raw_output": response.text}


# Registry of builtin function capabilities - maps function name to executor
FUNCTION_REGISTRY = {
    "http_request": http_request,
}


async def _execute_api_capability(config: dict, input_data: dict) -> Any:
    url = substitute_variables(config.get("url", ""), input_data)
    if not url:
        return {"error": "Capability has no URL configured"}
    method = str(config.get("method") or "POST").upper()

    headers = {k: substitute_variables(str(v), input_data) for k, v in _pairs(config.get("headers")).items()}
    query = {k: substitute_variables(str(v), input_data) for k, v in _pairs(config.get("query_params")).items()}

    auth = config.get("auth") or {}
    auth_type = auth.get("type")
    if auth_type == "bearer" and auth.get("token"):
        headers["Authorization"] = f"Bearer {substitute_variables(auth['token'], input_data)}"
    elif auth_type == "basic" and auth.get("username"):
        raw = f"{auth.get('username')}:{auth.get('password', '')}".encode()
        headers["Authorization"] = f"Basic {base64.b64encode(raw).decode()}"
    elif auth_type == "header" and auth.get("header_name"):
        headers[auth["header_name"]] = substitute_variables(str(auth.get("header_value", "")), input_data)

    body = config.get("body") or {}
    body_type = body.get("type")
    request_kwargs: Dict[str, Any] = {}
    if body_type == "form-data":
        request_kwargs["data"] = {k: substitute_variables(str(v), input_data) for k, v in _pairs(body.get("fields")).items()}
    elif body_type == "json":
        template = body.get("content")
        if isinstance(template, str):
            rendered = substitute_variables(template, input_data)
            try:
                request_kwargs["json"] = json.loads(rendered)
            except json.JSONDecodeError:
                return {"error": f"Invalid JSON body: {rendered}"}
        else:
            request_kwargs["json"] = resolve_template(template, input_data)
    elif body_type == "text":
        request_kwargs["content"] = substitute_variables(str(body.get("content", "")), input_data)
        headers.setdefault("Content-Type", "text/plain")
    elif method not in ("GET", "DELETE"):
        request_kwargs["json"] = input_data

    async with httpx.AsyncClient(timeout=settings.HTTP_REQUEST_TIMEOUT_SECONDS) as client:
        try:
            response = await client.request(method, url, headers=headers, params=query or None, **request_kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            return {"error": f"HTTP {e.response.status_code}: {e.response.text}"}
        except httpx.RequestError as e:
            return {"error": f"HTTP request failed: {e}"}
    try:
        return response.json()
    except ValueError:
        return {"raw_output": response.text}


async def execute_capability(capability, input_data: dict) -> Any:
    """
    Executes a capability with the given input.

    Args:
        capability: Capability model (or any object with slug and execution_config)
        input_data: Parameters produced by the agent or the capability node

    Returns:
        The capability result, or {"error": ...} when it failed
    """
    config = capability.execution_config or {}
    execution_type = config.get("type")
    input_data = input_data or {}
    logger.info("Executing capability '%s' (%s)", capability.slug, execution_type)
    try:
        if execution_type == "api":
            return await _execute_api_capability(config, input_data)
        if execution_type == "function":
            function = FUNCTION_REGISTRY.get(config.get("function_name"))
            if function is None:
                return {"error": f"Unknown function '{config.get('function_name')}'"}
            return await function({**(config.get("defaults") or {}), **input_data})
        return {"error": f"Unsupported execution type '{execution_type}'"}
    except Exception as e:
        logger.exception("Capability '%s' failed", capability.slug)
        return {"error": f"Error executing capability: {e}"}
