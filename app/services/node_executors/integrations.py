"""
Nodes that call out of the flow: user scripts, HTTP APIs, workspace
capabilities and single-shot text generation. Failures never stop the flow;
they are stored as ``{"error": message}`` in the node's output variable.
"""
import base64
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from app.core.config import settings
from app.core.exceptions import FlowRuntimeError
from app.services import capability_execution_service, code_sandbox_service
from app.services.flow_variables import get_path
from app.services.llm_tool_service import GenerationRequest
from app.services.node_executors.base import NodeContext, NodeExecutor, Transition, register

logger = logging.getLogger(__name__)

BODYLESS_METHODS = ("GET", "HEAD", "DELETE")


@register
class CodeExecutionNodeExecutor(NodeExecutor):
    node_type = "code-execution"

    async def execute(self, ctx: NodeContext) -> Transition:
        code = ctx.data.get("code") or ""
        output_variable = ctx.data.get("output_variable")
        if not code.strip() or not output_variable:
            logger.warning("Code node '%s' has no script or output variable", ctx.node_id)
            return Transition.advance()

        try:
            outcome = await code_sandbox_service.execute_script(code, ctx.variables, ctx.data.get("timeout_ms"))
            for line in outcome.get("logs") or []:
                logger.info("[Code %s] %s", ctx.node_id, line)
            ctx.set_variable(output_variable, outcome.get("result"))
        except FlowRuntimeError as e:
            logger.warning("Code node '%s' failed: %s", ctx.node_id, e)
            ctx.set_variable(output_variable, {"error": str(e)})
        return Transition.advance()


def _pairs(ctx: NodeContext, items) -> List[tuple]:
    pairs = []
    for item in items or []:
        if isinstance(item, dict) and item.get("key"):
            pairs.append((str(ctx.render(item["key"])), str(ctx.render(item.get("value", "")))))
    return pairs


def build_api_request(ctx: NodeContext) -> Dict[str, Any]:
    """Translates an api-call node into ``httpx.request`` keyword arguments."""
    data = ctx.data
    method = str(data.get("method") or "GET").upper()
    headers = dict(_pairs(ctx, data.get("headers")))

    auth_type = data.get("auth_type")
    if auth_type == "bearer" and data.get("auth_bearer_token"):
        headers["Authorization"] = f"Bearer {ctx.render(data['auth_bearer_token'])}"
    elif auth_type == "basic" and data.get("auth_basic_user"):
        credentials = f"{ctx.render(data['auth_basic_user'])}:{ctx.render(data.get('auth_basic_password') or '')}"
        headers["Authorization"] = f"Basic {base64.b64encode(credentials.encode()).decode()}"

    request = {
        "method": method,
        "url": str(ctx.render(data.get("url") or "")),
        "headers": headers,
        "params": _pairs(ctx, data.get("query_params")) or None,
    }
    if method in BODYLESS_METHODS:
        return request

    body_type = data.get("body_type")
    if body_type == "json" and data.get("body_json"):
        rendered = ctx.render(data["body_json"]) if isinstance(data["body_json"], str) else ctx.resolve(data["body_json"])
        request["content"] = rendered if isinstance(rendered, str) else json.dumps(rendered, ensure_ascii=False)
        if not any(k.lower() == "content-type" for k in headers):
            headers["Content-Type"] = "application/json"
    elif body_type == "raw" and data.get("body_raw"):
        request["content"] = str(ctx.render(data["body_raw"]))
    elif body_type == "form":
        request["data"] = dict(_pairs(ctx, data.get("body_form")))
    return request


def apply_response_mappings(ctx: NodeContext, response_data: Any) -> None:
    for mapping in ctx.data.get("response_mappings") or []:
        if not isinstance(mapping, dict) or not mapping.get("json_path") or not mapping.get("flow_variable"):
            continue
        value = get_path(response_data, mapping["json_path"])
        if mapping.get("extract_as") == "list" and not isinstance(value, list):
            value = [] if value is None else [value]
        try:
            ctx.set_variable(mapping["flow_variable"], value)
        except ValueError as e:
            logger.warning("api-call node '%s': mapping '%s' failed: %s", ctx.node_id, mapping["flow_variable"], e)


@register
class ApiCallNodeExecutor(NodeExecutor):
    node_type = "api-call"

    async def execute(self, ctx: NodeContext) -> Transition:
        output_variable = ctx.data.get("output_variable")
        request = build_api_request(ctx)
        response_data: Any = None
        status_code: Optional[int] = None
        error: Optional[dict] = None

        try:
            if not request["url"]:
                raise ValueError("API call node has no URL")
            async with httpx.AsyncClient(timeout=settings.HTTP_REQUEST_TIMEOUT_SECONDS) as client:
                response = await client.request(**request)
            status_code = response.status_code
            try:
                response_data = response.json()
            except ValueError:
                response_data = response.text
            if response.is_error:
                raise ValueError(f"API returned status {response.status_code}")

            if output_variable:
                value = response_data
                if ctx.data.get("response_path"):
                    value = get_path(response_data, ctx.data["response_path"])
                ctx.set_variable(output_variable, value)
            apply_response_mappings(ctx, response_data)
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            logger.warning("[%s] API call from node '%s' failed: %s", ctx.session.session_id, ctx.node_id, e)
            error = {"error": str(e)}
            if output_variable:
                ctx.set_variable(output_variable, error)
        finally:
            try:
                ctx.engine.flow_log_service.save_flow_log(
                    ctx.db, "api-call",
                    {
                        "node_title": ctx.node.get("title"),
                        "request": {"method": request["method"], "url": request["url"], "params": request.get("params")},
                        "status_code": status_code,
                        "response": response_data,
                        "error": error,
                    },
                    workspace_id=ctx.workspace.id, session_id=ctx.session.session_id, node_id=ctx.node_id,
                )
            except Exception as e:
                logger.error("Failed to save API call log: %s", e)
                ctx.db.rollback()
        return Transition.advance()


@register
class CapabilityNodeExecutor(NodeExecutor):
    node_type = "capability"

    async def execute(self, ctx: NodeContext) -> Transition:
        capability_service = ctx.engine.capability_service
        capability = None
        if ctx.data.get("capability_id"):
            capability = capability_service.get_capability(ctx.db, ctx.data["capability_id"])
        elif ctx.data.get("capability_slug"):
            capability = capability_service.get_capability_by_slug(ctx.db, ctx.data["capability_slug"], ctx.workspace.id)

        if capability is None:
            result = {"error": "Capability not found"}
        else:
            result = await capability_execution_service.execute_capability(capability, ctx.resolve(ctx.data.get("input") or {}))
        ctx.set_variable(ctx.data.get("output_variable"), result)
        return Transition.advance()


@register
class AiTextGenerationNodeExecutor(NodeExecutor):
    node_type = "ai-text-generation"

    async def execute(self, ctx: NodeContext) -> Transition:
        output_variable = ctx.data.get("output_variable")
        prompt = ctx.render(ctx.data.get("prompt_text") or "")
        if not output_variable or not prompt:
            return Transition.advance()
        request = GenerationRequest(
            model=ctx.data.get("model") or settings.AGENT_LLM_MODEL,
            system_prompt=ctx.render(ctx.data.get("system_prompt") or "You are a helpful assistant."),
            messages=[{"role": "user", "content": prompt}],
            temperature=ctx.data.get("temperature"),
        )
        try:
            result = await ctx.engine.llm_service.generate(request)
            ctx.set_variable(output_variable, result.text)
        except FlowRuntimeError as e:
            logger.warning("ai-text-generation node '%s' failed: %s", ctx.node_id, e)
            ctx.set_variable(output_variable, {"error": str(e)})
        return Transition.advance()
