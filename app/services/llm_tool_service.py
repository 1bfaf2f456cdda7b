import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from app.core.exceptions import GenerationError
from app.llm_providers import openai_provider

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict], Awaitable[Any]]

# Providers speaking the OpenAI chat-completions protocol through the runtime client
OPENAI_COMPATIBLE_PROVIDERS = {"openai", "groq", "openrouter", "local"}


@dataclass
class AgentTool:
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: ToolHandler

    def to_openai(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }


@dataclass
class GenerationRequest:
    model: str
    system_prompt: str
    messages: List[dict] = field(default_factory=list)
    tools: List[AgentTool] = field(default_factory=list)
    temperature: Optional[float] = None
    json_output: bool = False


@dataclass
class GenerationResult:
    text: str
    tools_called: List[str] = field(default_factory=list)


def split_model(model: str):
    """'openai/gpt-4o-mini' -> ('openai', 'gpt-4o-mini'); bare names default to openai."""
    if model and "/" in model:
        provider, model_name = model.split("/", 1)
        return provider.lower(), model_name
    return "openai", model


class LLMToolService:
    """Generation capability: one prompt plus tools in, final text and called tool names out."""

    def __init__(self, runtime):
        self.runtime = runtime

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        provider, model_name = split_model(request.model or self.runtime.settings.AGENT_LLM_MODEL)
        if provider not in OPENAI_COMPATIBLE_PROVIDERS:
            raise GenerationError(f"Unsupported LLM provider '{provider}'")
        client = self.runtime.get_llm_client()
        if client is None:
            raise GenerationError("No LLM API key configured")

        tools_by_name = {tool.name: tool for tool in request.tools}
        formatted_tools = [tool.to_openai() for tool in request.tools]
        history = list(request.messages)
        tools_called: List[str] = []

        max_rounds = max(1, self.runtime.settings.AGENT_MAX_TOOL_ROUNDS)
        for round_number in range(max_rounds + 1):
            # The last round runs without tools so the model must answer in text.
            offer_tools = formatted_tools if round_number < max_rounds else None
            try:
                response = await openai_provider.generate_response(
                    client, model_name, request.system_prompt, history,
                    tools=offer_tools, temperature=request.temperature, json_output=request.json_output,
                )
            except Exception as e:
                raise GenerationError(f"LLM provider error: {e}") from e

            if response["type"] == "text":
                return GenerationResult(text=response["content"], tools_called=tools_called)

            history.append(response["assistant_message"])
            for call in response["calls"]:
                tools_called.append(call["name"])
                tool = tools_by_name.get(call["name"])
                if tool is None:
                    result = {"error": f"Tool '{call['name']}' is not available. Choose from: {', '.join(tools_by_name)}"}
                else:
                    try:
                        result = await tool.handler(call["parameters"])
                    except Exception as e:
                        logger.warning("Tool '%s' raised: %s", call["name"], e)
                        result = {"error": str(e)}
                history.append({
                    "role": "tool",
                    "tool_call_id": call["id"],
                    "content": json.dumps(result, ensure_ascii=False, default=str),
                })

        raise GenerationError("LLM did not produce a text answer")
