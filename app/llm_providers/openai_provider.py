import json
import logging

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)


async def generate_response(client: AsyncOpenAI, model_name: str, system_prompt: str, chat_history: list,
                            tools: list = None, temperature: float = None, json_output: bool = False):
    """
    One chat completion round.

    Returns {"type": "text", "content": ...} or {"type": "tool_calls", "calls": [...],
    "assistant_message": {...}} where each call is {"id", "name", "parameters"}.
    """
    messages = [{"role": "system", "content": system_prompt}]
    messages.extend(chat_history)

    kwargs = {"model": model_name, "messages": messages}
    if tools:
        kwargs["tools"] = tools
        kwargs["tool_choice"] = "auto"
    if temperature is not None:
        kwargs["temperature"] = temperature
    if json_output:
        kwargs["response_format"] = {"type": "json_object"}

    chat_completion = await client.chat.completions.create(**kwargs)
    response_message = chat_completion.choices[0].message

    if response_message.tool_calls:
        calls = []
        for call in response_message.tool_calls:
            try:
                parameters = json.loads(call.function.arguments or "{}")
            except json.JSONDecodeError:
                logger.warning("Tool '%s' called with invalid JSON arguments: %s", call.function.name, call.function.arguments)
                parameters = {}
            calls.append({"id": call.id, "name": call.function.name, "parameters": parameters})
        assistant_message = {
            "role": "assistant",
            "content": response_message.content or "",
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.function.name, "arguments": call.function.arguments},
                }
                for call in response_message.tool_calls
            ],
        }
        return {"type": "tool_calls", "calls": calls, "assistant_message": assistant_message}

    return {"type": "text", "content": response_message.content or ""}
