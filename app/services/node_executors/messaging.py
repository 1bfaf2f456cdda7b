"""
Conversational nodes: the ones that talk to the contact or wait for a reply.
"""
import asyncio
import logging
from typing import List

from app.schemas.flow_session import AwaitingInputDetails, AwaitingInputType
from app.services.node_executors.base import NodeContext, NodeExecutor, Transition, register

logger = logging.getLogger(__name__)

TRIGGER_HANDLE_VARIABLE = "_triggerHandle"
OPTION_REPLY_HINT = "Reply with the number of the option or its exact text."


@register
class StartNodeExecutor(NodeExecutor):
    node_type = "start"

    async def execute(self, ctx: NodeContext) -> Transition:
        handle = ctx.variables.pop(TRIGGER_HANDLE_VARIABLE, None)
        return Transition.advance(handle)


@register
class MessageNodeExecutor(NodeExecutor):
    node_type = "message"

    async def execute(self, ctx: NodeContext) -> Transition:
        await ctx.send(ctx.render(ctx.data.get("text") or ""))
        return Transition.advance()


@register
class WhatsAppTextNodeExecutor(NodeExecutor):
    node_type = "whatsapp-text"

    async def execute(self, ctx: NodeContext) -> Transition:
        await ctx.send(ctx.render(ctx.data.get("text_message") or ctx.data.get("text") or ""))
        return Transition.advance()


@register
class WhatsAppMediaNodeExecutor(NodeExecutor):
    node_type = "whatsapp-media"

    async def execute(self, ctx: NodeContext) -> Transition:
        media_url = str(ctx.render(ctx.data.get("media_url") or "")).strip()
        if not media_url:
            logger.warning("Media node '%s' has no media URL; advancing", ctx.node_id)
            return Transition.advance()
        caption = ctx.render(ctx.data.get("caption") or "") or None
        await ctx.send_media(media_url, ctx.data.get("media_type") or "image", caption)
        return Transition.advance()


@register
class DialogySendMessageNodeExecutor(NodeExecutor):
    """Explicit send node for Dialogy flows; delivery still follows the session's channel."""
    node_type = "dialogy-send-message"

    async def execute(self, ctx: NodeContext) -> Transition:
        await ctx.send(ctx.render(ctx.data.get("dialogy_message_content") or ctx.data.get("text") or ""))
        return Transition.advance()


@register
class InputNodeExecutor(NodeExecutor):
    """Sends the prompt and suspends until the next inbound message binds the answer."""
    node_type = "input"
    input_type = AwaitingInputType.INPUT

    async def execute(self, ctx: NodeContext) -> Transition:
        prompt = ctx.render(ctx.data.get("prompt_text") or "")
        if prompt:
            await ctx.send(prompt)
        details = AwaitingInputDetails(
            node_id=ctx.node_id,
            variable_to_save=ctx.data.get("variable_to_save") or "last_user_input",
            api_response_as_input=bool(ctx.data.get("api_response_as_input")),
            api_response_path_for_value=ctx.data.get("api_response_path_for_value") or None,
        )
        return Transition.suspend(self.input_type, details)


@register
class DateInputNodeExecutor(InputNodeExecutor):
    node_type = "date-input"
    input_type = AwaitingInputType.DATE_INPUT


@register
class FileUploadNodeExecutor(InputNodeExecutor):
    node_type = "file-upload"
    input_type = AwaitingInputType.FILE_UPLOAD


@register
class RatingInputNodeExecutor(InputNodeExecutor):
    node_type = "rating-input"
    input_type = AwaitingInputType.RATING_INPUT


def resolve_options(ctx: NodeContext) -> List[str]:
    """Choices from a list variable when configured, else the static options."""
    source_variable = ctx.data.get("options_variable")
    if source_variable:
        value = ctx.get_variable(str(source_variable).replace("{{", "").replace("}}", "").strip())
        if isinstance(value, list):
            return [str(ctx.render(str(v))).strip() for v in value if str(v).strip()]
        logger.warning("Option node '%s': variable '%s' is not a list", ctx.node_id, source_variable)

    options = ctx.data.get("options") or []
    if isinstance(options, str):
        options = options.split("\n")
    rendered = [str(ctx.render(str(option))).strip() for option in options]
    return [option for option in rendered if option]


def build_option_message(question: str, options: List[str], channel: str = None) -> str:
    lines = [f"{index}. {option}" for index, option in enumerate(options, start=1)]
    message = f"{question}\n\n" + "\n".join(lines)
    if channel != "chatwoot":
        message += f"\n{OPTION_REPLY_HINT}"
    return message


@register
class OptionNodeExecutor(NodeExecutor):
    node_type = "option"

    async def execute(self, ctx: NodeContext) -> Transition:
        question = ctx.render(ctx.data.get("question_text") or "")
        options = resolve_options(ctx)
        if not question or not options:
            logger.warning("Option node '%s' has no question or options; advancing", ctx.node_id)
            return Transition.advance()

        await ctx.send(build_option_message(question, options, ctx.session.flow_context))
        details = AwaitingInputDetails(
            node_id=ctx.node_id,
            variable_to_save=ctx.data.get("variable_to_save") or "last_user_choice",
            options=options,
        )
        return Transition.suspend(AwaitingInputType.OPTION, details)


@register
class DelayNodeExecutor(NodeExecutor):
    node_type = "delay"

    async def execute(self, ctx: NodeContext) -> Transition:
        try:
            delay_ms = max(0, int(ctx.data.get("delay_ms", 1000)))
        except (TypeError, ValueError):
            delay_ms = 1000
        await asyncio.sleep(delay_ms / 1000)
        return Transition.advance()


@register
class LogConsoleNodeExecutor(NodeExecutor):
    node_type = "log-console"

    async def execute(self, ctx: NodeContext) -> Transition:
        logger.info("[FLOW LOG - %s] %s", ctx.session.session_id, ctx.render(ctx.data.get("message") or ""))
        return Transition.advance()


@register
class EndFlowNodeExecutor(NodeExecutor):
    node_type = "end-flow"

    async def execute(self, ctx: NodeContext) -> Transition:
        return Transition.terminate()
