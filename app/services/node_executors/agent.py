from app.schemas.flow_session import AwaitingInputDetails, AwaitingInputType
from app.services.agent_orchestration_service import DEFAULT_INPUT_VARIABLE, AgentOrchestrator
from app.services.node_executors.base import NodeContext, NodeExecutor, Transition, register


@register
class IntelligentAgentNodeExecutor(NodeExecutor):
    """One agent turn per execution; suspends until the conversation completes."""
    node_type = "intelligent-agent"

    async def execute(self, ctx: NodeContext) -> Transition:
        orchestrator = AgentOrchestrator(ctx.runtime, ctx.engine.llm_service, ctx.engine.capability_service)
        result = await orchestrator.run_turn(ctx)
        if result.completed:
            return Transition.advance()
        input_variable = str(ctx.data.get("user_input_variable") or DEFAULT_INPUT_VARIABLE)
        details = AwaitingInputDetails(
            node_id=ctx.node_id,
            variable_to_save=input_variable.replace("{{", "").replace("}}", "").strip(),
        )
        return Transition.suspend(AwaitingInputType.AGENT, details)
