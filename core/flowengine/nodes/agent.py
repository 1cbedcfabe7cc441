"""Agent executor: model call with tool access, driven by the agent loop."""

import logging

from pydantic import Field

from flowengine.graph.agent_loop import AgentLoopController
from flowengine.graph.errors import ExecutorFailure
from flowengine.graph.flow import NodeSpec
from flowengine.graph.results import ExecutionResult, NodeMetrics, NodeStatus
from flowengine.llm.provider import ModelProvider, SamplingParams
from flowengine.nodes.base import NodeConfig, NodeContext, NodeExecutor
from flowengine.nodes.model_call import model_identifier
from flowengine.runner.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)


class AgentConfig(NodeConfig):
    provider: str | None = None
    model: str | None = None
    system_prompt: str = ""
    user_prompt: str = ""
    temperature: float | None = None
    max_tokens: int | None = None
    max_agent_steps: int | None = Field(default=None, ge=1)
    enabled_tools: list[str] | None = None


class AgentExecutor(NodeExecutor):
    config_model = AgentConfig

    def __init__(self, provider: ModelProvider, tools: ToolRegistry | None = None):
        self.provider = provider
        self.tools = tools or ToolRegistry()

    def check(self, config: AgentConfig, node: NodeSpec) -> list[str]:
        unknown = [t for t in config.enabled_tools or [] if not self.tools.has_tool(t)]
        if unknown:
            return [f"Unknown tools: {', '.join(unknown)}"]
        return []

    async def execute(self, ctx: NodeContext) -> ExecutionResult:
        config: AgentConfig = self.parse_config(ctx.node)
        model = model_identifier(ctx.node.type, config.provider, config.model, ctx.default_model)
        max_steps = config.max_agent_steps or ctx.agent_max_steps

        user_prompt = ctx.resolve(config.user_prompt) or ctx.input_text
        controller = AgentLoopController(self.provider, self.tools, ctx.event_bus)
        try:
            run = await controller.run(
                system_prompt=ctx.resolve(config.system_prompt),
                user_prompt=user_prompt,
                model=model,
                max_steps=max_steps,
                tool_names=config.enabled_tools,
                sampling=SamplingParams(
                    temperature=config.temperature, max_tokens=config.max_tokens
                ),
                cancel_token=ctx.cancel_token,
                flow_id=ctx.flow_id,
                node_id=ctx.node_id,
                run_id=ctx.run_id,
            )
        except ExecutorFailure:
            raise
        except Exception as e:
            raise ExecutorFailure(f"Agent model call failed: {e}") from e

        metrics = NodeMetrics(
            model=run.model,
            input_tokens=run.token_usage.input_tokens,
            output_tokens=run.token_usage.output_tokens,
            cost_usd=run.cost_usd,
        )
        metadata = {"stop_reason": run.stop_reason, "steps": len(run.steps)}

        if run.stop_reason == "cancelled":
            return ExecutionResult(
                node_id=ctx.node_id,
                status=NodeStatus.ERROR,
                output=run.final_answer,
                error=f"cancelled: {ctx.cancel_token.reason or 'Run cancelled'}",
                metrics=metrics,
                metadata=metadata,
                agent_steps=run.steps,
            )

        result = ctx.success(
            run.final_answer, metrics=metrics, metadata=metadata, agent_steps=run.steps
        )
        if run.stop_reason == "step_limit":
            result.warnings.append(f"Agent stopped at the {max_steps}-step limit")
        return result
