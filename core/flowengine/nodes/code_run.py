"""Code-run executor for python and javascript nodes."""

from typing import Any

from flowengine.graph.errors import ExecutorFailure
from flowengine.graph.flow import NodeSpec
from flowengine.graph.results import ExecutionResult, NodeStatus
from flowengine.integrations.sandbox import CodeSandbox
from flowengine.nodes.base import NodeConfig, NodeContext, NodeExecutor


class CodeRunConfig(NodeConfig):
    code: str = ""


def build_sandbox_context(ctx: NodeContext) -> dict[str, Any]:
    """
    Read-only snapshot handed to user code: run inputs, then every
    successful node keyed by id and alias, plus ``input`` for the first
    incoming edge.
    """
    context: dict[str, Any] = dict(ctx.variables)
    aliases = ctx.resolver.scope.aliases
    by_node = {node_id: alias for alias, node_id in aliases.items()}

    for node_id, result in ctx.results.items():
        if result.status != NodeStatus.SUCCESS:
            continue
        value = result.structured if result.structured is not None else result.output
        context[node_id] = value
        if node_id in by_node:
            context[by_node[node_id]] = value

    context["input"] = ctx.input_value
    return context


class CodeRunExecutor(NodeExecutor):
    config_model = CodeRunConfig

    def __init__(self, sandbox: CodeSandbox):
        self.sandbox = sandbox

    def check(self, config: CodeRunConfig, node: NodeSpec) -> list[str]:
        return [] if config.code.strip() else ["code is required"]

    async def execute(self, ctx: NodeContext) -> ExecutionResult:
        config: CodeRunConfig = self.parse_config(ctx.node)
        try:
            outcome = await self.sandbox.run(config.code, build_sandbox_context(ctx), ctx.node.type)
        except TimeoutError:
            raise
        except Exception as e:
            raise ExecutorFailure(f"Sandbox failed: {e}") from e

        metadata = {"stdout": outcome.stdout} if outcome.stdout else {}
        if outcome.error is not None:
            # The snippet's own exception belongs to the node, not the engine
            return ExecutionResult(
                node_id=ctx.node_id, status=NodeStatus.ERROR, error=outcome.error, metadata=metadata
            )

        structured = outcome.value if isinstance(outcome.value, dict | list) else None
        return ctx.success(outcome.value, structured=structured, metadata=metadata)
