"""Notes executor: template rendering or plain passthrough."""

from typing import Literal

from flowengine.graph.results import ExecutionResult
from flowengine.nodes.base import NodeConfig, NodeContext, NodeExecutor


class NotesConfig(NodeConfig):
    content: str = ""
    var_mode: bool | None = None
    mode: Literal["transform", "passthrough"] | None = None

    @property
    def transforms(self) -> bool:
        if self.mode is not None:
            return self.mode == "transform"
        return bool(self.var_mode)


def passthrough(ctx: NodeContext, mode: str = "passthrough") -> ExecutionResult:
    """Forward the first input unchanged, structured views included."""
    upstream = ctx.input_result
    if upstream is None:
        return ctx.success("", metadata={"mode": mode, "has_input": False})
    return ctx.success(
        upstream.output,
        structured=upstream.structured,
        fields=dict(upstream.fields) if upstream.fields else None,
        flattened=upstream.flattened,
        metadata={"mode": mode, "has_input": True, "source": upstream.node_id},
    )


class NotesExecutor(NodeExecutor):
    """
    ``transform`` renders ``content`` with variables resolved;
    ``passthrough`` (the default) forwards the single input.
    """

    config_model = NotesConfig

    async def execute(self, ctx: NodeContext) -> ExecutionResult:
        config: NotesConfig = self.parse_config(ctx.node)
        if config.transforms:
            return ctx.success(ctx.resolve(config.content), metadata={"mode": "transform"})
        return passthrough(ctx)
