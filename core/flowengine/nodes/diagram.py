"""Diagram executor for mermaid nodes."""

import logging
from typing import Any, Literal

from pydantic import Field

from flowengine.graph.errors import ExecutorFailure
from flowengine.graph.flow import NodeSpec
from flowengine.graph.results import ExecutionResult
from flowengine.integrations.diagram import (
    DiagramRenderer,
    detect_diagram_type,
    extract_mermaid_blocks,
)
from flowengine.nodes.base import NodeConfig, NodeContext, NodeExecutor

logger = logging.getLogger(__name__)


class DiagramConfig(NodeConfig):
    diagram: str = ""
    input_mode: Literal["editor", "upstream", "auto"] = "auto"
    operation: Literal["render", "parse", "detect", "extract", "batch"] = "render"
    theme: Literal["default", "dark", "forest", "neutral", "base"] = "default"
    config: dict[str, Any] = Field(default_factory=dict)


class DiagramExecutor(NodeExecutor):
    """
    Operations and their output objects:
    - render:  {"svg", "diagramType"}
    - parse:   {"valid", "diagramType", "error"}
    - detect:  {"diagramType"}
    - extract: {"diagrams", "count"}
    - batch:   {"results": [{"index", "diagramType", "svg" | "error"}]}
    """

    config_model = DiagramConfig

    def __init__(self, renderer: DiagramRenderer):
        self.renderer = renderer

    def check(self, config: DiagramConfig, node: NodeSpec) -> list[str]:
        if config.input_mode == "editor" and not config.diagram.strip():
            return ["diagram source is required in editor mode"]
        return []

    def _source(self, config: DiagramConfig, ctx: NodeContext) -> str:
        editor = ctx.resolve(config.diagram)
        if config.input_mode == "editor":
            return editor
        if config.input_mode == "upstream":
            return ctx.input_text
        # auto: upstream wins when something is connected and non-empty
        return ctx.input_text if ctx.input_text.strip() else editor

    async def execute(self, ctx: NodeContext) -> ExecutionResult:
        config: DiagramConfig = self.parse_config(ctx.node)
        source = self._source(config, ctx)

        if config.operation == "detect":
            return self._done(ctx, {"diagramType": detect_diagram_type(source)})

        if config.operation == "parse":
            parsed = await self.renderer.parse(_single_diagram(source))
            return self._done(
                ctx,
                {"valid": parsed.valid, "diagramType": parsed.diagram_type, "error": parsed.error},
            )

        if config.operation == "extract":
            diagrams = extract_mermaid_blocks(source)
            return self._done(ctx, {"diagrams": diagrams, "count": len(diagrams)})

        if config.operation == "batch":
            results = []
            for index, block in enumerate(extract_mermaid_blocks(source)):
                entry: dict[str, Any] = {"index": index, "diagramType": detect_diagram_type(block)}
                try:
                    entry["svg"] = await self.renderer.render(block, config.theme, config.config)
                except Exception as e:
                    entry["error"] = str(e)
                results.append(entry)
            return self._done(ctx, {"results": results})

        diagram = _single_diagram(source)
        try:
            svg = await self.renderer.render(diagram, config.theme, config.config)
        except Exception as e:
            raise ExecutorFailure(f"Diagram render failed: {e}") from e
        return self._done(ctx, {"svg": svg, "diagramType": detect_diagram_type(diagram)})

    @staticmethod
    def _done(ctx: NodeContext, payload: dict[str, Any]) -> ExecutionResult:
        return ctx.success(payload, structured=payload)


def _single_diagram(source: str) -> str:
    """Markdown with a fenced block renders its first diagram; bare source as-is."""
    blocks = extract_mermaid_blocks(source)
    return blocks[0] if blocks else source
