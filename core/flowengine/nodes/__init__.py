"""Node executors and the default type-tag registry."""

from flowengine.integrations.diagram import DiagramRenderer, MermaidInkRenderer
from flowengine.integrations.http import HttpClient, HttpxClient
from flowengine.integrations.sandbox import CodeSandbox, SubprocessSandbox
from flowengine.llm.provider import ModelProvider
from flowengine.nodes.agent import AgentExecutor
from flowengine.nodes.base import NodeConfig, NodeContext, NodeExecutor, NodeRegistry
from flowengine.nodes.code_run import CodeRunExecutor
from flowengine.nodes.diagram import DiagramExecutor
from flowengine.nodes.model_call import ModelCallExecutor
from flowengine.nodes.notes import NotesExecutor
from flowengine.nodes.webhook_in import WebhookInExecutor
from flowengine.nodes.webhook_out import WebhookOutExecutor
from flowengine.runner.tool_registry import ToolRegistry

MODEL_CALL_TYPES = ["llm", "openai", "anthropic", "gemini", "perplexity"]
AGENT_TYPES = ["agent", "tool-augmented-llm"]
CODE_TYPES = ["python", "javascript"]
DIAGRAM_TYPES = ["mermaid", "diagram"]


def default_registry(
    provider: ModelProvider,
    sandbox: CodeSandbox | None = None,
    http: HttpClient | None = None,
    renderer: DiagramRenderer | None = None,
    tools: ToolRegistry | None = None,
) -> NodeRegistry:
    """Registry with every built-in node type wired to the given collaborators."""
    registry = NodeRegistry()
    registry.register(MODEL_CALL_TYPES, ModelCallExecutor(provider))
    registry.register(AGENT_TYPES, AgentExecutor(provider, tools))
    registry.register(CODE_TYPES, CodeRunExecutor(sandbox or SubprocessSandbox()))
    registry.register("webhook-out", WebhookOutExecutor(http or HttpxClient()))
    registry.register("webhook-in", WebhookInExecutor())
    registry.register("notes", NotesExecutor())
    registry.register(DIAGRAM_TYPES, DiagramExecutor(renderer or MermaidInkRenderer()))
    return registry


__all__ = [
    "NodeConfig",
    "NodeContext",
    "NodeExecutor",
    "NodeRegistry",
    "default_registry",
    "ModelCallExecutor",
    "AgentExecutor",
    "CodeRunExecutor",
    "WebhookOutExecutor",
    "WebhookInExecutor",
    "NotesExecutor",
    "DiagramExecutor",
]
