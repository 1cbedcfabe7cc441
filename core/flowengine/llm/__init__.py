"""Model provider abstraction."""

from flowengine.llm.litellm import LiteLLMProvider
from flowengine.llm.mock import MockLLMProvider, ScriptedReply
from flowengine.llm.provider import (
    ModelProvider,
    ModelResponse,
    SamplingParams,
    Tool,
    ToolResult,
    ToolUse,
)

__all__ = [
    "ModelProvider",
    "ModelResponse",
    "SamplingParams",
    "Tool",
    "ToolUse",
    "ToolResult",
    "LiteLLMProvider",
    "MockLLMProvider",
    "ScriptedReply",
]
