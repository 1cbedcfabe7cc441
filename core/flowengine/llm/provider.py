"""Model provider abstraction - the engine's only view of LLM backends."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class SamplingParams:
    """Sampling parameters forwarded to the provider."""

    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = dict(self.extra)
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        if self.max_tokens is not None:
            kwargs["max_tokens"] = self.max_tokens
        if self.top_p is not None:
            kwargs["top_p"] = self.top_p
        return kwargs


@dataclass
class Tool:
    """A tool the model can use."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }


@dataclass
class ToolUse:
    """A tool call requested by the model."""

    id: str
    name: str
    input: dict[str, Any]


@dataclass
class ToolResult:
    """Result of executing a tool."""

    tool_use_id: str
    content: str
    is_error: bool = False


@dataclass
class ModelResponse:
    """Response from a model call."""

    text: str = ""
    model: str = ""
    structured: Any = None  # set when the provider returned a parsed object
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float | None = None
    tool_calls: list[ToolUse] = field(default_factory=list)
    stop_reason: str = ""
    raw_response: Any = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ModelProvider(ABC):
    """
    Abstract model provider - plug in any LLM backend.

    The engine never sees provider-specific wire formats. Implementations
    should handle:
    - API authentication
    - Request/response formatting
    - Token accounting
    - Structured output (json_schema) requests
    """

    @abstractmethod
    async def send(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str,
        sampling: SamplingParams | None = None,
        schema: dict[str, Any] | None = None,
        json_mode: bool = False,
    ) -> ModelResponse:
        """
        Single-turn completion.

        Args:
            system_prompt: System prompt (may be empty)
            user_prompt: User message
            model: Model identifier, ``provider/model`` form
            sampling: Sampling parameters
            schema: Optional JSON schema the reply must follow
            json_mode: Request a JSON object reply without a schema

        Returns:
            ModelResponse with text (and ``structured`` when parsed by the provider)
        """

    @abstractmethod
    async def chat(
        self,
        messages: list[dict[str, Any]],
        system_prompt: str,
        model: str,
        tools: list[Tool] | None = None,
        sampling: SamplingParams | None = None,
    ) -> ModelResponse:
        """
        Multi-turn completion with tool access, used by agent mode.

        ``messages`` use the OpenAI chat shape; assistant turns may carry
        ``tool_calls`` and tool results use ``role="tool"``. Tool
        orchestration is the CALLER's responsibility.
        """
