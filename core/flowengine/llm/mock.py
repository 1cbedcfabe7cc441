"""Scripted model provider for dry runs and tests."""

import json
from dataclasses import dataclass
from typing import Any

from flowengine.llm.provider import ModelProvider, ModelResponse, SamplingParams, Tool, ToolUse


@dataclass
class ScriptedReply:
    """One scripted provider reply.

    - text only  -> a final answer (``send`` or ``chat``)
    - tool_calls -> a tool-use turn; ``chat`` only
    - text ""    -> an empty reasoning turn
    """

    text: str = ""
    tool_calls: list[dict] | None = None  # [{name, id, input}, ...]
    structured: Any = None


class MockLLMProvider(ModelProvider):
    """
    Plays back scripted replies in order; once exhausted, every call
    returns ``default_text``. Each call is recorded in ``calls``.

    JSON-mode sends parse the reply text into ``structured`` the way a
    real provider's JSON mode would.
    """

    def __init__(self, replies: list[ScriptedReply | str] | None = None, default_text: str = "mock response"):
        self._replies = [r if isinstance(r, ScriptedReply) else ScriptedReply(text=r) for r in replies or []]
        self._index = 0
        self.default_text = default_text
        self.calls: list[dict[str, Any]] = []

    def _next(self) -> ScriptedReply:
        if self._index >= len(self._replies):
            return ScriptedReply(text=self.default_text)
        reply = self._replies[self._index]
        self._index += 1
        return reply

    async def send(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str,
        sampling: SamplingParams | None = None,
        schema: dict[str, Any] | None = None,
        json_mode: bool = False,
    ) -> ModelResponse:
        self.calls.append(
            {
                "kind": "send",
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "model": model,
                "schema": schema,
                "json_mode": json_mode,
            }
        )
        reply = self._next()
        structured = reply.structured
        if structured is None and (json_mode or schema):
            try:
                structured = json.loads(reply.text)
            except json.JSONDecodeError:
                structured = None
        return ModelResponse(
            text=reply.text,
            model=model,
            structured=structured,
            input_tokens=10,
            output_tokens=10,
            stop_reason="stop",
        )

    async def chat(
        self,
        messages: list[dict[str, Any]],
        system_prompt: str,
        model: str,
        tools: list[Tool] | None = None,
        sampling: SamplingParams | None = None,
    ) -> ModelResponse:
        self.calls.append(
            {
                "kind": "chat",
                "messages": list(messages),
                "system_prompt": system_prompt,
                "model": model,
                "tools": [t.name for t in tools or []],
            }
        )
        reply = self._next()
        tool_calls = [
            ToolUse(id=tc.get("id", f"call_{self._index}_{i}"), name=tc["name"], input=tc.get("input", {}))
            for i, tc in enumerate(reply.tool_calls or [])
        ]
        return ModelResponse(
            text=reply.text,
            model=model,
            input_tokens=10,
            output_tokens=10,
            tool_calls=tool_calls,
            stop_reason="tool_calls" if tool_calls else "stop",
        )
