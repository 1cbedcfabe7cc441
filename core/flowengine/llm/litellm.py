"""LiteLLM-backed model provider covering OpenAI, Anthropic, Gemini, Perplexity and more."""

import asyncio
import json
import logging
from typing import Any

import litellm

from flowengine.llm.provider import ModelProvider, ModelResponse, SamplingParams, Tool, ToolUse

logger = logging.getLogger(__name__)

RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BACKOFF_BASE = 2.0


class LiteLLMProvider(ModelProvider):
    """
    Model provider using LiteLLM's unified interface.

    Model ids are passed through unchanged, e.g. ``anthropic/claude-haiku-4-5-20251001``
    or ``openai/gpt-4o-mini``. Keys come from ``api_key`` or the usual
    provider environment variables.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        max_retries: int = RATE_LIMIT_MAX_RETRIES,
    ):
        self.api_key = api_key
        self.api_base = api_base
        self.max_retries = max_retries

    async def send(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str,
        sampling: SamplingParams | None = None,
        schema: dict[str, Any] | None = None,
        json_mode: bool = False,
    ) -> ModelResponse:
        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})

        kwargs: dict[str, Any] = {}
        if schema:
            kwargs["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "structured_output", "schema": schema},
            }
        elif json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = await self._acompletion(model, messages, sampling, **kwargs)
        return self._to_model_response(response, model)

    async def chat(
        self,
        messages: list[dict[str, Any]],
        system_prompt: str,
        model: str,
        tools: list[Tool] | None = None,
        sampling: SamplingParams | None = None,
    ) -> ModelResponse:
        full_messages = list(messages)
        if system_prompt:
            full_messages.insert(0, {"role": "system", "content": system_prompt})

        kwargs: dict[str, Any] = {}
        if tools:
            kwargs["tools"] = [t.to_openai() for t in tools]

        response = await self._acompletion(model, full_messages, sampling, **kwargs)
        return self._to_model_response(response, model)

    async def _acompletion(
        self,
        model: str,
        messages: list[dict[str, Any]],
        sampling: SamplingParams | None,
        **kwargs: Any,
    ) -> Any:
        params = (sampling or SamplingParams()).to_kwargs()
        params.update(kwargs)
        if self.api_key:
            params["api_key"] = self.api_key
        if self.api_base:
            params["api_base"] = self.api_base

        for attempt in range(self.max_retries + 1):
            try:
                return await litellm.acompletion(model=model, messages=messages, **params)
            except litellm.RateLimitError:
                if attempt >= self.max_retries:
                    raise
                delay = RATE_LIMIT_BACKOFF_BASE * (2**attempt)
                logger.warning(
                    f"Rate limited by {model}, retrying in {delay}s "
                    f"({attempt + 1}/{self.max_retries})"
                )
                await asyncio.sleep(delay)
        raise RuntimeError("unreachable")

    def _to_model_response(self, response: Any, model: str) -> ModelResponse:
        choice = response.choices[0]
        message = choice.message

        tool_calls: list[ToolUse] = []
        for tc in getattr(message, "tool_calls", None) or []:
            try:
                arguments = json.loads(tc.function.arguments or "{}")
            except json.JSONDecodeError:
                arguments = {"_raw": tc.function.arguments}
            tool_calls.append(ToolUse(id=tc.id, name=tc.function.name, input=arguments))

        usage = getattr(response, "usage", None)
        cost: float | None = None
        try:
            cost = litellm.completion_cost(completion_response=response)
        except Exception:
            cost = None

        return ModelResponse(
            text=message.content or "",
            model=getattr(response, "model", None) or model,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            cost_usd=cost,
            tool_calls=tool_calls,
            stop_reason=choice.finish_reason or "",
            raw_response=response,
        )
