"""
Agent Loop Controller - bounded reason/act loop for agent-mode nodes.

Each iteration sends the conversation to the model. A reply that requests
tools becomes a ``tool-call`` step; the tools run concurrently and their
results are appended in request order before the next iteration. A reply
with text and no tool requests is the ``final-answer`` and ends the loop.

The loop is hard-capped at ``max_steps`` iterations. When the cap is hit,
one closing ``final-answer`` step is appended whose output is the last
reasoning text, so a run never records more than ``max_steps + 1`` steps.
"""

import asyncio
import json
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from flowengine.graph.cancellation import CancellationToken
from flowengine.graph.errors import ExecutorFailure
from flowengine.graph.results import AgentStep, StepKind, TokenUsage, ToolCall
from flowengine.llm.provider import ModelProvider, ModelResponse, SamplingParams, ToolResult
from flowengine.runner.tool_registry import ToolRegistry
from flowengine.runtime.event_bus import EventBus

logger = logging.getLogger(__name__)

CONTINUE_PROMPT = "Continue. Use a tool if you need more information, otherwise give your final answer."


@dataclass
class AgentRunResult:
    steps: list[AgentStep] = field(default_factory=list)
    final_answer: str = ""
    stop_reason: str = "final_answer"  # final_answer | step_limit | cancelled
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    cost_usd: float | None = None
    model: str | None = None


class AgentLoopController:
    """Drives one agent-mode node from first prompt to final answer."""

    def __init__(
        self,
        provider: ModelProvider,
        tools: ToolRegistry | None = None,
        event_bus: EventBus | None = None,
    ):
        self.provider = provider
        self.tools = tools or ToolRegistry()
        self.event_bus = event_bus

    async def run(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str,
        max_steps: int,
        tool_names: Sequence[str] | None = None,
        sampling: SamplingParams | None = None,
        cancel_token: CancellationToken | None = None,
        flow_id: str = "flow",
        node_id: str | None = None,
        run_id: str | None = None,
    ) -> AgentRunResult:
        """
        Run the loop. Cancellation is observed between iterations and while a
        model call or tool batch is in flight; a cancelled run returns the
        steps recorded so far with ``stop_reason="cancelled"``. A provider
        failure raises ExecutorFailure carrying those same steps.
        """
        max_steps = max(1, int(max_steps))
        available = self.tools.get_tools(list(tool_names) if tool_names is not None else None)
        messages: list[dict[str, Any]] = [{"role": "user", "content": user_prompt}]
        result = AgentRunResult(model=model)
        last_reasoning = ""

        for iteration in range(1, max_steps + 1):
            if cancel_token is not None and cancel_token.is_cancelled:
                return self._cancelled(result, last_reasoning, iteration)

            started = time.monotonic()
            try:
                response = await _until_cancelled(
                    self.provider.chat(
                        messages=messages,
                        system_prompt=system_prompt,
                        model=model,
                        tools=available or None,
                        sampling=sampling,
                    ),
                    cancel_token,
                )
            except Exception as e:
                raise ExecutorFailure(
                    f"Agent model call failed: {e}", agent_steps=result.steps
                ) from e
            if response is None:
                return self._cancelled(result, last_reasoning, iteration)
            self._account(result, response)
            usage = TokenUsage(response.input_tokens, response.output_tokens)
            text = response.text or ""
            if text:
                last_reasoning = text

            if response.tool_calls:
                logger.info(
                    f"   🔧 Step {iteration}: {len(response.tool_calls)} tool call(s) "
                    f"({', '.join(tc.name for tc in response.tool_calls)})"
                )
                messages.append(self._assistant_message(response))
                tool_results = await _until_cancelled(
                    self._run_tools(response, flow_id, node_id, run_id), cancel_token
                )
                if tool_results is None:
                    return self._cancelled(result, last_reasoning, iteration)
                calls = []
                for tool_use, tool_result in zip(response.tool_calls, tool_results, strict=True):
                    messages.append(
                        {
                            "role": "tool",
                            "tool_call_id": tool_use.id,
                            "content": tool_result.content,
                        }
                    )
                    calls.append(
                        ToolCall(
                            tool_name=tool_use.name,
                            arguments=tool_use.input,
                            tool_use_id=tool_use.id,
                            result=None if tool_result.is_error else tool_result.content,
                            error=tool_result.content if tool_result.is_error else None,
                        )
                    )
                step = AgentStep(
                    step_number=iteration,
                    kind=StepKind.TOOL_CALL,
                    tool_calls=calls,
                    reasoning=text,
                    token_usage=usage,
                    duration_ms=_elapsed_ms(started),
                )
                await self._record(result, step, flow_id, node_id, run_id)
                continue

            if text.strip():
                step = AgentStep(
                    step_number=iteration,
                    kind=StepKind.FINAL_ANSWER,
                    reasoning=text,
                    output=text,
                    token_usage=usage,
                    duration_ms=_elapsed_ms(started),
                )
                await self._record(result, step, flow_id, node_id, run_id)
                result.final_answer = text
                result.stop_reason = "final_answer"
                logger.info(f"   ✓ Final answer after {iteration} step(s)")
                return result

            # Empty reply: keep it in the trace and nudge the model
            step = AgentStep(
                step_number=iteration,
                kind=StepKind.REASONING,
                token_usage=usage,
                duration_ms=_elapsed_ms(started),
            )
            await self._record(result, step, flow_id, node_id, run_id)
            messages.append({"role": "assistant", "content": ""})
            messages.append({"role": "user", "content": CONTINUE_PROMPT})

        logger.warning(f"   ⚠ Step limit ({max_steps}) reached without a final answer")
        closing = AgentStep(
            step_number=max_steps + 1,
            kind=StepKind.FINAL_ANSWER,
            reasoning=last_reasoning,
            output=last_reasoning,
        )
        await self._record(result, closing, flow_id, node_id, run_id)
        result.final_answer = last_reasoning
        result.stop_reason = "step_limit"
        return result

    @staticmethod
    def _cancelled(result: AgentRunResult, last_reasoning: str, iteration: int) -> AgentRunResult:
        logger.warning(f"   ⚠ Agent loop cancelled at step {iteration}")
        result.stop_reason = "cancelled"
        result.final_answer = last_reasoning
        return result

    async def _run_tools(
        self,
        response: ModelResponse,
        flow_id: str,
        node_id: str | None,
        run_id: str | None,
    ) -> list[ToolResult]:
        async def run_one(tool_use) -> ToolResult:
            if self.event_bus:
                await self.event_bus.emit_tool_call_started(
                    flow_id, run_id, node_id, tool_use.id, tool_use.name, tool_use.input
                )
            tool_result = await self.tools.execute(tool_use)
            if self.event_bus:
                await self.event_bus.emit_tool_call_completed(
                    flow_id,
                    run_id,
                    node_id,
                    tool_use.id,
                    tool_use.name,
                    result=tool_result.content,
                    is_error=tool_result.is_error,
                )
            return tool_result

        # gather preserves request order regardless of completion order
        return list(await asyncio.gather(*(run_one(tc) for tc in response.tool_calls)))

    @staticmethod
    def _assistant_message(response: ModelResponse) -> dict[str, Any]:
        return {
            "role": "assistant",
            "content": response.text or None,
            "tool_calls": [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": json.dumps(tc.input)},
                }
                for tc in response.tool_calls
            ],
        }

    @staticmethod
    def _account(result: AgentRunResult, response: ModelResponse) -> None:
        result.token_usage = result.token_usage + TokenUsage(
            response.input_tokens, response.output_tokens
        )
        if response.cost_usd is not None:
            result.cost_usd = (result.cost_usd or 0.0) + response.cost_usd
        if response.model:
            result.model = response.model

    async def _record(
        self,
        result: AgentRunResult,
        step: AgentStep,
        flow_id: str,
        node_id: str | None,
        run_id: str | None,
    ) -> None:
        result.steps.append(step)
        if self.event_bus:
            await self.event_bus.emit_agent_step_completed(flow_id, run_id, node_id, step.to_dict())


async def _until_cancelled(awaitable, cancel_token: CancellationToken | None):
    """Await ``awaitable`` unless the token fires first; returns None when cancelled."""
    if cancel_token is None:
        return await awaitable
    work = asyncio.ensure_future(awaitable)
    stop = asyncio.ensure_future(cancel_token.wait())
    try:
        await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop.cancel()
        if not work.done():
            work.cancel()
    if work.cancelled():
        await asyncio.gather(work, return_exceptions=True)
        return None
    return work.result()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)

