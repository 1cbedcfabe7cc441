"""
Tests for LiteLLMProvider request building and response parsing.

litellm.acompletion is patched; no network calls are made.
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import litellm
import pytest

import flowengine.llm.litellm as litellm_module
from flowengine.llm.litellm import LiteLLMProvider
from flowengine.llm.provider import SamplingParams, Tool


def _response(content="hello", tool_calls=None, finish_reason="stop"):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason=finish_reason)],
        model="openai/gpt-4o-mini",
        usage=SimpleNamespace(prompt_tokens=11, completion_tokens=7),
    )


def _tool_call(call_id, name, arguments):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


@pytest.fixture(autouse=True)
def no_cost_lookup():
    with patch.object(litellm, "completion_cost", return_value=0.001):
        yield


@pytest.mark.asyncio
async def test_send_builds_messages_and_parses_usage():
    provider = LiteLLMProvider(api_key="k", api_base="http://proxy")
    mock = AsyncMock(return_value=_response("The answer."))

    with patch.object(litellm, "acompletion", mock):
        response = await provider.send(
            "Be brief.", "Question?", "openai/gpt-4o-mini", SamplingParams(temperature=0.2, max_tokens=50)
        )

    kwargs = mock.call_args.kwargs
    assert kwargs["model"] == "openai/gpt-4o-mini"
    assert kwargs["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "Question?"},
    ]
    assert kwargs["temperature"] == 0.2
    assert kwargs["max_tokens"] == 50
    assert kwargs["api_key"] == "k"
    assert kwargs["api_base"] == "http://proxy"
    assert "response_format" not in kwargs

    assert response.text == "The answer."
    assert response.input_tokens == 11
    assert response.output_tokens == 7
    assert response.total_tokens == 18
    assert response.cost_usd == 0.001
    assert response.stop_reason == "stop"


@pytest.mark.asyncio
async def test_send_requests_structured_output():
    provider = LiteLLMProvider()
    schema = {"type": "object", "properties": {"topic": {"type": "string"}}}
    mock = AsyncMock(return_value=_response('{"topic": "tides"}'))

    with patch.object(litellm, "acompletion", mock):
        await provider.send("", "q", "m/x", schema=schema)
        await provider.send("", "q", "m/x", json_mode=True)

    schema_call, json_call = mock.call_args_list
    assert schema_call.kwargs["response_format"]["json_schema"]["schema"] == schema
    assert schema_call.kwargs["messages"] == [{"role": "user", "content": "q"}]
    assert json_call.kwargs["response_format"] == {"type": "json_object"}
    assert "api_key" not in json_call.kwargs


@pytest.mark.asyncio
async def test_chat_passes_tools_and_parses_tool_calls():
    provider = LiteLLMProvider()
    calls = [
        _tool_call("c1", "add", json.dumps({"a": 1, "b": 2})),
        _tool_call("c2", "lookup", "not json"),
    ]
    mock = AsyncMock(return_value=_response(None, tool_calls=calls, finish_reason="tool_calls"))
    tools = [Tool(name="add", description="Add", parameters={"type": "object"})]

    with patch.object(litellm, "acompletion", mock):
        response = await provider.chat([{"role": "user", "content": "1+2?"}], "sys", "m/x", tools)

    kwargs = mock.call_args.kwargs
    assert kwargs["messages"][0] == {"role": "system", "content": "sys"}
    assert kwargs["tools"][0]["function"]["name"] == "add"

    assert response.text == ""
    assert response.stop_reason == "tool_calls"
    assert [(c.id, c.name, c.input) for c in response.tool_calls] == [
        ("c1", "add", {"a": 1, "b": 2}),
        ("c2", "lookup", {"_raw": "not json"}),
    ]


@pytest.mark.asyncio
async def test_rate_limit_is_retried_then_raised(monkeypatch):
    monkeypatch.setattr(litellm_module, "RATE_LIMIT_BACKOFF_BASE", 0)
    rate_limited = litellm.RateLimitError(
        message="slow down", llm_provider="openai", model="gpt-4o-mini"
    )

    recovering = AsyncMock(side_effect=[rate_limited, _response("after retry")])
    with patch.object(litellm, "acompletion", recovering):
        response = await LiteLLMProvider(max_retries=2).send("", "q", "m/x")
    assert response.text == "after retry"
    assert recovering.await_count == 2

    failing = AsyncMock(side_effect=rate_limited)
    with patch.object(litellm, "acompletion", failing):
        with pytest.raises(litellm.RateLimitError):
            await LiteLLMProvider(max_retries=1).send("", "q", "m/x")
    assert failing.await_count == 2
