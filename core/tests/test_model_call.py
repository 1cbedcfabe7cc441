"""
Tests for model-call nodes: text, JSON and CSV output formats.
"""

from unittest.mock import AsyncMock

import pytest

from flowengine.graph.errors import ConfigurationError
from flowengine.graph.executor import FlowExecutor
from flowengine.graph.flow import EdgeSpec, FlowGraph, NodeSpec
from flowengine.graph.results import NodeStatus
from flowengine.llm.mock import MockLLMProvider, ScriptedReply
from flowengine.llm.provider import ModelResponse
from flowengine.nodes.base import NodeRegistry
from flowengine.nodes.model_call import ModelCallExecutor, model_identifier
from flowengine.nodes.notes import NotesExecutor


def _registry(provider):
    registry = NodeRegistry()
    registry.register(["llm", "anthropic", "openai"], ModelCallExecutor(provider))
    registry.register("notes", NotesExecutor())
    return registry


def _flow(nodes, edges=()):
    return FlowGraph(
        id="model-flow",
        nodes=nodes,
        edges=[EdgeSpec(source=s, target=t) for s, t in edges],
    )


def test_model_identifier_rules():
    assert model_identifier("anthropic", None, "claude-x", None) == "anthropic/claude-x"
    assert model_identifier("llm", "openai", "gpt-4o", None) == "openai/gpt-4o"
    assert model_identifier("llm", None, "gemini/gemini-pro", None) == "gemini/gemini-pro"
    assert model_identifier("llm", None, None, "test/default") == "test/default"
    with pytest.raises(ConfigurationError):
        model_identifier("llm", None, None, None)


@pytest.mark.asyncio
async def test_text_reply_with_resolved_prompts(settings):
    provider = MockLLMProvider(["Hello Kim!"])
    graph = _flow(
        [
            NodeSpec(
                id="greet",
                type="anthropic",
                data={
                    "model": "claude-x",
                    "systemPrompt": "Be brief.",
                    "userPrompt": "Say hi to {{name}}",
                    "temperature": 0.2,
                },
            )
        ]
    )

    result = await FlowExecutor(_registry(provider), settings=settings).run(
        graph, inputs={"name": "Kim"}
    )

    node = result.results["greet"]
    assert node.status == NodeStatus.SUCCESS
    assert node.output == "Hello Kim!"
    assert node.metrics.total_tokens == 20
    call = provider.calls[0]
    assert call["model"] == "anthropic/claude-x"
    assert call["user_prompt"] == "Say hi to Kim"
    assert call["system_prompt"] == "Be brief."
    assert call["json_mode"] is False


@pytest.mark.asyncio
async def test_csv_output_exposes_fields_and_flattened_text(settings):
    provider = MockLLMProvider(['{"topic": "tides", "summary": "the moon pulls the sea"}'])
    graph = _flow(
        [
            NodeSpec(
                id="source",
                type="notes",
                data={"mode": "transform", "content": "Tides rise twice a day."},
            ),
            NodeSpec(
                id="summarize",
                type="llm",
                data={
                    "model": "openai/gpt-4o-mini",
                    "userPrompt": "Summarize: {{1}}",
                    "outputFormat": "csv",
                    "csvFields": "topic, summary",
                },
            ),
            NodeSpec(
                id="report",
                type="notes",
                data={"mode": "transform", "content": "{{summarize}} | {{summarize.summary}}"},
            ),
        ],
        [("source", "summarize"), ("summarize", "report")],
    )

    result = await FlowExecutor(_registry(provider), settings=settings).run(graph)

    node = result.results["summarize"]
    assert node.status == NodeStatus.SUCCESS
    assert node.structured == {"topic": "tides", "summary": "the moon pulls the sea"}
    assert node.fields == {"topic": "tides", "summary": "the moon pulls the sea"}
    assert node.flattened == "topic: tides, summary: the moon pulls the sea"
    assert result.results["report"].output == (
        "topic: tides, summary: the moon pulls the sea | the moon pulls the sea"
    )

    call = provider.calls[0]
    assert call["user_prompt"] == "Summarize: Tides rise twice a day."
    assert call["json_mode"] is True
    assert set(call["schema"]["properties"]) == {"topic", "summary"}
    assert "### topic" in call["system_prompt"]
    assert "### summary" in call["system_prompt"]


@pytest.mark.asyncio
async def test_csv_reply_missing_fields_warns(settings):
    provider = MockLLMProvider(['{"topic": "tides"}'])
    graph = _flow(
        [
            NodeSpec(
                id="csv",
                type="llm",
                data={"userPrompt": "go", "outputFormat": "csv", "csvFields": "topic, summary"},
            )
        ]
    )

    result = await FlowExecutor(_registry(provider), settings=settings).run(graph)

    node = result.results["csv"]
    assert node.status == NodeStatus.SUCCESS
    assert node.fields == {"topic": "tides", "summary": ""}
    assert any("summary" in w for w in node.warnings)


@pytest.mark.asyncio
async def test_csv_rejects_non_object_reply(settings):
    provider = MockLLMProvider(["[1, 2, 3]"])
    graph = _flow(
        [
            NodeSpec(
                id="csv",
                type="llm",
                data={"userPrompt": "go", "outputFormat": "csv", "csvFields": "a"},
            )
        ]
    )

    result = await FlowExecutor(_registry(provider), settings=settings).run(graph)

    assert result.results["csv"].status == NodeStatus.ERROR
    assert "JSON object" in result.results["csv"].error


@pytest.mark.asyncio
async def test_json_output_parses_fenced_reply(settings):
    provider = MockLLMProvider([ScriptedReply(text='```json\n{"score": 9, "tags": ["a"]}\n```')])
    graph = _flow(
        [
            NodeSpec(
                id="rate",
                type="llm",
                data={"userPrompt": "rate it", "outputFormat": "json"},
            )
        ]
    )

    result = await FlowExecutor(_registry(provider), settings=settings).run(graph)

    node = result.results["rate"]
    assert node.output == {"score": 9, "tags": ["a"]}
    assert node.structured == node.output


@pytest.mark.asyncio
async def test_json_reply_that_is_not_json_fails(settings):
    provider = MockLLMProvider(["I cannot comply."])
    graph = _flow(
        [NodeSpec(id="rate", type="llm", data={"userPrompt": "x", "outputFormat": "json"})]
    )

    result = await FlowExecutor(_registry(provider), settings=settings).run(graph)

    assert result.results["rate"].status == NodeStatus.ERROR
    assert "not valid JSON" in result.results["rate"].error


@pytest.mark.asyncio
async def test_missing_prompt_is_configuration_error(settings):
    provider = MockLLMProvider()
    graph = _flow([NodeSpec(id="empty", type="llm", data={"outputFormat": "csv"})])

    result = await FlowExecutor(_registry(provider), settings=settings).run(graph)

    error = result.results["empty"].error
    assert error.startswith("Configuration error:")
    assert "userPrompt is required" in error
    assert "csvFields is required" in error
    assert provider.calls == []


@pytest.mark.asyncio
async def test_provider_exception_becomes_node_error(settings):
    provider = AsyncMock()
    provider.send.side_effect = RuntimeError("rate limited")
    graph = _flow([NodeSpec(id="a", type="llm", data={"userPrompt": "hi"})])

    result = await FlowExecutor(_registry(provider), settings=settings).run(graph)

    assert result.results["a"].error == "Model call failed: rate limited"


@pytest.mark.asyncio
async def test_provider_structured_reply_preferred(settings):
    provider = AsyncMock()
    provider.send.return_value = ModelResponse(text="ignored", structured={"ok": True}, model="m")
    graph = _flow(
        [NodeSpec(id="a", type="llm", data={"userPrompt": "hi", "outputFormat": "json"})]
    )

    result = await FlowExecutor(_registry(provider), settings=settings).run(graph)

    assert result.results["a"].output == {"ok": True}
    assert result.results["a"].metrics.model == "m"
