"""
Tests for flow export documents and secret scanning.
"""

import json

import pytest

from flowengine.config import RunSettings
from flowengine.export.document import (
    FlowExport,
    FlowSettings,
    VariableDefinition,
    build_flow_export,
    load_flow_export,
)
from flowengine.export.secrets import redact_secret, scan_for_secrets
from flowengine.graph.errors import ConfigurationError
from flowengine.graph.flow import EdgeSpec, FlowGraph, NodeSpec

FAKE_OPENAI_KEY = "sk-" + "a1B2c3D4" * 5
FAKE_GITHUB_TOKEN = "ghp_" + "x" * 36

EXPORT = {
    "version": "1.0.0",
    "schemaVersion": "v1",
    "meta": {
        "id": "digest",
        "name": "Daily Digest",
        "createdAt": "2025-01-01T00:00:00Z",
        "updatedAt": "2025-01-02T00:00:00Z",
        "tags": ["news"],
    },
    "flow": {
        "nodes": [
            {"id": "in", "type": "webhook-in", "data": {}, "position": {"x": 0, "y": 0}},
            {"id": "sum", "type": "anthropic", "data": {"userPrompt": "{{1}} about {{topic}}"}},
        ],
        "edges": [{"id": "e1", "source": "in", "target": "sum", "sourceHandle": "out"}],
        "viewport": {"x": 10, "y": 20, "zoom": 1.5},
    },
    "credentials": [{"id": "anthropic-main", "type": "api-key", "name": "Anthropic", "usedInNodes": ["sum"]}],
    "settings": {
        "timeout": 60000,
        "executionMode": "sequential",
        "errorHandling": "stop",
        "maxConcurrency": 2,
        "retryPolicy": {"maxRetries": 2, "backoffMs": 500},
    },
    "variables": {
        "topic": {"type": "string", "required": True, "default": "tides"},
        "audience": {"type": "string", "required": True},
        "tone": {"type": "string"},
    },
}


def test_load_from_dict_text_and_path(tmp_path):
    path = tmp_path / "digest.vflow"
    path.write_text(json.dumps(EXPORT))

    for source in (EXPORT, json.dumps(EXPORT), path, str(path)):
        export = load_flow_export(source)
        assert export.meta.name == "Daily Digest"
        assert export.flow.viewport.zoom == 1.5
        assert export.credentials[0].used_in_nodes == ["sum"]
        assert export.settings.retry_policy.max_retries == 2


def test_load_rejects_unknown_schema_and_bad_json(tmp_path):
    with pytest.raises(ConfigurationError, match="Unsupported schema version"):
        load_flow_export({**EXPORT, "schemaVersion": "v9"})
    with pytest.raises(ConfigurationError, match="Cannot read"):
        load_flow_export("{not json")
    with pytest.raises(ConfigurationError, match="Cannot read"):
        load_flow_export(tmp_path / "missing.vflow")


def test_to_graph_rehydrates_nodes_and_edges():
    graph = load_flow_export(EXPORT).to_graph()

    assert graph.id == "digest"
    assert graph.node_ids() == ["in", "sum"]
    assert graph.get_node("sum").data["userPrompt"] == "{{1}} about {{topic}}"
    assert graph.edges[0].source_handle == "out"
    assert graph.predecessors("sum") == ["in"]


def test_graph_id_falls_back_to_name_slug():
    export = FlowExport.model_validate({"meta": {"name": "My First Flow!"}})

    assert export.to_graph().id == "my-first-flow"


def test_run_settings_overlay():
    base = RunSettings(node_timeout_seconds=300, error_handling="continue", default_model="m/x")

    settings = load_flow_export(EXPORT).run_settings(base)

    assert settings.node_timeout_seconds == 60
    assert settings.execution_mode == "sequential"
    assert settings.error_handling == "stop"
    assert settings.max_concurrency == 2
    assert settings.default_model == "m/x"


def test_mixed_execution_mode_runs_parallel():
    export = FlowExport(settings=FlowSettings(execution_mode="mixed"))

    assert export.run_settings(RunSettings()).execution_mode == "parallel"


def test_default_and_missing_inputs():
    export = load_flow_export(EXPORT)

    assert export.default_inputs() == {"topic": "tides"}
    assert export.missing_inputs({}) == ["audience"]
    assert export.missing_inputs({"audience": "kids"}) == []


def test_build_export_replaces_tokens_with_credential_references():
    graph = FlowGraph(
        id="alerts",
        name="Alerts",
        nodes=[
            NodeSpec(
                id="post",
                type="webhook-out",
                data={
                    "targetUrl": "https://hooks.example.com",
                    "authType": "bearer",
                    "authToken": "short-token",
                    "credentialName": "Slack bot",
                    "__runtime": {"lastRun": 1},
                    "__error": "old",
                },
            ),
            NodeSpec(id="note", type="notes", data={"content": "hi"}),
        ],
        edges=[EdgeSpec(source="note", target="post")],
    )

    export = build_flow_export(
        graph,
        tags=["ops"],
        variables={"channel": VariableDefinition(required=True)},
    )

    node_data = export.flow.nodes[0]["data"]
    assert "authToken" not in node_data
    assert "__runtime" not in node_data and "__error" not in node_data
    assert node_data["credentialId"] == "post-credential"
    (ref,) = export.credentials
    assert ref.id == "post-credential"
    assert ref.type == "bearer"
    assert ref.name == "Slack bot"
    assert ref.used_in_nodes == ["post"]
    assert export.settings.execution_mode == "sequential"
    assert export.settings.timeout == 300000

    # Round trip through JSON
    reloaded = load_flow_export(export.to_json())
    assert reloaded.to_graph().node_ids() == ["post", "note"]
    assert reloaded.variables["channel"].required


def test_build_export_refuses_embedded_secrets():
    graph = FlowGraph(
        nodes=[NodeSpec(id="llm", type="openai", data={"userPrompt": f"use key {FAKE_OPENAI_KEY}"})]
    )

    with pytest.raises(ConfigurationError, match="potential secret"):
        build_flow_export(graph)


def test_scan_reports_type_location_and_redaction():
    document = json.loads(json.dumps(EXPORT))
    document["flow"]["nodes"][1]["data"]["systemPrompt"] = f"token {FAKE_GITHUB_TOKEN}"
    document["meta"]["description"] = f"key {FAKE_OPENAI_KEY}"

    matches = {m.type: m for m in scan_for_secrets(document)}

    github = matches["GitHub Token"]
    assert github.location == "Node sum (anthropic)"
    assert github.redacted == "ghp_" + "*" * 20 + "xxxx"
    assert github.value == FAKE_GITHUB_TOKEN
    assert matches["OpenAI API Key"].location == "Workflow metadata"


def test_scan_clean_document():
    assert scan_for_secrets(load_flow_export(EXPORT)) == []


def test_redact_secret():
    assert redact_secret("abcd") == "****"
    assert redact_secret("abcdefghij") == "abcd**ghij"
    assert redact_secret("a" * 100).count("*") == 20
