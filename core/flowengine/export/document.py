"""
Persisted flow export document (``.vflow`` JSON).

Layout:

    {
      "version": "1.0.0",
      "schemaVersion": "v1",
      "meta": {"name": ..., "createdAt": ..., "updatedAt": ...},
      "flow": {"nodes": [...], "edges": [...], "viewport": {...}},
      "credentials": [{"id": ..., "type": ..., "name": ..., "usedInNodes": [...]}],
      "settings": {"timeout": 300000, "executionMode": ..., "errorHandling": ...},
      "variables": {"topic": {"type": "string", "required": true}}
    }

Credentials are references only. A loaded export rehydrates into a
FlowGraph plus RunSettings that run exactly like a live-authored flow.
"""

import dataclasses
import json
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from flowengine.config import RunSettings
from flowengine.export.secrets import scan_for_secrets
from flowengine.graph.errors import ConfigurationError
from flowengine.graph.flow import EdgeSpec, FlowGraph, NodeSpec

CURRENT_VERSION = "1.0.0"
SCHEMA_VERSION = "v1"

# Editor state that never belongs in an export
RUNTIME_KEYS = ("__runtime", "__executionState", "__cachedResults", "__error")


class ExportModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class FlowMetadata(ExportModel):
    id: str | None = None
    name: str = "Untitled Workflow"
    description: str | None = None
    author: str | None = None
    created_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    updated_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    tags: list[str] = Field(default_factory=list)
    version: str | None = None
    icon: str | None = None


class CredentialReference(ExportModel):
    id: str
    type: str = "api-key"
    name: str = "Credential"
    used_in_nodes: list[str] = Field(default_factory=list)


class RetryPolicy(ExportModel):
    max_retries: int = 0
    backoff_ms: int = 1000
    backoff_multiplier: float | None = None


class FlowSettings(ExportModel):
    timeout: int | None = None  # ms per node
    retry_policy: RetryPolicy | None = None
    execution_mode: Literal["sequential", "parallel", "mixed"] | None = None
    error_handling: Literal["stop", "continue", "fallback"] | None = None
    max_concurrency: int | None = Field(default=None, ge=1)


class VariableDefinition(ExportModel):
    type: Literal["string", "number", "boolean", "json"] = "string"
    required: bool = False
    default: Any = None
    description: str | None = None
    example: Any = None


class Viewport(ExportModel):
    x: float = 0
    y: float = 0
    zoom: float = 1


class FlowDocument(ExportModel):
    nodes: list[dict[str, Any]] = Field(default_factory=list)
    edges: list[dict[str, Any]] = Field(default_factory=list)
    viewport: Viewport = Field(default_factory=Viewport)


class FlowExport(ExportModel):
    """A versioned, shareable flow."""

    version: str = CURRENT_VERSION
    schema_version: str = SCHEMA_VERSION
    meta: FlowMetadata = Field(default_factory=FlowMetadata)
    flow: FlowDocument = Field(default_factory=FlowDocument)
    credentials: list[CredentialReference] = Field(default_factory=list)
    settings: FlowSettings = Field(default_factory=FlowSettings)
    variables: dict[str, VariableDefinition] | None = None

    @field_validator("schema_version")
    @classmethod
    def _known_schema(cls, value: str) -> str:
        if value != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version '{value}' (expected '{SCHEMA_VERSION}')")
        return value

    def to_graph(self) -> FlowGraph:
        nodes = [
            NodeSpec(id=str(n["id"]), type=n.get("type") or "llm", data=dict(n.get("data") or {}))
            for n in self.flow.nodes
        ]
        edges = [EdgeSpec.model_validate(e) for e in self.flow.edges]
        return FlowGraph(
            id=self.meta.id or _slug(self.meta.name),
            name=self.meta.name,
            nodes=nodes,
            edges=edges,
        )

    def run_settings(self, base: RunSettings | None = None) -> RunSettings:
        """Overlay the document's settings on ``base`` (or configured defaults)."""
        base = base or RunSettings()
        changes: dict[str, Any] = {}
        if self.settings.timeout:
            changes["node_timeout_seconds"] = self.settings.timeout / 1000
        if self.settings.execution_mode:
            mode = self.settings.execution_mode
            changes["execution_mode"] = "sequential" if mode == "sequential" else "parallel"
        if self.settings.error_handling:
            changes["error_handling"] = self.settings.error_handling
        if self.settings.max_concurrency:
            changes["max_concurrency"] = self.settings.max_concurrency
        return dataclasses.replace(base, **changes)

    def default_inputs(self) -> dict[str, Any]:
        return {
            name: definition.default
            for name, definition in (self.variables or {}).items()
            if definition.default is not None
        }

    def missing_inputs(self, inputs: dict[str, Any]) -> list[str]:
        """Required variables with neither a supplied value nor a default."""
        return [
            name
            for name, definition in (self.variables or {}).items()
            if definition.required and definition.default is None and name not in inputs
        ]

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)


def load_flow_export(source: str | Path | dict[str, Any]) -> FlowExport:
    """
    Load an export from a path, JSON text, or parsed dict.

    Raises:
        ConfigurationError: unreadable, not JSON, or not a valid export
    """
    try:
        if isinstance(source, dict):
            data = source
        elif isinstance(source, Path) or not str(source).lstrip().startswith("{"):
            data = json.loads(Path(source).read_text(encoding="utf-8-sig"))
        else:
            data = json.loads(source)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read flow export: {e}") from e

    try:
        return FlowExport.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid flow export: {e}") from e


def build_flow_export(
    graph: FlowGraph,
    name: str | None = None,
    description: str | None = None,
    author: str | None = None,
    tags: list[str] | None = None,
    settings: FlowSettings | None = None,
    variables: dict[str, VariableDefinition] | None = None,
    viewport: Viewport | None = None,
) -> FlowExport:
    """
    Build an export for ``graph``. Raw ``authToken`` values become
    credential references; any secret still found afterwards is an error.

    Raises:
        ConfigurationError: the document would contain a hard-coded secret
    """
    credentials: dict[str, CredentialReference] = {}
    nodes = []
    for node in graph.nodes:
        data = {k: v for k, v in node.data.items() if k not in RUNTIME_KEYS}
        if data.get("authToken") or data.get("credentialId"):
            data.pop("authToken", None)
            cred_id = data.setdefault("credentialId", f"{node.id}-credential")
            ref = credentials.setdefault(
                cred_id,
                CredentialReference(
                    id=cred_id,
                    type=data.get("credentialType") or data.get("authType") or "api-key",
                    name=data.get("credentialName") or "Credential",
                ),
            )
            ref.used_in_nodes.append(node.id)
        nodes.append({"id": node.id, "type": node.type, "data": data})

    export = FlowExport(
        meta=FlowMetadata(
            id=graph.id,
            name=name or graph.name or "Untitled Workflow",
            description=description,
            author=author,
            tags=tags or [],
        ),
        flow=FlowDocument(
            nodes=nodes,
            edges=[e.model_dump(by_alias=True, exclude_none=True) for e in graph.edges],
            viewport=viewport or Viewport(),
        ),
        credentials=list(credentials.values()),
        settings=settings
        or FlowSettings(timeout=300000, execution_mode="sequential", error_handling="stop"),
        variables=variables,
    )

    found = scan_for_secrets(export)
    if found:
        kinds = ", ".join(sorted({m.type for m in found}))
        raise ConfigurationError(
            f"Found {len(found)} potential secret(s) in export ({kinds}). "
            "Remove sensitive data before exporting."
        )
    return export


def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "flow"
