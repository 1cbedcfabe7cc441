"""
Flow graph model - Nodes, edges and the graph that holds them.

A flow is a directed graph authored in the visual editor. Each node carries a
type tag (which executor runs it) and an opaque configuration payload. Edges
connect a source node (optionally a specific output port) to a target node
(optionally a specific input port).

The engine treats ``data`` as opaque; executors parse the parts they need.
A few keys are understood graph-wide:
- ``bypassed``: node forwards its single input unchanged, no side effects
- ``outputVariable``: alias usable in ``{{alias}}`` references
- ``title``: display name, used in logs
- ``timeoutMs``: per-node timeout override
"""

from typing import Any

from pydantic import BaseModel, Field, model_validator


class NodeSpec(BaseModel):
    """
    Specification for one node in a flow.

    Example:
        NodeSpec(
            id="summarize",
            type="anthropic",
            data={
                "model": "claude-haiku-4-5-20251001",
                "userPrompt": "Summarize: {{1}}",
                "outputVariable": "summary",
            },
        )
    """

    id: str
    type: str = Field(description="Type tag used to select the node executor")
    data: dict[str, Any] = Field(default_factory=dict, description="Opaque node configuration")

    model_config = {"extra": "allow"}

    @property
    def bypassed(self) -> bool:
        return bool(self.data.get("bypassed", False))

    @property
    def alias(self) -> str | None:
        """Output variable name, when it differs from the node id."""
        alias = self.data.get("outputVariable")
        if isinstance(alias, str) and alias and alias != self.id:
            return alias
        return None

    @property
    def title(self) -> str:
        return str(self.data.get("title") or self.id)

    @property
    def timeout_seconds(self) -> float | None:
        timeout_ms = self.data.get("timeoutMs")
        if isinstance(timeout_ms, int | float) and timeout_ms > 0:
            return timeout_ms / 1000
        return None


class EdgeSpec(BaseModel):
    """
    Specification for an edge between two nodes.

    Ports are optional: most node types have a single input and output.
    """

    id: str = ""
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")

    model_config = {"extra": "allow", "populate_by_name": True}

    @model_validator(mode="after")
    def _default_id(self) -> "EdgeSpec":
        if not self.id:
            self.id = f"{self.source}->{self.target}"
        return self


class FlowGraph(BaseModel):
    """
    A complete flow: nodes plus edges.

    Example:
        FlowGraph(
            id="research-flow",
            name="Research",
            nodes=[NodeSpec(id="a", type="notes"), NodeSpec(id="b", type="llm")],
            edges=[EdgeSpec(source="a", target="b")],
        )
    """

    id: str = "flow"
    name: str = ""
    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    def get_node(self, node_id: str) -> NodeSpec | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def node_ids(self) -> list[str]:
        return [node.id for node in self.nodes]

    def get_incoming_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges entering a node, in declaration order."""
        return [e for e in self.edges if e.target == node_id]

    def get_outgoing_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges leaving a node, in declaration order."""
        return [e for e in self.edges if e.source == node_id]

    def predecessors(self, node_id: str) -> list[str]:
        """Source node of every incoming edge, in edge order (positional inputs)."""
        return [e.source for e in self.get_incoming_edges(node_id)]

    def successors(self, node_id: str) -> list[str]:
        seen: list[str] = []
        for edge in self.get_outgoing_edges(node_id):
            if edge.target not in seen:
                seen.append(edge.target)
        return seen

    def nodes_of_type(self, *type_tags: str) -> list[NodeSpec]:
        return [n for n in self.nodes if n.type in type_tags]

    def validate(self) -> list[str]:
        """Validate the graph structure (cycles are detected by the resolver)."""
        errors = []

        seen_ids: set[str] = set()
        for node in self.nodes:
            if node.id in seen_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_ids.add(node.id)

        for edge in self.edges:
            if edge.source not in seen_ids:
                errors.append(f"Edge '{edge.id}' references missing source '{edge.source}'")
            if edge.target not in seen_ids:
                errors.append(f"Edge '{edge.id}' references missing target '{edge.target}'")

        aliases: dict[str, str] = {}
        for node in self.nodes:
            alias = node.alias
            if alias is None:
                continue
            if alias in seen_ids:
                errors.append(f"Node '{node.id}' output variable '{alias}' shadows a node ID")
            elif alias in aliases:
                errors.append(
                    f"Nodes '{aliases[alias]}' and '{node.id}' share output variable '{alias}'"
                )
            else:
                aliases[alias] = node.id

        return errors
