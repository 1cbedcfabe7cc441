"""
Graph Resolver - Execution order for a flow graph.

Dependency-counting topological sort (Kahn). Nodes with no incoming edges are
roots. After every removal step, all nodes whose remaining in-degree dropped to
zero become eligible together; each such batch is a "level" whose members are
mutually independent and may run concurrently.

Any node left over when no further node is eligible sits on (or behind) a cycle.
"""

from dataclasses import dataclass, field

from flowengine.graph.errors import ConfigurationError, GraphCycleError
from flowengine.graph.flow import FlowGraph


@dataclass
class ExecutionPlan:
    """Resolved ordering for one flow graph."""

    order: list[str] = field(default_factory=list)
    levels: list[list[str]] = field(default_factory=list)
    predecessors: dict[str, list[str]] = field(default_factory=dict)  # unique, edge order
    successors: dict[str, list[str]] = field(default_factory=dict)
    roots: list[str] = field(default_factory=list)

    def position(self, node_id: str) -> int:
        return self.order.index(node_id)

    def is_valid_order(self, order: list[str]) -> bool:
        """True if every predecessor precedes its dependent in ``order``."""
        index = {node_id: i for i, node_id in enumerate(order)}
        if set(index) != set(self.predecessors):
            return False
        return all(
            index[pred] < index[node_id]
            for node_id, preds in self.predecessors.items()
            for pred in preds
        )


def resolve_execution_plan(graph: FlowGraph) -> ExecutionPlan:
    """
    Build the execution plan for a graph.

    Raises:
        ConfigurationError: an edge references a node that does not exist
        GraphCycleError: the graph is not acyclic
    """
    node_ids = graph.node_ids()
    known = set(node_ids)

    predecessors: dict[str, list[str]] = {node_id: [] for node_id in node_ids}
    successors: dict[str, list[str]] = {node_id: [] for node_id in node_ids}

    for edge in graph.edges:
        if edge.source not in known or edge.target not in known:
            missing = edge.source if edge.source not in known else edge.target
            raise ConfigurationError(f"Edge '{edge.id}' references unknown node '{missing}'")
        # Parallel edges between the same pair count once for ordering
        if edge.source not in predecessors[edge.target]:
            predecessors[edge.target].append(edge.source)
            successors[edge.source].append(edge.target)

    in_degree = {node_id: len(preds) for node_id, preds in predecessors.items()}
    roots = [node_id for node_id in node_ids if in_degree[node_id] == 0]

    order: list[str] = []
    levels: list[list[str]] = []
    eligible = list(roots)

    while eligible:
        levels.append(eligible)
        order.extend(eligible)
        next_eligible: list[str] = []
        for node_id in eligible:
            for succ in successors[node_id]:
                in_degree[succ] -= 1
                if in_degree[succ] == 0:
                    next_eligible.append(succ)
        eligible = next_eligible

    if len(order) != len(node_ids):
        residual = [node_id for node_id in node_ids if in_degree[node_id] > 0]
        raise GraphCycleError(residual)

    return ExecutionPlan(
        order=order,
        levels=levels,
        predecessors=predecessors,
        successors=successors,
        roots=roots,
    )


def topological_order(graph: FlowGraph) -> list[str]:
    """Convenience wrapper returning only the linear order."""
    return resolve_execution_plan(graph).order
